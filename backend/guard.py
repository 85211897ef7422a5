import threading


class SubmissionGuard:
    """Acquire-once latch deciding which trigger performs the final submission.

    Timer expiry, an integrity breach, an explicit submit and a page unload all
    race for the same terminal action; the first `try_acquire()` wins and every
    later call is a no-op. The guard is never released: a new session gets a
    new guard.
    """

    def __init__(self) -> None:
        self._latch = threading.Lock()

    def try_acquire(self) -> bool:
        return self._latch.acquire(blocking=False)

    @property
    def acquired(self) -> bool:
        return self._latch.locked()
