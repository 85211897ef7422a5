import logging
import math
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class Countdown:
    """Per-second countdown with a single expiry signal.

    Remaining time is measured against a monotonic deadline, so a loop that
    was suspended (tab sleep, green-thread starvation) catches up on the next
    tick instead of drifting. The countdown is a UX aid only: the scoring
    engine judges lateness from server timestamps.

    `spawn` runs the loop in the background (Socket.IO's
    `start_background_task` in the app); without one a daemon thread is used.
    Tests drive `tick()` directly with an injected `now`.
    """

    def __init__(
        self,
        duration_seconds: int,
        on_tick: Optional[Callable[[int], None]] = None,
        on_expire: Optional[Callable[[], None]] = None,
        *,
        spawn: Optional[Callable] = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], float] = time.monotonic,
        interval: float = 1.0,
    ) -> None:
        self.duration_seconds = max(0, int(duration_seconds or 0))
        self.on_tick = on_tick
        self.on_expire = on_expire
        self._spawn = spawn
        self._sleep = sleep
        self._now = now
        self.interval = interval

        self._deadline: Optional[float] = None
        self._remaining = self.duration_seconds
        self._started = False
        self._cancelled = False
        self._expired = False
        self._lock = threading.Lock()

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def expired(self) -> bool:
        return self._expired

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def running(self) -> bool:
        return self._started and not self._cancelled and not self._expired

    def start(self, run_loop: bool = True) -> None:
        if self._started:
            return
        self._started = True
        self._deadline = self._now() + self.duration_seconds
        if self.duration_seconds <= 0:
            self._expire()
            return
        if not run_loop:
            return
        if self._spawn is not None:
            self._spawn(self._run)
        else:
            threading.Thread(target=self._run, daemon=True).start()

    def _run(self) -> None:
        while self.running:
            self._sleep(self.interval)
            self.tick()

    def tick(self) -> None:
        if not self.running or self._deadline is None:
            return
        remaining = max(0, math.ceil(self._deadline - self._now()))
        with self._lock:
            if remaining == self._remaining and remaining > 0:
                return
            self._remaining = remaining
        if remaining > 0:
            if self.on_tick:
                self.on_tick(remaining)
            return
        if self.on_tick:
            self.on_tick(0)
        self._expire()

    def _expire(self) -> None:
        with self._lock:
            if self._expired or self._cancelled:
                return
            self._expired = True
            self._remaining = 0
        logger.debug('Countdown of %ss expired', self.duration_seconds)
        if self.on_expire:
            self.on_expire()

    def cancel(self) -> None:
        self._cancelled = True
