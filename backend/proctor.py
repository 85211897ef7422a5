import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

SIGNAL_REASONS = {
    'visibility_hidden': 'Tab hidden',
    'window_blur': 'Window blur',
    'page_hide': 'Page hidden',
    'before_unload': 'Page unload',
    'navigation_attempt': 'Navigation attempt',
    'connection_lost': 'Connection lost',
}


@dataclass
class Breach:
    signal: str
    reason: str
    count: int

    def to_dict(self):
        return {'signal': self.signal, 'message': self.reason, 'count': self.count}


def describe_signal(signal: str) -> str:
    return SIGNAL_REASONS.get(signal) or signal.replace('_', ' ').strip().capitalize() or 'Violation'


class ViolationMonitor:
    """Anti-cheat monitor for one live session.

    Browser lifecycle signals (visibility, blur, page hide, unload, in-app
    navigation) are reported here. A single incident usually raises several of
    them at once, so signals inside the cooldown window after a counted breach
    are folded into it.

    `persist(reason)` records the breach. It is advisory: a failing write is
    logged and never interrupts the exam.
    """

    def __init__(
        self,
        *,
        persist: Optional[Callable[[str], None]] = None,
        min_violation_gap_sec: float = 2.5,
        now: Callable[[], float] = time.monotonic,
    ) -> None:
        self.persist = persist
        self.min_violation_gap_sec = min_violation_gap_sec
        self._now = now
        self._last_ts: Optional[float] = None
        self.count = 0
        self.active = True

    def _cooldown_ok(self) -> bool:
        now = self._now()
        if self._last_ts is not None and now - self._last_ts < self.min_violation_gap_sec:
            return False
        self._last_ts = now
        return True

    def observe(self, signal: str) -> Optional[Breach]:
        if not self.active:
            return None
        if not self._cooldown_ok():
            return None

        self.count += 1
        reason = describe_signal(signal)
        self._persist(reason)
        return Breach(signal=signal, reason=reason, count=self.count)

    def _persist(self, reason: str) -> None:
        if self.persist is None:
            return
        try:
            self.persist(reason)
        except Exception:
            logger.warning('Could not persist violation %r', reason, exc_info=True)

    def stop(self) -> None:
        self.active = False
