import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from attempts import MockExamPlan, SubjectSlot
from countdown import Countdown
from errors import ConflictError, ExamError
from models import MockExam
from session_controller import UNLOAD, SessionController, SessionState, default_clock_factory

logger = logging.getLogger(__name__)


class MockExamOrchestrator:
    """Runs the subjects of a mock exam one after another.

    Each subject is an ordinary SessionController with its own guard, so a
    breach or a timeout finishes the active subject only. Timing comes from
    the mock exam's `timing_mode`:

    - per_subject: every controller owns a countdown of the per-subject budget.
    - shared: the orchestrator owns one countdown. When it runs out the active
      subject is force-submitted and every later subject is opened and
      immediately submitted with no answers.

    `load_subject(slot)` and `submit_subject(slot, answers, auto_submitted,
    is_final)` talk to the server; events are forwarded to `on_event` with the
    subject id attached.
    """

    def __init__(
        self,
        plan: MockExamPlan,
        *,
        load_subject: Callable[[SubjectSlot], Any],
        submit_subject: Callable[[SubjectSlot, List[Dict[str, Any]], bool, bool], Dict[str, Any]],
        record_violation: Optional[Callable[[int, str], Any]] = None,
        clock_factory: Callable[..., Countdown] = default_clock_factory,
        on_event: Optional[Callable[[str, Dict[str, Any]], None]] = None,
        violation_limit: int = 1,
        violation_cooldown: float = 2.5,
        max_submit_retries: int = 1,
    ) -> None:
        self.plan = plan
        self.slots = list(plan.subjects)
        self._load_subject = load_subject
        self._submit_subject = submit_subject
        self._record_violation = record_violation
        self._clock_factory = clock_factory
        self._on_event = on_event
        self._controller_options = {
            'violation_limit': violation_limit,
            'violation_cooldown': violation_cooldown,
            'max_submit_retries': max_submit_retries,
        }

        self.state = SessionState.LOADING
        self.current_subject_index = 0
        self.controller: Optional[SessionController] = None
        self.shared_clock: Optional[Countdown] = None
        self.time_up = False
        self.subject_results: Dict[int, Dict[str, Any]] = {}
        self.result: Optional[Dict[str, Any]] = None
        self.error: Optional[ExamError] = None
        self._closing = False

        self._lock = threading.RLock()

    @property
    def shared_timing(self) -> bool:
        return self.plan.timing_mode == MockExam.TIMING_SHARED

    @property
    def finished(self) -> bool:
        return self.state in (SessionState.COMPLETED, SessionState.BLOCKED)

    def _emit(self, name: str, payload: Dict[str, Any]) -> None:
        if self._on_event is not None:
            self._on_event(name, payload)

    # ------------------------------------------------------------------ control

    def start(self) -> bool:
        with self._lock:
            if self.state != SessionState.LOADING:
                return False
            self.state = SessionState.IN_PROGRESS
            self._activate(0)
            if self.shared_timing and not self.finished:
                self.shared_clock = self._clock_factory(
                    self.plan.remaining_seconds, self._on_shared_tick, self._on_shared_expire,
                )
                self.shared_clock.start()
            return True

    def dispatch(self, event: str, **data) -> bool:
        with self._lock:
            if self.state != SessionState.IN_PROGRESS or self.controller is None:
                return False
            return self.controller.dispatch(event, **data)

    def disconnect(self) -> None:
        """Submit the active subject and stop; later subjects stay open for a resume."""
        with self._lock:
            self._closing = True
            if self.controller is not None:
                self.controller.dispatch(UNLOAD, signal='connection_lost')
        self.close()

    def close(self) -> None:
        with self._lock:
            if self.shared_clock is not None:
                self.shared_clock.cancel()
            if self.controller is not None:
                self.controller.close()

    # ------------------------------------------------------------------ timing

    def _on_shared_tick(self, remaining: int) -> None:
        self._emit('time_remaining', {'seconds': remaining, 'scope': 'exam'})

    def _on_shared_expire(self) -> None:
        with self._lock:
            self.time_up = True
            logger.info('Mock attempt %s: overall time is up', self.plan.session_id)
            if self.controller is not None and self.controller.state == SessionState.IN_PROGRESS:
                self.controller.expire()

    # --------------------------------------------------------------- sequencing

    def _activate(self, index: int) -> None:
        while index < len(self.slots) and self.slots[index].completed:
            index += 1
        if index >= len(self.slots):
            self._complete()
            return

        self.current_subject_index = index
        slot = self.slots[index]
        is_final = index == len(self.slots) - 1

        controller = SessionController(
            load=lambda: self._load_subject(slot),
            submit=lambda answers, auto: self._submit_subject(slot, answers, auto, is_final),
            record_violation=self._record_violation,
            clock_factory=None if self.shared_timing else self._subject_clock,
            on_event=lambda name, payload: self._on_subject_event(slot, name, payload),
            **self._controller_options,
        )
        self.controller = controller
        self._emit('subject_started', {
            'index': index,
            'subject': slot.to_dict(),
            'is_final_subject': is_final,
        })

        controller.load()
        if controller.state == SessionState.BLOCKED:
            if isinstance(controller.error, ConflictError):
                # Result already on record (resumed session): move on.
                slot.completed = True
                if controller.error.result:
                    self.subject_results[slot.subject_id] = controller.error.result
                self._activate(index + 1)
            return
        if self.time_up and controller.state == SessionState.IN_PROGRESS:
            controller.expire()

    def _on_subject_event(self, slot: SubjectSlot, name: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            controller = self.controller
            error = controller.error if controller is not None else None
            if controller is not None and controller.state == SessionState.BLOCKED and isinstance(error, ConflictError):
                # Subject already graded on a resumed session; _activate skips it.
                return

            data = dict(payload)
            data['subject_id'] = slot.subject_id
            data['subject_index'] = self.current_subject_index

            self._emit(name, data)
            if name == 'blocked':
                self._block(error)
            elif name == 'completed':
                slot.completed = True
                self.subject_results[slot.subject_id] = payload.get('result') or {}
                if self._closing:
                    return
                self._activate(self.current_subject_index + 1)

    def _subject_clock(self, seconds: int, on_tick: Callable, on_expire: Callable) -> Countdown:
        # Timer callbacks take the orchestrator lock before the controller's.
        def locked(fn):
            def call(*args):
                with self._lock:
                    fn(*args)
            return call
        return self._clock_factory(seconds, locked(on_tick), locked(on_expire))

    def _complete(self) -> None:
        if self.shared_clock is not None:
            self.shared_clock.cancel()
        final = {}
        for result in self.subject_results.values():
            if result.get('exam_completed'):
                final = {
                    'exam_completed': True,
                    'total_score': result.get('total_score'),
                    'total_exam_questions': result.get('total_exam_questions'),
                }
        self.result = dict(final, subjects=self.subject_results)
        self.state = SessionState.COMPLETED
        logger.info('Mock attempt %s finished all subjects', self.plan.session_id)
        self._emit('exam_completed', self.result)

    def _block(self, err: Optional[ExamError]) -> None:
        self.error = err
        if self.shared_clock is not None:
            self.shared_clock.cancel()
        self.state = SessionState.BLOCKED
