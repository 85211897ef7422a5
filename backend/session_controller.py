import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from countdown import Countdown
from errors import ConflictError, ExamError, TransientError
from guard import SubmissionGuard
from models import OPTION_LABELS
from proctor import ViolationMonitor

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    LOADING = 'loading'
    IN_PROGRESS = 'in_progress'
    SUBMITTING = 'submitting'
    COMPLETED = 'completed'
    BLOCKED = 'blocked'


# Events accepted by SessionController.dispatch
ANSWER = 'answer'
TICK = 'tick'
TIMER_EXPIRED = 'timer_expired'
VIOLATION = 'violation'
SUBMIT = 'submit'
RETRY = 'retry'
# Page unload / lost connection: recorded as a violation and always ends the attempt.
UNLOAD = 'unload'


def default_clock_factory(seconds: int, on_tick: Callable, on_expire: Callable) -> Countdown:
    return Countdown(seconds, on_tick, on_expire)


class SessionController:
    """State machine for one live attempt.

    Loader, submitter and violation recorder are plain callables so the same
    machine runs against the in-process scoring engine (Socket.IO sessions) or
    any other transport. Every input goes through `dispatch`; the timer,
    violation monitor and submit button only ever *request* the terminal
    transition, and the SubmissionGuard lets exactly one of them through.

    `on_event(name, payload)` receives: state_changed, loaded, time_remaining,
    integrity_breach, submission_error, completed, blocked.
    """

    def __init__(
        self,
        load: Callable[[], Any],
        submit: Callable[[List[Dict[str, Any]], bool], Dict[str, Any]],
        *,
        record_violation: Optional[Callable[[int, str], Any]] = None,
        clock_factory: Optional[Callable[..., Countdown]] = default_clock_factory,
        on_event: Optional[Callable[[str, Dict[str, Any]], None]] = None,
        violation_limit: int = 1,
        violation_cooldown: float = 2.5,
        max_submit_retries: int = 1,
    ) -> None:
        self._load = load
        self._submit = submit
        self._record_violation = record_violation
        self._clock_factory = clock_factory
        self._on_event = on_event
        self.violation_limit = max(1, int(violation_limit or 1))
        self.max_submit_retries = max(0, int(max_submit_retries or 0))

        self.state = SessionState.LOADING
        self.guard = SubmissionGuard()
        self.monitor = ViolationMonitor(persist=self._persist_violation, min_violation_gap_sec=violation_cooldown)
        self.clock: Optional[Countdown] = None

        self.context = None
        self.attempt_id: Optional[int] = None
        self.questions: List[Dict[str, Any]] = []
        self.answers: Dict[int, Optional[str]] = {}
        self.remaining_seconds: Optional[int] = None

        self.auto_submitted = False
        self.trigger: Optional[str] = None
        self.submit_calls = 0
        self.last_error: Optional[str] = None
        self.error: Optional[ExamError] = None
        self.result: Optional[Dict[str, Any]] = None
        self.already_graded = False

        self._lock = threading.RLock()

    # ----------------------------------------------------------------- outputs

    def _emit(self, name: str, payload: Optional[Dict[str, Any]] = None) -> None:
        if self._on_event is not None:
            self._on_event(name, payload or {})

    def _set_state(self, state: SessionState) -> None:
        if self.state == state:
            return
        self.state = state
        self._emit('state_changed', {'state': state.value})

    @property
    def violation_count(self) -> int:
        return self.monitor.count

    @property
    def finished(self) -> bool:
        return self.state in (SessionState.COMPLETED, SessionState.BLOCKED)

    def answer_payload(self) -> List[Dict[str, Any]]:
        return [
            {'question_id': q['id'], 'selected_label': self.answers.get(q['id'])}
            for q in self.questions
        ]

    # ------------------------------------------------------------------ inputs

    def load(self) -> bool:
        with self._lock:
            if self.state != SessionState.LOADING:
                return False
            try:
                context = self._load()
            except ExamError as err:
                self._block(err)
                return False

            self.context = context
            self.attempt_id = context.attempt_id
            self.questions = list(context.questions)
            self.remaining_seconds = context.remaining_seconds
            self._set_state(SessionState.IN_PROGRESS)
            self._emit('loaded', context.to_dict())

            if self._clock_factory is not None:
                self.clock = self._clock_factory(context.remaining_seconds, self._on_tick, self._on_expire)
                self.clock.start()
            return True

    def answer(self, question_id: int, label: Any) -> bool:
        return self.dispatch(ANSWER, question_id=question_id, label=label)

    def violation(self, signal: str) -> bool:
        return self.dispatch(VIOLATION, signal=signal)

    def submit(self) -> bool:
        return self.dispatch(SUBMIT)

    def expire(self) -> bool:
        return self.dispatch(TIMER_EXPIRED)

    def retry(self) -> bool:
        return self.dispatch(RETRY)

    def disconnect(self) -> None:
        self.dispatch(UNLOAD, signal='connection_lost')
        self.close()

    def _on_tick(self, remaining: int) -> None:
        self.dispatch(TICK, remaining=remaining)

    def _on_expire(self) -> None:
        self.dispatch(TIMER_EXPIRED)

    def dispatch(self, event: str, **data) -> bool:
        """The single transition function. Returns True when the event had an effect."""
        with self._lock:
            if event == ANSWER:
                return self._apply_answer(data.get('question_id'), data.get('label'))
            if event == TICK:
                if self.state != SessionState.IN_PROGRESS:
                    return False
                self.remaining_seconds = data.get('remaining')
                self._emit('time_remaining', {'seconds': self.remaining_seconds})
                return True
            if event == TIMER_EXPIRED:
                return self._finish(auto=True, trigger='timer')
            if event == VIOLATION:
                return self._apply_violation(data.get('signal') or 'unknown')
            if event == SUBMIT:
                return self._finish(auto=False, trigger='submit')
            if event == RETRY:
                return self._retry()
            if event == UNLOAD:
                return self._apply_unload(data.get('signal') or 'before_unload')
            raise ValueError(f'Unknown session event {event!r}')

    # ------------------------------------------------------------- transitions

    def _apply_answer(self, question_id: Any, label: Any) -> bool:
        if self.state != SessionState.IN_PROGRESS:
            return False
        try:
            question_id = int(question_id)
        except (TypeError, ValueError):
            return False
        if question_id not in {q['id'] for q in self.questions}:
            return False
        if label is None or str(label).strip() == '':
            self.answers[question_id] = None
            return True
        label = str(label).strip().upper()
        if label not in OPTION_LABELS:
            return False
        self.answers[question_id] = label
        return True

    def _apply_violation(self, signal: str) -> bool:
        if self.state != SessionState.IN_PROGRESS:
            return False
        breach = self.monitor.observe(signal)
        if breach is None:
            return False
        logger.info('Integrity breach on attempt %s: %s (%s)', self.attempt_id, breach.reason, breach.count)
        self._emit('integrity_breach', breach.to_dict())
        if breach.count >= self.violation_limit:
            self._finish(auto=True, trigger=signal)
        return True

    def _apply_unload(self, signal: str) -> bool:
        if self.state != SessionState.IN_PROGRESS:
            return False
        breach = self.monitor.observe(signal)
        if breach is not None:
            self._emit('integrity_breach', breach.to_dict())
        return self._finish(auto=True, trigger=signal)

    def _persist_violation(self, reason: str) -> None:
        if self._record_violation is not None and self.attempt_id is not None:
            self._record_violation(self.attempt_id, reason)

    def _finish(self, *, auto: bool, trigger: str) -> bool:
        if self.state != SessionState.IN_PROGRESS:
            return False
        if not self.guard.try_acquire():
            return False
        self.auto_submitted = auto
        self.trigger = trigger
        self._stop()
        self._set_state(SessionState.SUBMITTING)
        self._send()
        return True

    def _retry(self) -> bool:
        if self.state != SessionState.SUBMITTING or self.last_error is None:
            return False
        if self.submit_calls > self.max_submit_retries:
            logger.warning('Attempt %s: no submission retries left', self.attempt_id)
            return False
        self._send()
        return True

    def _send(self) -> None:
        self.submit_calls += 1
        self.last_error = None
        try:
            result = self._submit(self.answer_payload(), self.auto_submitted)
        except ConflictError as err:
            self.already_graded = True
            self._complete(err.result or {})
        except TransientError as err:
            self.last_error = err.message
            self._emit('submission_error', {
                'message': err.message,
                'retryable': self.submit_calls <= self.max_submit_retries,
            })
        except ExamError as err:
            self._block(err)
        except Exception as err:
            # Unclassified failure (storage, transport): the attempt stays retryable.
            logger.warning('Submitting attempt %s failed: %s', self.attempt_id, err, exc_info=True)
            self.last_error = str(err) or 'Submission failed'
            self._emit('submission_error', {
                'message': 'Could not save the submission, please retry',
                'retryable': self.submit_calls <= self.max_submit_retries,
            })
        else:
            self._complete(result)

    def _complete(self, result: Dict[str, Any]) -> None:
        self.result = result
        self._set_state(SessionState.COMPLETED)
        self._emit('completed', {
            'attempt_id': self.attempt_id,
            'result': result,
            'auto_submitted': self.auto_submitted,
            'trigger': self.trigger,
            'already_graded': self.already_graded,
        })

    def _block(self, err: ExamError) -> None:
        self.error = err
        self._stop()
        self._set_state(SessionState.BLOCKED)
        self._emit('blocked', err.to_dict())

    def _stop(self) -> None:
        if self.clock is not None:
            self.clock.cancel()
        self.monitor.stop()

    def close(self) -> None:
        with self._lock:
            self._stop()
