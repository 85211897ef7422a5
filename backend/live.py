"""Socket.IO transport for live exam sessions.

One runner (SessionController or MockExamOrchestrator) per connected socket.
Browser lifecycle signals arrive as events and are fed into the runner; the
runner's events are pushed back to the same socket.
"""
import logging
from typing import Any, Dict

from flask import current_app, has_app_context, request
from flask_socketio import SocketIO, emit

import attempts
from auth import current_user_id
from countdown import Countdown
from errors import AuthenticationError, ExamError, ValidationError
from mock_exam import MockExamOrchestrator
from session_controller import ANSWER, RETRY, SUBMIT, VIOLATION, SessionController, SessionState

logger = logging.getLogger(__name__)

socketio = SocketIO()

# sid -> SessionController | MockExamOrchestrator
live_sessions: Dict[str, Any] = {}

EVENT_NAMES = {
    'state_changed': 'exam_state',
    'loaded': 'exam_loaded',
    'time_remaining': 'time_remaining',
    'integrity_breach': 'warning_alert',
    'submission_error': 'submission_error',
    'completed': 'exam_submitted',
    'blocked': 'exam_blocked',
    'subject_started': 'subject_started',
    'exam_completed': 'mock_exam_completed',
}


def _clock_factory(seconds, on_tick, on_expire):
    return Countdown(seconds, on_tick, on_expire, spawn=socketio.start_background_task, sleep=socketio.sleep)


def _in_app(app, fn, *args, **kwargs):
    # Countdown callbacks run on a background task without an app context.
    if has_app_context():
        return fn(*args, **kwargs)
    with app.app_context():
        return fn(*args, **kwargs)


def _forward(sid: str):
    def on_event(name, payload):
        socketio.emit(EVENT_NAMES.get(name, name), payload, to=sid)
    return on_event


def _recorder(app):
    def record(attempt_id, reason):
        return _in_app(app, attempts.record_violation, attempt_id, reason)
    return record


def _int_field(data, name):
    try:
        return int((data or {}).get(name))
    except (TypeError, ValueError):
        raise ValidationError(f'{name} is required')


def _close_runner(sid: str) -> None:
    runner = live_sessions.pop(sid, None)
    if runner is not None:
        runner.close()


def _runner_options(app) -> Dict[str, Any]:
    return {
        'clock_factory': _clock_factory,
        'violation_limit': app.config['EXAM_VIOLATION_LIMIT'],
        'violation_cooldown': app.config['EXAM_VIOLATION_COOLDOWN_SEC'],
        'max_submit_retries': app.config['EXAM_SUBMIT_RETRIES'],
    }


@socketio.on('start_exam')
def handle_start_exam(data):
    try:
        user_id = current_user_id()
        if user_id is None:
            raise AuthenticationError('Unauthorized')
        assessment_id = _int_field(data, 'assessment_id')
    except ExamError as err:
        emit('exam_blocked', err.to_dict())
        return {'success': False}

    sid = request.sid
    _close_runner(sid)
    app = current_app._get_current_object()
    engine = app.extensions['scoring_engine']

    def submit(answers, auto_submitted):
        return _in_app(
            app, lambda: engine.submit_assessment(user_id, controller.attempt_id, answers, auto_submitted).to_dict()
        )

    controller = SessionController(
        load=lambda: _in_app(
            app, attempts.open_attempt, user_id, assessment_id, max_attempts=app.config['EXAM_MAX_ATTEMPTS'],
        ),
        submit=submit,
        record_violation=_recorder(app),
        on_event=_forward(sid),
        **_runner_options(app),
    )
    live_sessions[sid] = controller
    controller.load()
    return {'success': controller.state != SessionState.BLOCKED, 'attempt_id': controller.attempt_id}


@socketio.on('start_mock_exam')
def handle_start_mock_exam(data):
    try:
        user_id = current_user_id()
        if user_id is None:
            raise AuthenticationError('Unauthorized')
        plan = attempts.open_mock_exam_session(user_id, _int_field(data, 'mock_exam_id'))
    except ExamError as err:
        emit('exam_blocked', err.to_dict())
        return {'success': False}

    sid = request.sid
    _close_runner(sid)
    app = current_app._get_current_object()
    engine = app.extensions['scoring_engine']

    def load_subject(slot):
        return _in_app(app, attempts.open_mock_subject, user_id, plan.session_id, slot.subject_id)

    def submit_subject(slot, answers, auto_submitted, is_final):
        return _in_app(app, lambda: engine.submit_mock_exam_subject(
            user_id, plan.session_id, slot.subject_id, slot.assessment_id, answers,
            is_final_subject=is_final, auto_submitted=auto_submitted,
        ).to_dict())

    orchestrator = MockExamOrchestrator(
        plan,
        load_subject=load_subject,
        submit_subject=submit_subject,
        record_violation=_recorder(app),
        on_event=_forward(sid),
        **_runner_options(app),
    )
    live_sessions[sid] = orchestrator
    emit('mock_exam_loaded', plan.to_dict())
    orchestrator.start()
    return {'success': orchestrator.state != SessionState.BLOCKED, 'session_id': plan.session_id}


def _dispatch(event: str, **data) -> bool:
    runner = live_sessions.get(request.sid)
    if runner is None:
        return False
    return runner.dispatch(event, **data)


@socketio.on('answer')
def handle_answer(data):
    data = data or {}
    label = data.get('label', data.get('selected_label'))
    return {'accepted': _dispatch(ANSWER, question_id=data.get('question_id'), label=label)}


@socketio.on('violation')
def handle_violation(data):
    signal = str((data or {}).get('signal') or 'visibility_hidden')
    _dispatch(VIOLATION, signal=signal)


@socketio.on('tab_change')
def handle_tab_change(data=None):
    _dispatch(VIOLATION, signal='visibility_hidden')


@socketio.on('submit_exam')
def handle_submit(data=None):
    return {'accepted': _dispatch(SUBMIT)}


@socketio.on('retry_submit')
def handle_retry(data=None):
    return {'accepted': _dispatch(RETRY)}


@socketio.on('disconnect')
def handle_disconnect(*args):
    runner = live_sessions.pop(request.sid, None)
    if runner is None:
        return
    if not runner.finished:
        logger.info('Socket %s left during a live exam, submitting', request.sid)
    runner.disconnect()
