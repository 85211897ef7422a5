import logging

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

import attempts
from auth import current_user_id
from errors import AuthenticationError, ValidationError
from proctor import describe_signal
from scoring import ScoringEngine

logger = logging.getLogger(__name__)

exam_bp = Blueprint('exam', __name__, url_prefix='/api')


def get_engine() -> ScoringEngine:
    return current_app.extensions['scoring_engine']


def _payload():
    payload = request.get_json(silent=True)
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError('Expected a JSON object')
    return payload


def _require_user() -> int:
    user_id = current_user_id()
    if user_id is None:
        raise AuthenticationError('Unauthorized')
    return user_id


# --- Single assessments ---

@exam_bp.route('/assessments/<int:assessment_id>/attempts', methods=['POST'])
def start_assessment(assessment_id: int):
    context = attempts.open_attempt(
        _require_user(), assessment_id,
        max_attempts=current_app.config['EXAM_MAX_ATTEMPTS'],
    )
    status = 200 if context.resumed else 201
    return jsonify(dict(context.to_dict(), success=True)), status


@exam_bp.route('/attempts/<int:attempt_id>', methods=['GET'])
def attempt_status(attempt_id: int):
    attempt = attempts.get_attempt(_require_user(), attempt_id)
    return jsonify({'success': True, 'attempt': attempt.to_dict()})


@exam_bp.route('/attempts/<int:attempt_id>/submit', methods=['POST'])
def submit_assessment(attempt_id: int):
    payload = _payload()
    result = get_engine().submit_assessment(
        _require_user(),
        attempt_id,
        payload.get('answers') or [],
        auto_submitted=bool(payload.get('auto_submitted', False)),
    )
    return jsonify(dict(result.to_dict(), success=True))


@exam_bp.route('/attempts/<int:attempt_id>/violations', methods=['POST'])
def report_violation(attempt_id: int):
    # Beacon endpoint for page-unload signals; always accepted, recorded best-effort.
    attempts.get_attempt(_require_user(), attempt_id)
    signal = str(_payload().get('signal') or 'before_unload')
    recorded = False
    try:
        recorded = attempts.record_violation(attempt_id, describe_signal(signal))
    except SQLAlchemyError:
        logger.warning('Could not record violation for attempt %s', attempt_id, exc_info=True)
    return jsonify({'success': True, 'recorded': recorded}), 202


# --- Mock exams ---

@exam_bp.route('/mock-exams/<int:mock_exam_id>/sessions', methods=['POST'])
def start_mock_exam(mock_exam_id: int):
    plan = attempts.open_mock_exam_session(_require_user(), mock_exam_id)
    status = 200 if plan.resumed else 201
    return jsonify(dict(plan.to_dict(), success=True)), status


@exam_bp.route('/mock-sessions/<int:session_id>', methods=['GET'])
def mock_session_status(session_id: int):
    session = attempts.get_mock_session(_require_user(), session_id)
    return jsonify({'success': True, 'session': session.to_dict()})


@exam_bp.route('/mock-sessions/<int:session_id>/subjects/<int:subject_id>/start', methods=['POST'])
def start_mock_subject(session_id: int, subject_id: int):
    context = attempts.open_mock_subject(_require_user(), session_id, subject_id)
    return jsonify(dict(context.to_dict(), success=True))


@exam_bp.route('/mock-sessions/<int:session_id>/submit-subject', methods=['POST'])
def submit_mock_subject(session_id: int):
    payload = _payload()
    subject_id = payload.get('subject_id')
    if subject_id is None:
        raise ValidationError('subject_id is required')
    try:
        subject_id = int(subject_id)
    except (TypeError, ValueError):
        raise ValidationError('subject_id must be an integer')

    submission = get_engine().submit_mock_exam_subject(
        _require_user(),
        session_id,
        subject_id,
        payload.get('assessment_id'),
        payload.get('answers') or [],
        is_final_subject=bool(payload.get('is_final_subject', False)),
    )
    return jsonify(dict(submission.to_dict(), success=True))
