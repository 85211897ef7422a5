import logging
from typing import Any, Dict, Optional

from flask import jsonify

logger = logging.getLogger(__name__)


class ExamError(Exception):
    """Base class for every failure the session engine reports to a caller."""

    status_code = 500
    code = 'exam_error'
    retryable = False

    def __init__(self, message: str, *, result: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.result = result

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'success': False,
            'error': self.code,
            'message': self.message,
            'retryable': self.retryable,
        }
        if self.result is not None:
            data['result'] = self.result
        return data


class AuthenticationError(ExamError):
    status_code = 401
    code = 'unauthenticated'


class AuthorizationError(ExamError):
    status_code = 403
    code = 'forbidden'


class NotFoundError(ExamError):
    status_code = 404
    code = 'not_found'


class ConflictError(ExamError):
    """The attempt was already graded. `result` holds the stored grade."""

    status_code = 409
    code = 'already_submitted'


class ImmutableRecordError(ConflictError):
    code = 'immutable_record'


class SchedulingError(ExamError):
    status_code = 403
    code = 'not_open'


class ValidationError(ExamError):
    status_code = 400
    code = 'invalid_request'


class TransientError(ExamError):
    status_code = 503
    code = 'transient_failure'
    retryable = True


def register_error_handlers(app) -> None:
    @app.errorhandler(ExamError)
    def _handle_exam_error(err: ExamError):
        if err.status_code >= 500:
            logger.warning('Request failed (%s): %s', err.code, err.message)
        return jsonify(err.to_dict()), err.status_code
