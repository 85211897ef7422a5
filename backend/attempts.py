"""Opening attempts: scheduling gate, retake policy, resume, violation log."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    SchedulingError,
)
from models import (
    Assessment,
    Attempt,
    MockExam,
    MockExamSession,
    Question,
    SubjectResult,
    Violation,
    db,
    utcnow,
)
from scoring import complete_if_all_graded

logger = logging.getLogger(__name__)


@dataclass
class AttemptContext:
    """What a live session needs to start: never includes the answer key."""

    attempt_id: int
    assessment: Dict[str, Any]
    questions: List[Dict[str, Any]]
    duration_seconds: int
    remaining_seconds: int
    resumed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'attempt_id': self.attempt_id,
            'assessment': self.assessment,
            'questions': self.questions,
            'duration_seconds': self.duration_seconds,
            'remaining_seconds': self.remaining_seconds,
            'resumed': self.resumed,
        }


@dataclass
class SubjectSlot:
    subject_id: int
    assessment_id: int
    name: str
    order_position: int
    completed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'subject_id': self.subject_id,
            'assessment_id': self.assessment_id,
            'name': self.name,
            'order_position': self.order_position,
            'completed': self.completed,
        }


@dataclass
class MockExamPlan:
    session_id: int
    mock_exam: Dict[str, Any]
    timing_mode: str
    duration_per_subject_seconds: int
    total_duration_seconds: int
    remaining_seconds: int
    subjects: List[SubjectSlot] = field(default_factory=list)
    resumed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'mock_exam': self.mock_exam,
            'timing_mode': self.timing_mode,
            'duration_per_subject_seconds': self.duration_per_subject_seconds,
            'total_duration_seconds': self.total_duration_seconds,
            'remaining_seconds': self.remaining_seconds,
            'subjects': [s.to_dict() for s in self.subjects],
            'resumed': self.resumed,
        }


def _remaining(started_at: Optional[datetime], duration_seconds: int, now: datetime) -> int:
    if not started_at:
        return duration_seconds
    elapsed = int((now - started_at).total_seconds())
    return max(0, duration_seconds - elapsed)


def _check_open(opens_at: Optional[datetime], is_active: Optional[bool], label: str, now: datetime) -> None:
    if is_active is False:
        raise SchedulingError(f'{label} is not active')
    if opens_at and now < opens_at:
        raise SchedulingError(f"{label} opens at {opens_at.strftime('%b %d, %Y %H:%M')} UTC")


def _questions_for(assessment_id: int) -> List[Question]:
    return (
        Question.query.filter_by(assessment_id=assessment_id)
        .order_by(Question.order_index.asc(), Question.id.asc())
        .all()
    )


def _find_open_attempt(student_id: int, assessment_id: int) -> Optional[Attempt]:
    return (
        Attempt.query
        .filter_by(student_id=student_id, assessment_id=assessment_id)
        .filter(Attempt.submitted_at.is_(None))
        .first()
    )


def _create_attempt(student_id: int, assessment_id: int, mock_exam_session_id: Optional[int], now: datetime) -> Attempt:
    attempt = Attempt(
        student_id=student_id,
        assessment_id=assessment_id,
        mock_exam_session_id=mock_exam_session_id,
        started_at=now,
    )
    try:
        db.session.add(attempt)
        db.session.commit()
        return attempt
    except IntegrityError:
        # Lost the race against a concurrent start; the unique index kept one open row.
        db.session.rollback()
        existing = _find_open_attempt(student_id, assessment_id)
        if existing is None:
            raise
        return existing


def open_attempt(student_id: Optional[int], assessment_id: int, *, max_attempts: int = 1,
                 now: Optional[datetime] = None) -> AttemptContext:
    """Start, or resume, the student's attempt at a standalone assessment."""
    if student_id is None:
        raise AuthenticationError('Sign in to take this assessment')
    now = now or utcnow()

    assessment = db.session.get(Assessment, assessment_id)
    if assessment is None:
        raise NotFoundError('Assessment not found')
    _check_open(assessment.opens_at(), assessment.is_active, 'This assessment', now)
    if assessment.is_mock_exam:
        raise SchedulingError('This assessment is only available inside its mock exam')

    questions = _questions_for(assessment.id)
    if not questions:
        raise NotFoundError('This assessment has no questions yet')

    attempt = _find_open_attempt(student_id, assessment.id)
    resumed = attempt is not None
    if attempt is not None and attempt.mock_exam_session_id is not None:
        raise ConflictError('This assessment is in progress inside a mock exam')

    if attempt is None:
        completed = (
            Attempt.query
            .filter_by(student_id=student_id, assessment_id=assessment.id)
            .filter(Attempt.submitted_at.isnot(None))
            .order_by(Attempt.submitted_at.desc())
            .all()
        )
        if max_attempts and len(completed) >= max_attempts:
            raise ConflictError('You have already completed this assessment', result=completed[0].result_dict())
        attempt = _create_attempt(student_id, assessment.id, None, now)

    duration = int(assessment.duration_minutes or 0) * 60
    logger.info('%s attempt %s for assessment %s (user %s)',
                'Resumed' if resumed else 'Started', attempt.id, assessment.id, student_id)
    return AttemptContext(
        attempt_id=attempt.id,
        assessment=assessment.to_dict(),
        questions=[q.to_public_dict() for q in questions],
        duration_seconds=duration,
        remaining_seconds=_remaining(attempt.started_at, duration, now),
        resumed=resumed,
    )


def get_attempt(student_id: Optional[int], attempt_id: int) -> Attempt:
    if student_id is None:
        raise AuthenticationError('Sign in to view this attempt')
    attempt = db.session.get(Attempt, attempt_id)
    if attempt is None:
        raise NotFoundError('Attempt not found')
    if attempt.student_id != student_id:
        raise AuthorizationError('You can only view your own attempts')
    return attempt


def record_violation(attempt_id: int, reason: str) -> bool:
    """Best-effort violation counter. Returns False when nothing was recorded.

    Only open attempts are touched; a graded attempt is read-only.
    """
    try:
        updated = (
            Attempt.query
            .filter(Attempt.id == attempt_id, Attempt.submitted_at.is_(None))
            .update({'violations': Attempt.violations + 1}, synchronize_session=False)
        )
        if updated != 1:
            db.session.rollback()
            return False
        db.session.add(Violation(attempt_id=attempt_id, reason=reason[:100]))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise
    logger.info('Violation on attempt %s: %s', attempt_id, reason)
    return True


# --- Mock exams ---

def _get_own_session(student_id: Optional[int], session_id: int) -> MockExamSession:
    if student_id is None:
        raise AuthenticationError('Sign in to take this mock exam')
    session = db.session.get(MockExamSession, session_id)
    if session is None:
        raise NotFoundError('Mock exam attempt not found')
    if session.student_id != student_id:
        raise AuthorizationError('You can only access your own attempts')
    return session


def get_mock_session(student_id: Optional[int], session_id: int) -> MockExamSession:
    return _get_own_session(student_id, session_id)


def open_mock_exam_session(student_id: Optional[int], mock_exam_id: int, *,
                           now: Optional[datetime] = None) -> MockExamPlan:
    if student_id is None:
        raise AuthenticationError('Sign in to take this mock exam')
    now = now or utcnow()

    mock_exam = db.session.get(MockExam, mock_exam_id)
    if mock_exam is None:
        raise NotFoundError('Mock exam not found')
    _check_open(mock_exam.opens_at(), mock_exam.is_active, 'This mock exam', now)
    if not mock_exam.subjects:
        raise NotFoundError('This mock exam has no subjects configured')

    session = MockExamSession.query.filter_by(mock_exam_id=mock_exam.id, student_id=student_id).first()
    resumed = session is not None
    if session is not None and session.is_completed:
        raise ConflictError('You have already completed this mock exam', result=session.aggregate_dict())

    if session is None:
        session = MockExamSession(mock_exam_id=mock_exam.id, student_id=student_id, started_at=now)
        try:
            db.session.add(session)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            session = MockExamSession.query.filter_by(mock_exam_id=mock_exam.id, student_id=student_id).first()
            if session is None:
                raise

    done = {r.subject_id for r in SubjectResult.query.filter_by(session_id=session.id).all()}
    if all(link.subject_id in done for link in mock_exam.subjects) and complete_if_all_graded(session, now):
        raise ConflictError('You have already completed this mock exam', result=session.aggregate_dict())

    slots = [
        SubjectSlot(
            subject_id=link.subject_id,
            assessment_id=link.assessment_id,
            name=link.subject.name if link.subject else f'Subject {link.order_position}',
            order_position=link.order_position,
            completed=link.subject_id in done,
        )
        for link in mock_exam.subjects
    ]

    per_subject = int(mock_exam.duration_per_subject_minutes or 0) * 60
    total = int(mock_exam.total_duration_minutes or 0) * 60
    if mock_exam.timing_mode == MockExam.TIMING_SHARED:
        remaining = _remaining(session.started_at, total, now)
    else:
        remaining = per_subject

    logger.info('%s mock attempt %s for mock exam %s (user %s)',
                'Resumed' if resumed else 'Started', session.id, mock_exam.id, student_id)
    return MockExamPlan(
        session_id=session.id,
        mock_exam=mock_exam.to_dict(),
        timing_mode=mock_exam.timing_mode,
        duration_per_subject_seconds=per_subject,
        total_duration_seconds=total,
        remaining_seconds=remaining,
        subjects=slots,
        resumed=resumed,
    )


def open_mock_subject(student_id: Optional[int], session_id: int, subject_id: int, *,
                      now: Optional[datetime] = None) -> AttemptContext:
    """Open the sub-attempt for one subject of a mock exam session."""
    now = now or utcnow()
    session = _get_own_session(student_id, session_id)
    if session.is_completed:
        raise ConflictError('This mock exam has already been completed', result=session.aggregate_dict())

    mock_exam = session.mock_exam
    link = next((s for s in mock_exam.subjects if s.subject_id == subject_id), None)
    if link is None:
        raise NotFoundError(f'Subject {subject_id} is not part of this mock exam')

    existing = SubjectResult.query.filter_by(session_id=session.id, subject_id=subject_id).first()
    if existing is not None:
        raise ConflictError('This subject has already been submitted', result=existing.to_dict())

    questions = _questions_for(link.assessment_id)
    attempt = _find_open_attempt(session.student_id, link.assessment_id)
    resumed = attempt is not None
    if attempt is not None and attempt.mock_exam_session_id != session.id:
        raise ConflictError('This subject assessment is already in progress elsewhere')
    if attempt is None:
        attempt = _create_attempt(session.student_id, link.assessment_id, session.id, now)

    if mock_exam.timing_mode == MockExam.TIMING_SHARED:
        duration = int(mock_exam.total_duration_minutes or 0) * 60
        remaining = _remaining(session.started_at, duration, now)
    else:
        duration = int(mock_exam.duration_per_subject_minutes or 0) * 60
        remaining = _remaining(attempt.started_at, duration, now)

    assessment = link.assessment.to_dict() if link.assessment else {'id': link.assessment_id}
    assessment['subject_id'] = subject_id
    return AttemptContext(
        attempt_id=attempt.id,
        assessment=assessment,
        questions=[q.to_public_dict() for q in questions],
        duration_seconds=duration,
        remaining_seconds=remaining,
        resumed=resumed,
    )
