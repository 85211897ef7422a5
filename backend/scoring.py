"""Server-side grading authority.

This module is the only code that reads the answer key. A submission is graded
once: every write is gated by a conditional UPDATE on the still-open row, so a
retried or duplicated request ends in a ConflictError that carries the stored
grade instead of re-grading.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from models import (
    OPTION_LABELS,
    Answer,
    Attempt,
    MockExamSession,
    MockExamSubject,
    Question,
    SubjectResult,
    db,
    utcnow,
)

logger = logging.getLogger(__name__)


def normalize_label(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    label = str(raw).strip().upper()
    if not label:
        return None
    if label not in OPTION_LABELS:
        raise ValidationError(f'Invalid option label {raw!r}')
    return label


def normalize_answers(answers: Any) -> Dict[int, Optional[str]]:
    """Accepts `[{question_id, selected_label}]` or `{question_id: label}`.

    Later entries for the same question win. An empty label means unanswered.
    """
    if answers is None:
        return {}
    if isinstance(answers, dict):
        pairs = list(answers.items())
    elif isinstance(answers, (list, tuple)):
        pairs = []
        for entry in answers:
            if not isinstance(entry, dict):
                raise ValidationError('Each answer must be an object')
            label = entry.get('selected_label', entry.get('selected_answer'))
            pairs.append((entry.get('question_id'), label))
    else:
        raise ValidationError('Invalid answers payload')

    selections: Dict[int, Optional[str]] = {}
    for raw_id, raw_label in pairs:
        try:
            question_id = int(raw_id)
        except (TypeError, ValueError):
            raise ValidationError(f'Invalid question id {raw_id!r}')
        selections[question_id] = normalize_label(raw_label)
    return selections


def is_passing(score: int, total_possible: int, passing_score: int) -> bool:
    # Percentage threshold, inclusive. Integer form keeps the boundary exact.
    if total_possible <= 0:
        return False
    return score * 100 >= (passing_score or 0) * total_possible


def percentage_of(score: int, total_possible: int) -> float:
    if total_possible <= 0:
        return 0.0
    return round(score / total_possible * 100.0, 2)


@dataclass
class Grade:
    correct_count: int
    total_questions: int
    marks_per_question: int
    graded: List[Tuple[int, str, bool]] = field(default_factory=list)

    @property
    def score(self) -> int:
        return self.correct_count * self.marks_per_question

    @property
    def total_possible(self) -> int:
        return self.total_questions * self.marks_per_question


def grade_selections(key: Dict[int, str], selections: Dict[int, Optional[str]], marks_per_question: int) -> Grade:
    unknown = sorted(set(selections) - set(key))
    if unknown:
        raise NotFoundError(f'Questions {unknown} are not part of this assessment')

    graded = []
    correct = 0
    for question_id, label in sorted(selections.items()):
        if label is None:
            continue
        is_correct = label == key[question_id]
        if is_correct:
            correct += 1
        graded.append((question_id, label, is_correct))

    return Grade(
        correct_count=correct,
        total_questions=len(key),
        marks_per_question=max(1, int(marks_per_question or 1)),
        graded=graded,
    )


@dataclass
class AssessmentResult:
    score: int
    total_possible: int
    correct_count: int
    total_questions: int
    passed: bool
    percentage: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'score': self.score,
            'total_possible': self.total_possible,
            'correct_count': self.correct_count,
            'total_questions': self.total_questions,
            'passed': self.passed,
            'percentage': self.percentage,
        }


@dataclass
class SubjectSubmission:
    score: int
    max_score: int
    correct_count: int
    total_questions: int
    exam_completed: bool = False
    total_score: Optional[int] = None
    total_exam_questions: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'score': self.score,
            'max_score': self.max_score,
            'correct_count': self.correct_count,
            'total_questions': self.total_questions,
            'exam_completed': self.exam_completed,
        }
        if self.exam_completed:
            data['total_score'] = self.total_score
            data['total_exam_questions'] = self.total_exam_questions
        return data


class ScoringEngine:
    def __init__(self, notifier=None, *, grace_seconds: int = 30, now: Callable[[], datetime] = utcnow) -> None:
        self.notifier = notifier
        self.grace_seconds = grace_seconds
        self._now = now

    # ------------------------------------------------------------------ helpers

    def _answer_key(self, assessment_id: int) -> Dict[int, str]:
        rows = (
            db.session.query(Question.id, Question.correct_label)
            .filter(Question.assessment_id == assessment_id)
            .all()
        )
        return {question_id: label for question_id, label in rows}

    @staticmethod
    def _answer_rows(attempt_id: int, grade: Grade) -> List[Answer]:
        return [
            Answer(attempt_id=attempt_id, question_id=qid, selected_label=label, is_correct=ok)
            for qid, label, ok in grade.graded
        ]

    def _is_late(self, started_at: Optional[datetime], duration_minutes: Optional[int], now: datetime) -> bool:
        if not started_at or not duration_minutes:
            return False
        deadline = started_at + timedelta(minutes=duration_minutes, seconds=self.grace_seconds)
        return now > deadline

    @staticmethod
    def _already_graded(attempt: Attempt) -> ConflictError:
        return ConflictError('This attempt has already been submitted', result=attempt.result_dict())

    @staticmethod
    def _subject_already_graded(existing: SubjectResult, session: MockExamSession) -> ConflictError:
        result = existing.to_dict()
        result.update(session.aggregate_dict())
        return ConflictError('This subject has already been submitted', result=result)

    def _notify(self, send: Callable, *args) -> None:
        if self.notifier is None:
            return
        try:
            send(*args)
        except Exception:
            logger.warning('Result notification failed', exc_info=True)

    # ------------------------------------------------------- single assessment

    def submit_assessment(self, student_id: Optional[int], attempt_id: int, answers: Any,
                          auto_submitted: bool = False) -> AssessmentResult:
        try:
            return self._submit_assessment(student_id, attempt_id, answers, auto_submitted)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error('Saving attempt %s failed: %s', attempt_id, e)
            raise TransientError('Could not save the submission, please retry') from e

    def _submit_assessment(self, student_id: Optional[int], attempt_id: int, answers: Any,
                           auto_submitted: bool) -> AssessmentResult:
        if student_id is None:
            raise AuthenticationError('Sign in to submit answers')

        selections = normalize_answers(answers)

        attempt = db.session.get(Attempt, attempt_id)
        if attempt is None:
            raise NotFoundError('Attempt not found')
        if attempt.student_id != student_id:
            raise AuthorizationError('You can only submit your own attempts')
        if attempt.is_submitted:
            logger.info('Attempt %s already graded, returning stored result', attempt_id)
            raise self._already_graded(attempt)
        if attempt.mock_exam_session_id is not None:
            raise ValidationError('Mock exam subjects are submitted through their mock exam session')

        assessment = attempt.assessment
        if assessment is None:
            raise NotFoundError('Assessment not found')

        grade = grade_selections(self._answer_key(assessment.id), selections, assessment.marks_per_question)
        passed = is_passing(grade.score, grade.total_possible, assessment.passing_score)
        percentage = percentage_of(grade.score, grade.total_possible)

        now = self._now()
        late = self._is_late(attempt.started_at, assessment.duration_minutes, now)
        if late and not auto_submitted:
            logger.info('Attempt %s arrived after its deadline, recording as auto-submitted', attempt_id)

        try:
            db.session.add_all(self._answer_rows(attempt.id, grade))
            db.session.flush()
            updated = (
                Attempt.query
                .filter(Attempt.id == attempt.id, Attempt.submitted_at.is_(None))
                .update({
                    'submitted_at': now,
                    'score': grade.score,
                    'total_possible': grade.total_possible,
                    'correct_count': grade.correct_count,
                    'total_questions': grade.total_questions,
                    'percentage': percentage,
                    'passed': passed,
                    'auto_submitted': bool(auto_submitted) or late,
                }, synchronize_session=False)
            )
            if updated != 1:
                db.session.rollback()
                raise self._already_graded(db.session.get(Attempt, attempt_id))
            db.session.commit()
        except ConflictError:
            raise
        except IntegrityError:
            db.session.rollback()
            stored = db.session.get(Attempt, attempt_id)
            if stored is not None and stored.is_submitted:
                raise self._already_graded(stored)
            raise TransientError('Could not save the submission, please retry')

        result = AssessmentResult(
            score=grade.score,
            total_possible=grade.total_possible,
            correct_count=grade.correct_count,
            total_questions=grade.total_questions,
            passed=passed,
            percentage=percentage,
        )
        logger.info(
            'Assessment submitted: attempt=%s, score=%s/%s, passed=%s, auto=%s, user=%s',
            attempt_id, result.score, result.total_possible, passed, bool(auto_submitted) or late, student_id,
        )

        student = attempt.student
        if student is not None and self.notifier is not None:
            self._notify(self.notifier.assessment_result, student.email, student.name, assessment.title, result.to_dict())
        return result

    # ------------------------------------------------------ mock exam subjects

    def submit_mock_exam_subject(self, student_id: Optional[int], session_id: int, subject_id: int,
                                 assessment_id: Optional[int], answers: Any,
                                 is_final_subject: bool = False, auto_submitted: bool = False) -> SubjectSubmission:
        try:
            return self._submit_mock_exam_subject(
                student_id, session_id, subject_id, assessment_id, answers, is_final_subject, auto_submitted,
            )
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error('Saving subject %s of mock attempt %s failed: %s', subject_id, session_id, e)
            raise TransientError('Could not save the subject result, please retry') from e

    def _submit_mock_exam_subject(self, student_id: Optional[int], session_id: int, subject_id: int,
                                  assessment_id: Optional[int], answers: Any,
                                  is_final_subject: bool, auto_submitted: bool) -> SubjectSubmission:
        if student_id is None:
            raise AuthenticationError('Sign in to submit answers')

        selections = normalize_answers(answers)

        # Row lock: concurrent submissions for one session grade one at a time.
        session = (
            MockExamSession.query
            .filter_by(id=session_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if session is None:
            raise NotFoundError('Mock exam attempt not found')
        if session.student_id != student_id:
            raise AuthorizationError('You can only submit your own attempts')
        if session.is_completed:
            raise ConflictError('This mock exam has already been completed', result=session.aggregate_dict())

        link = MockExamSubject.query.filter_by(mock_exam_id=session.mock_exam_id, subject_id=subject_id).first()
        if link is None:
            raise NotFoundError(f'Subject {subject_id} is not part of this mock exam')
        if assessment_id is not None:
            try:
                assessment_id = int(assessment_id)
            except (TypeError, ValueError):
                raise ValidationError(f'Invalid assessment id {assessment_id!r}')
            if assessment_id != link.assessment_id:
                raise ValidationError('Assessment does not belong to this mock exam subject')

        existing = SubjectResult.query.filter_by(session_id=session.id, subject_id=subject_id).first()
        if existing is not None:
            logger.info('Mock attempt %s subject %s already graded, returning stored result', session_id, subject_id)
            complete_if_all_graded(session, self._now())
            raise self._subject_already_graded(existing, session)

        mock_exam = session.mock_exam
        grade = grade_selections(self._answer_key(link.assessment_id), selections, mock_exam.marks_per_question)
        now = self._now()

        try:
            db.session.add(SubjectResult(
                session_id=session.id,
                subject_id=subject_id,
                assessment_id=link.assessment_id,
                score=grade.score,
                max_score=grade.total_possible,
                correct_count=grade.correct_count,
                total_questions=grade.total_questions,
                completed_at=now,
            ))

            sub_attempt = (
                Attempt.query
                .filter_by(mock_exam_session_id=session.id, assessment_id=link.assessment_id, student_id=student_id)
                .filter(Attempt.submitted_at.is_(None))
                .first()
            )
            if sub_attempt is not None:
                db.session.add_all(self._answer_rows(sub_attempt.id, grade))
            db.session.flush()

            if sub_attempt is not None:
                passing_score = link.assessment.passing_score if link.assessment else 0
                (
                    Attempt.query
                    .filter(Attempt.id == sub_attempt.id, Attempt.submitted_at.is_(None))
                    .update({
                        'submitted_at': now,
                        'score': grade.score,
                        'total_possible': grade.total_possible,
                        'correct_count': grade.correct_count,
                        'total_questions': grade.total_questions,
                        'percentage': percentage_of(grade.score, grade.total_possible),
                        'passed': is_passing(grade.score, grade.total_possible, passing_score),
                        'auto_submitted': bool(auto_submitted),
                    }, synchronize_session=False)
                )

            (
                MockExamSession.query
                .filter(MockExamSession.id == session.id,
                        MockExamSession.current_subject_index < link.order_position)
                .update({'current_subject_index': link.order_position}, synchronize_session=False)
            )

            aggregate = finalize_mock_session(session.id, session.mock_exam_id, now)
            db.session.commit()
        except ConflictError:
            db.session.rollback()
            raise
        except IntegrityError:
            db.session.rollback()
            existing = SubjectResult.query.filter_by(session_id=session_id, subject_id=subject_id).first()
            if existing is not None:
                stored = db.session.get(MockExamSession, session_id)
                complete_if_all_graded(stored, self._now())
                raise self._subject_already_graded(existing, stored)
            raise TransientError('Could not save the subject result, please retry')

        if is_final_subject and aggregate is None:
            logger.warning('Mock attempt %s: final subject submitted but other subjects are missing results', session_id)

        submission = SubjectSubmission(
            score=grade.score,
            max_score=grade.total_possible,
            correct_count=grade.correct_count,
            total_questions=grade.total_questions,
        )
        if aggregate is not None:
            submission.exam_completed = True
            submission.total_score, submission.total_exam_questions = aggregate

        logger.info(
            'Mock exam subject submitted: attempt=%s, subject=%s, score=%s/%s, completed=%s, user=%s',
            session_id, subject_id, grade.score, grade.total_possible, submission.exam_completed, student_id,
        )

        if submission.exam_completed and self.notifier is not None:
            student = session.student
            if student is not None:
                self._notify(
                    self.notifier.mock_exam_result, student.email, student.name, mock_exam.title,
                    submission.total_score, submission.total_exam_questions,
                )
        return submission


def finalize_mock_session(session_id: int, mock_exam_id: int, now: datetime) -> Optional[Tuple[int, int]]:
    """Close the session once every configured subject has a result.

    Runs inside the caller's transaction and does not commit. Returns the
    aggregate ``(total_score, total_questions)`` or None while subjects are
    still missing.
    """
    expected = MockExamSubject.query.filter_by(mock_exam_id=mock_exam_id).count()
    recorded, total_score, total_questions = (
        db.session.query(
            func.count(SubjectResult.id),
            func.coalesce(func.sum(SubjectResult.score), 0),
            func.coalesce(func.sum(SubjectResult.total_questions), 0),
        )
        .filter(SubjectResult.session_id == session_id)
        .one()
    )
    if expected == 0 or recorded < expected:
        return None

    updated = (
        MockExamSession.query
        .filter(MockExamSession.id == session_id, MockExamSession.is_completed.is_(False))
        .update({
            'is_completed': True,
            'submitted_at': now,
            'total_score': int(total_score),
            'total_questions': int(total_questions),
        }, synchronize_session=False)
    )
    if updated != 1:
        raise ConflictError('This mock exam has already been completed')
    return int(total_score), int(total_questions)


def complete_if_all_graded(session: MockExamSession, now: datetime) -> bool:
    """Finalize a session whose subjects are all graded but which was left open.

    Commits when it closes the session. Returns whether the session is
    completed afterwards.
    """
    if session.is_completed:
        return True
    try:
        aggregate = finalize_mock_session(session.id, session.mock_exam_id, now)
    except ConflictError:
        aggregate = None
    except SQLAlchemyError:
        db.session.rollback()
        raise
    if aggregate is None:
        db.session.rollback()
    else:
        db.session.commit()
        logger.info('Mock attempt %s finalized on recovery: total=%s/%s', session.id, *aggregate)
    return bool(session.is_completed)
