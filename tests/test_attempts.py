from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

import attempts
from errors import ConflictError, NotFoundError, SchedulingError
from models import Attempt, MockExam, Violation, db, utcnow


def test_start_hides_answer_key(student, make_assessment):
    assessment = make_assessment(['A', 'B', 'C'])

    context = attempts.open_attempt(student.id, assessment.id)
    data = context.to_dict()

    assert context.resumed is False
    assert len(data['questions']) == 3
    assert 'correct_label' not in repr(data)
    assert set(data['questions'][0]['options']) == {'A', 'B', 'C', 'D'}
    assert data['duration_seconds'] == 30 * 60


def test_reopening_resumes_with_server_side_remaining_time(student, make_assessment):
    assessment = make_assessment(['A'], duration=30)
    started = utcnow() - timedelta(minutes=10)

    first = attempts.open_attempt(student.id, assessment.id, now=started)
    second = attempts.open_attempt(student.id, assessment.id, now=started + timedelta(minutes=10))

    assert second.attempt_id == first.attempt_id
    assert second.resumed is True
    assert second.remaining_seconds == 20 * 60


def test_only_one_open_attempt_per_student(student, make_assessment):
    assessment = make_assessment(['A'])
    attempts.open_attempt(student.id, assessment.id)

    db.session.add(Attempt(student_id=student.id, assessment_id=assessment.id))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()


def test_completed_attempt_blocks_a_retake(engine, student, make_assessment):
    assessment = make_assessment(['A', 'B'])
    attempt_id = attempts.open_attempt(student.id, assessment.id).attempt_id
    engine.submit_assessment(student.id, attempt_id, [])

    with pytest.raises(ConflictError) as excinfo:
        attempts.open_attempt(student.id, assessment.id, max_attempts=1)

    assert excinfo.value.result['total_possible'] == 2


def test_unlimited_retakes(engine, student, make_assessment):
    assessment = make_assessment(['A'])
    first = attempts.open_attempt(student.id, assessment.id, max_attempts=0).attempt_id
    engine.submit_assessment(student.id, first, [])

    second = attempts.open_attempt(student.id, assessment.id, max_attempts=0).attempt_id

    assert second != first
    assert Attempt.query.filter_by(student_id=student.id).count() == 2


def test_scheduling_gate(student, make_assessment):
    tomorrow = (utcnow() + timedelta(days=1)).date()
    later = make_assessment(['A'], scheduled_date=tomorrow)
    inactive = make_assessment(['A'], is_active=False)

    with pytest.raises(SchedulingError):
        attempts.open_attempt(student.id, later.id)
    with pytest.raises(SchedulingError):
        attempts.open_attempt(student.id, inactive.id)
    assert Attempt.query.count() == 0


def test_missing_assessment_or_questions(student, make_assessment):
    empty = make_assessment([])

    with pytest.raises(NotFoundError):
        attempts.open_attempt(student.id, 424242)
    with pytest.raises(NotFoundError):
        attempts.open_attempt(student.id, empty.id)


def test_mock_section_is_not_a_standalone_assessment(student, make_assessment):
    section = make_assessment(['A'], is_mock_exam=True)
    with pytest.raises(SchedulingError):
        attempts.open_attempt(student.id, section.id)


def test_violations_only_count_on_open_attempts(engine, student, make_assessment):
    assessment = make_assessment(['A'])
    attempt_id = attempts.open_attempt(student.id, assessment.id).attempt_id

    assert attempts.record_violation(attempt_id, 'Tab hidden') is True
    assert attempts.record_violation(attempt_id, 'Window blur') is True
    engine.submit_assessment(student.id, attempt_id, [])
    assert attempts.record_violation(attempt_id, 'Page unload') is False

    attempt = db.session.get(Attempt, attempt_id)
    assert attempt.violations == 2
    assert [v.reason for v in Violation.query.filter_by(attempt_id=attempt_id)] == ['Tab hidden', 'Window blur']


def test_mock_session_plan_and_resume(engine, student, make_mock_exam):
    mock_exam = make_mock_exam(subjects=3, per_subject=15)

    plan = attempts.open_mock_exam_session(student.id, mock_exam.id)
    link = db.session.get(MockExam, mock_exam.id).subjects[0]
    engine.submit_mock_exam_subject(student.id, plan.session_id, link.subject_id, link.assessment_id, [])
    again = attempts.open_mock_exam_session(student.id, mock_exam.id)

    assert plan.remaining_seconds == 15 * 60
    assert [s.order_position for s in plan.subjects] == [1, 2, 3]
    assert again.session_id == plan.session_id
    assert again.resumed
    assert [s.completed for s in again.subjects] == [True, False, False]


def test_shared_timing_counts_from_session_start(student, make_mock_exam):
    mock_exam = make_mock_exam(subjects=2, timing_mode=MockExam.TIMING_SHARED, total=60)
    started = utcnow() - timedelta(minutes=25)

    attempts.open_mock_exam_session(student.id, mock_exam.id, now=started)
    plan = attempts.open_mock_exam_session(student.id, mock_exam.id, now=started + timedelta(minutes=25))
    link = db.session.get(MockExam, mock_exam.id).subjects[1]
    context = attempts.open_mock_subject(student.id, plan.session_id, link.subject_id,
                                         now=started + timedelta(minutes=25))

    assert plan.remaining_seconds == 35 * 60
    assert context.remaining_seconds == 35 * 60
    assert context.duration_seconds == 60 * 60


def test_graded_subject_cannot_be_reopened(engine, student, make_mock_exam):
    mock_exam = make_mock_exam(subjects=2)
    plan = attempts.open_mock_exam_session(student.id, mock_exam.id)
    link = db.session.get(MockExam, mock_exam.id).subjects[0]
    engine.submit_mock_exam_subject(student.id, plan.session_id, link.subject_id, link.assessment_id, [])

    with pytest.raises(ConflictError):
        attempts.open_mock_subject(student.id, plan.session_id, link.subject_id)


def test_scheduled_mock_exam_is_gated(student, make_mock_exam):
    tomorrow = (utcnow() + timedelta(days=1)).date()
    mock_exam = make_mock_exam(subjects=1, scheduled_date=tomorrow)
    with pytest.raises(SchedulingError):
        attempts.open_mock_exam_session(student.id, mock_exam.id)
