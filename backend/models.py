from datetime import datetime, timezone, time as dt_time
from typing import Optional

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event, inspect, text

from errors import ImmutableRecordError

# Initialize SQLAlchemy
db = SQLAlchemy()

OPTION_LABELS = ('A', 'B', 'C', 'D')


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _opens_at(scheduled_date, scheduled_time) -> Optional[datetime]:
    if not scheduled_date:
        return None
    return datetime.combine(scheduled_date, scheduled_time or dt_time(0, 0))


# --- USER MODEL ---
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=True)
    email = db.Column(db.String(100), unique=True, nullable=False)
    password = db.Column(db.String(200), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='student')  # student, teacher, admin

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.role,
        }


class Subject(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), unique=True, nullable=False)


# --- ASSESSMENT MODELS ---
class Assessment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    subject_id = db.Column(db.Integer, db.ForeignKey('subject.id'), nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    duration_minutes = db.Column(db.Integer, nullable=False)
    passing_score = db.Column(db.Integer, nullable=False, default=50)  # percentage
    marks_per_question = db.Column(db.Integer, nullable=False, default=1)
    scheduled_date = db.Column(db.Date, nullable=True)
    scheduled_time = db.Column(db.Time, nullable=True)
    is_active = db.Column(db.Boolean, default=True)
    is_mock_exam = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    subject = db.relationship('Subject')

    def opens_at(self) -> Optional[datetime]:
        return _opens_at(self.scheduled_date, self.scheduled_time)

    def to_dict(self):
        opens = self.opens_at()
        return {
            'id': self.id,
            'title': self.title,
            'subject_id': self.subject_id,
            'subject': self.subject.name if self.subject else None,
            'duration_minutes': self.duration_minutes,
            'passing_score': self.passing_score,
            'marks_per_question': self.marks_per_question,
            'opens_at': opens.isoformat() if opens else None,
        }


class Question(db.Model):
    __table_args__ = (
        db.CheckConstraint("correct_label IN ('A', 'B', 'C', 'D')", name='ck_question_label'),
    )

    id = db.Column(db.Integer, primary_key=True)
    assessment_id = db.Column(db.Integer, db.ForeignKey('assessment.id'), nullable=False)
    question_text = db.Column(db.Text, nullable=False)
    option_a = db.Column(db.Text, nullable=False)
    option_b = db.Column(db.Text, nullable=False)
    option_c = db.Column(db.Text, nullable=False)
    option_d = db.Column(db.Text, nullable=False)
    correct_label = db.Column(db.String(1), nullable=False)
    order_index = db.Column(db.Integer, default=0)

    assessment = db.relationship('Assessment', backref='questions')

    def to_public_dict(self):
        # The answer key stays on the server.
        return {
            'id': self.id,
            'question_text': self.question_text,
            'options': {
                'A': self.option_a,
                'B': self.option_b,
                'C': self.option_c,
                'D': self.option_d,
            },
            'order_index': self.order_index,
        }


# --- ATTEMPT MODELS ---
class Attempt(db.Model):
    __table_args__ = (
        # Retake guard: one open attempt per (student, assessment).
        db.Index(
            'uq_attempt_open', 'student_id', 'assessment_id', unique=True,
            sqlite_where=text('submitted_at IS NULL'),
            postgresql_where=text('submitted_at IS NULL'),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    assessment_id = db.Column(db.Integer, db.ForeignKey('assessment.id'), nullable=False)
    mock_exam_session_id = db.Column(db.Integer, db.ForeignKey('mock_exam_attempts.id'), nullable=True)
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    submitted_at = db.Column(db.DateTime, nullable=True)

    score = db.Column(db.Integer, nullable=True)
    total_possible = db.Column(db.Integer, nullable=True)
    correct_count = db.Column(db.Integer, nullable=True)
    total_questions = db.Column(db.Integer, nullable=True)
    percentage = db.Column(db.Float, nullable=True)
    passed = db.Column(db.Boolean, nullable=True)
    violations = db.Column(db.Integer, default=0, nullable=False)
    auto_submitted = db.Column(db.Boolean, default=False, nullable=False)

    assessment = db.relationship('Assessment')
    student = db.relationship('User', backref='attempts')
    answers = db.relationship('Answer', backref='attempt', lazy=True)
    violation_log = db.relationship('Violation', backref='attempt', lazy=True)

    @property
    def is_submitted(self) -> bool:
        return self.submitted_at is not None

    def result_dict(self):
        return {
            'score': self.score,
            'total_possible': self.total_possible,
            'correct_count': self.correct_count,
            'total_questions': self.total_questions,
            'passed': self.passed,
            'percentage': self.percentage,
        }

    def to_dict(self):
        data = {
            'id': self.id,
            'assessment_id': self.assessment_id,
            'mock_exam_session_id': self.mock_exam_session_id,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'submitted_at': self.submitted_at.isoformat() if self.submitted_at else None,
            'violations': self.violations,
            'auto_submitted': self.auto_submitted,
        }
        if self.is_submitted:
            data['result'] = self.result_dict()
        return data


class Answer(db.Model):
    __table_args__ = (
        db.UniqueConstraint('attempt_id', 'question_id', name='uq_answer_question'),
    )

    id = db.Column(db.Integer, primary_key=True)
    attempt_id = db.Column(db.Integer, db.ForeignKey('attempt.id'), nullable=False)
    question_id = db.Column(db.Integer, db.ForeignKey('question.id'), nullable=False)
    selected_label = db.Column(db.String(1), nullable=True)
    is_correct = db.Column(db.Boolean, default=False, nullable=False)

    question = db.relationship('Question')


# --- VIOLATION MODEL ---
class Violation(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    attempt_id = db.Column(db.Integer, db.ForeignKey('attempt.id'), nullable=False)
    reason = db.Column(db.String(100), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)


# --- MOCK EXAM MODELS ---
class MockExam(db.Model):
    TIMING_PER_SUBJECT = 'per_subject'
    TIMING_SHARED = 'shared'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    scheduled_date = db.Column(db.Date, nullable=True)
    scheduled_time = db.Column(db.Time, nullable=True)
    duration_per_subject_minutes = db.Column(db.Integer, nullable=False, default=45)
    total_duration_minutes = db.Column(db.Integer, nullable=False, default=180)
    timing_mode = db.Column(db.String(20), nullable=False, default=TIMING_PER_SUBJECT)
    marks_per_question = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, default=True)
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    subjects = db.relationship(
        'MockExamSubject', backref='mock_exam', lazy=True,
        order_by='MockExamSubject.order_position',
    )

    def opens_at(self) -> Optional[datetime]:
        return _opens_at(self.scheduled_date, self.scheduled_time)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'timing_mode': self.timing_mode,
            'duration_per_subject_minutes': self.duration_per_subject_minutes,
            'total_duration_minutes': self.total_duration_minutes,
            'marks_per_question': self.marks_per_question,
        }


class MockExamSubject(db.Model):
    __table_args__ = (
        db.UniqueConstraint('mock_exam_id', 'subject_id', name='uq_mock_exam_subject'),
        db.CheckConstraint('order_position >= 1 AND order_position <= 4', name='ck_order_position'),
    )

    id = db.Column(db.Integer, primary_key=True)
    mock_exam_id = db.Column(db.Integer, db.ForeignKey('mock_exam.id'), nullable=False)
    subject_id = db.Column(db.Integer, db.ForeignKey('subject.id'), nullable=False)
    assessment_id = db.Column(db.Integer, db.ForeignKey('assessment.id'), nullable=False)
    order_position = db.Column(db.Integer, nullable=False, default=1)

    subject = db.relationship('Subject')
    assessment = db.relationship('Assessment')


class MockExamSession(db.Model):
    __tablename__ = 'mock_exam_attempts'
    __table_args__ = (
        db.UniqueConstraint('mock_exam_id', 'student_id', name='uq_mock_exam_student'),
    )

    id = db.Column(db.Integer, primary_key=True)
    mock_exam_id = db.Column(db.Integer, db.ForeignKey('mock_exam.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    submitted_at = db.Column(db.DateTime, nullable=True)
    current_subject_index = db.Column(db.Integer, default=0, nullable=False)
    total_score = db.Column(db.Integer, default=0, nullable=False)
    total_questions = db.Column(db.Integer, default=0, nullable=False)
    is_completed = db.Column(db.Boolean, default=False, nullable=False)

    mock_exam = db.relationship('MockExam')
    student = db.relationship('User')
    results = db.relationship('SubjectResult', backref='session', lazy=True)

    def aggregate_dict(self):
        return {
            'exam_completed': self.is_completed,
            'total_score': self.total_score,
            'total_exam_questions': self.total_questions,
        }

    def to_dict(self):
        return {
            'id': self.id,
            'mock_exam_id': self.mock_exam_id,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'submitted_at': self.submitted_at.isoformat() if self.submitted_at else None,
            'current_subject_index': self.current_subject_index,
            'is_completed': self.is_completed,
            'total_score': self.total_score,
            'total_questions': self.total_questions,
            'subject_results': [r.to_dict() for r in self.results],
        }


class SubjectResult(db.Model):
    __tablename__ = 'mock_exam_subject_results'
    __table_args__ = (
        db.UniqueConstraint('session_id', 'subject_id', name='uq_subject_result'),
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey('mock_exam_attempts.id'), nullable=False)
    subject_id = db.Column(db.Integer, db.ForeignKey('subject.id'), nullable=False)
    assessment_id = db.Column(db.Integer, db.ForeignKey('assessment.id'), nullable=False)
    score = db.Column(db.Integer, default=0, nullable=False)
    max_score = db.Column(db.Integer, default=0, nullable=False)
    correct_count = db.Column(db.Integer, default=0, nullable=False)
    total_questions = db.Column(db.Integer, default=0, nullable=False)
    completed_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'subject_id': self.subject_id,
            'assessment_id': self.assessment_id,
            'score': self.score,
            'max_score': self.max_score,
            'correct_count': self.correct_count,
            'total_questions': self.total_questions,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }


# --- WRITE-ONCE ENFORCEMENT ---
# Grading writes go through conditional bulk UPDATEs; these hooks reject ORM
# edits that would touch a record after it has been graded.

@event.listens_for(Attempt, 'before_update')
def _reject_graded_attempt_update(mapper, connection, target):
    history = inspect(target).attrs.submitted_at.load_history()
    if history.deleted:
        previous = history.deleted[0]
    elif history.unchanged:
        previous = history.unchanged[0]
    else:
        previous = None
    if previous is not None:
        raise ImmutableRecordError(f'Attempt {target.id} has been submitted and is read-only')


@event.listens_for(Answer, 'before_update')
def _reject_answer_update(mapper, connection, target):
    raise ImmutableRecordError(f'Answer {target.id} is read-only')


@event.listens_for(SubjectResult, 'before_update')
def _reject_subject_result_update(mapper, connection, target):
    raise ImmutableRecordError(f'Subject result {target.id} is read-only')
