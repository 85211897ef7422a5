import sys
from itertools import count
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from werkzeug.security import generate_password_hash

BACKEND_DIR = Path(__file__).resolve().parents[1] / 'backend'
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from app import create_app  # noqa: E402
from config import TestingConfig  # noqa: E402
from models import (  # noqa: E402
    Answer,
    Assessment,
    MockExam,
    MockExamSubject,
    Question,
    Subject,
    User,
    db,
)


class FakeNotifier:
    def __init__(self):
        self.assessment_results = []
        self.mock_exam_results = []

    def assessment_result(self, email, name, title, result):
        self.assessment_results.append((email, title, result))

    def mock_exam_result(self, email, name, title, total_score, total_questions):
        self.mock_exam_results.append((email, title, total_score, total_questions))


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def notifier(app):
    fake = FakeNotifier()
    app.extensions['scoring_engine'].notifier = fake
    return fake


@pytest.fixture
def engine(app, notifier):
    return app.extensions['scoring_engine']


def connection_lost(statement='SELECT'):
    return OperationalError(statement, {}, Exception('connection lost'))


@pytest.fixture
def failing_answer_insert(app):
    """The next Answer INSERT fails the way a dropped connection would."""
    armed = {'pending': True}

    def fail(mapper, connection, target):
        if armed['pending']:
            armed['pending'] = False
            raise connection_lost('INSERT INTO answers')

    event.listen(Answer, 'before_insert', fail)
    yield armed
    event.remove(Answer, 'before_insert', fail)


_seq = count(1)


@pytest.fixture
def make_user(app):
    def _make(role='student', name=None, email=None, password='password123'):
        n = next(_seq)
        user = User(
            name=name or f'{role.title()} {n}',
            email=email or f'{role}{n}@test.com',
            password=generate_password_hash(password, method='pbkdf2:sha256'),
            role=role,
        )
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def student(make_user):
    return make_user('student', email='student@test.com')


def _subject(name=None):
    subject = Subject(name=name or f'Subject {next(_seq)}')
    db.session.add(subject)
    db.session.flush()
    return subject


@pytest.fixture
def make_assessment(app):
    """Assessment with one question per entry in `labels` (the correct option)."""
    def _make(labels=('A', 'B', 'C', 'D', 'A'), *, marks=1, passing=50, duration=30,
              subject=None, is_mock_exam=False, **extra):
        subject = subject or _subject()
        assessment = Assessment(
            title=extra.pop('title', f'{subject.name} quiz'),
            subject_id=subject.id,
            duration_minutes=duration,
            passing_score=passing,
            marks_per_question=marks,
            is_mock_exam=is_mock_exam,
            **extra,
        )
        db.session.add(assessment)
        db.session.flush()
        for index, label in enumerate(labels):
            db.session.add(Question(
                assessment_id=assessment.id,
                question_text=f'Question {index + 1}',
                option_a='first',
                option_b='second',
                option_c='third',
                option_d='fourth',
                correct_label=label,
                order_index=index,
            ))
        db.session.commit()
        return assessment
    return _make


@pytest.fixture
def make_mock_exam(app, make_assessment):
    def _make(subjects=4, labels=('A', 'B', 'C', 'D', 'A'), *, marks=1,
              timing_mode=MockExam.TIMING_PER_SUBJECT, per_subject=10, total=40, **extra):
        mock_exam = MockExam(
            title=extra.pop('title', 'Mock exam'),
            timing_mode=timing_mode,
            duration_per_subject_minutes=per_subject,
            total_duration_minutes=total,
            marks_per_question=marks,
            **extra,
        )
        db.session.add(mock_exam)
        db.session.flush()
        for position in range(1, subjects + 1):
            subject = _subject()
            section = make_assessment(labels, subject=subject, is_mock_exam=True, duration=per_subject)
            db.session.add(MockExamSubject(
                mock_exam_id=mock_exam.id,
                subject_id=subject.id,
                assessment_id=section.id,
                order_position=position,
            ))
        db.session.commit()
        return mock_exam
    return _make


def questions_of(assessment):
    return (
        Question.query.filter_by(assessment_id=assessment.id)
        .order_by(Question.order_index.asc())
        .all()
    )


def answer_sheet(questions, correct=0, wrong=0):
    """First `correct` questions answered right, next `wrong` answered wrong, rest blank."""
    sheet = []
    for index, question in enumerate(questions):
        if index < correct:
            label = question.correct_label
        elif index < correct + wrong:
            label = 'D' if question.correct_label != 'D' else 'A'
        else:
            label = None
        sheet.append({'question_id': question.id, 'selected_label': label})
    return sheet


def login(client, user):
    with client.session_transaction() as sess:
        sess['user_id'] = user.id
        sess['role'] = user.role


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def student_client(client, student):
    login(client, student)
    return client
