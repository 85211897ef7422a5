import pytest

import live
from conftest import questions_of
from countdown import Countdown
from live import socketio
from models import Attempt, MockExam, MockExamSession, db


class ManualTime:
    """Countdowns that only move when a test ticks them."""

    def __init__(self):
        self.t = 0.0
        self.clocks = []

    def __call__(self):
        return self.t

    def factory(self, seconds, on_tick, on_expire):
        clock = Countdown(seconds, on_tick, on_expire, spawn=lambda fn: None, now=self)
        self.clocks.append(clock)
        return clock


@pytest.fixture
def clocks(monkeypatch):
    manual = ManualTime()
    monkeypatch.setattr(live, '_clock_factory', manual.factory)
    return manual


@pytest.fixture
def sock(app, student_client, notifier, clocks):
    client = socketio.test_client(app, flask_test_client=student_client)
    yield client
    if client.is_connected():
        client.disconnect()


def _events(client, name):
    return [msg['args'][0] if msg['args'] else None for msg in client.get_received() if msg['name'] == name]


def _received(client):
    return {msg['name']: (msg['args'][0] if msg['args'] else None) for msg in client.get_received()}


def test_live_assessment_submit(sock, make_assessment):
    assessment = make_assessment(['A', 'B', 'C'])
    questions = questions_of(assessment)

    ack = sock.emit('start_exam', {'assessment_id': assessment.id}, callback=True)
    assert ack['success'] is True
    events = _received(sock)
    assert 'correct_label' not in repr(events['exam_loaded'])
    assert len(events['exam_loaded']['questions']) == 3

    assert sock.emit('answer', {'question_id': questions[0].id, 'label': 'A'}, callback=True) == {'accepted': True}
    assert sock.emit('answer', {'question_id': questions[1].id, 'label': 'X'}, callback=True) == {'accepted': False}
    assert sock.emit('submit_exam', callback=True) == {'accepted': True}
    assert sock.emit('submit_exam', callback=True) == {'accepted': False}

    submitted = _events(sock, 'exam_submitted')
    assert len(submitted) == 1
    assert submitted[0]['result']['score'] == 1
    assert submitted[0]['auto_submitted'] is False

    db.session.expire_all()
    attempt = db.session.get(Attempt, ack['attempt_id'])
    assert attempt.is_submitted
    assert attempt.total_possible == 3


def test_tab_change_ends_the_attempt(sock, make_assessment):
    assessment = make_assessment(['A', 'B'])
    ack = sock.emit('start_exam', {'assessment_id': assessment.id}, callback=True)
    sock.get_received()

    sock.emit('tab_change')

    events = _received(sock)
    assert events['warning_alert']['message'] == 'Tab hidden'
    assert events['exam_submitted']['auto_submitted'] is True
    assert events['exam_submitted']['trigger'] == 'visibility_hidden'
    db.session.expire_all()
    attempt = db.session.get(Attempt, ack['attempt_id'])
    assert attempt.violations == 1
    assert attempt.auto_submitted is True


def test_timer_runs_out(sock, clocks, make_assessment):
    assessment = make_assessment(['A'])
    ack = sock.emit('start_exam', {'assessment_id': assessment.id}, callback=True)
    sock.get_received()

    clocks.t = 3600
    clocks.clocks[0].tick()

    events = _received(sock)
    assert events['time_remaining'] == {'seconds': 0}
    assert events['exam_submitted']['trigger'] == 'timer'
    db.session.expire_all()
    assert db.session.get(Attempt, ack['attempt_id']).auto_submitted is True


def test_disconnect_submits_open_attempt(sock, make_assessment):
    assessment = make_assessment(['A', 'B'])
    ack = sock.emit('start_exam', {'assessment_id': assessment.id}, callback=True)

    sock.disconnect()

    assert live.live_sessions == {}
    db.session.expire_all()
    attempt = db.session.get(Attempt, ack['attempt_id'])
    assert attempt.is_submitted
    assert attempt.auto_submitted is True
    assert attempt.violation_log[0].reason == 'Connection lost'


def test_start_requires_identity(app, client, clocks, make_assessment):
    assessment = make_assessment(['A'])
    anonymous = socketio.test_client(app, flask_test_client=client)

    ack = anonymous.emit('start_exam', {'assessment_id': assessment.id}, callback=True)

    assert ack == {'success': False}
    assert _events(anonymous, 'exam_blocked')[0]['error'] == 'unauthenticated'
    anonymous.disconnect()


def test_second_session_is_blocked_after_grading(sock, make_assessment):
    assessment = make_assessment(['A'])
    sock.emit('start_exam', {'assessment_id': assessment.id}, callback=True)
    sock.emit('submit_exam')
    sock.get_received()

    ack = sock.emit('start_exam', {'assessment_id': assessment.id}, callback=True)

    assert ack['success'] is False
    blocked = _events(sock, 'exam_blocked')
    assert blocked[0]['error'] == 'already_submitted'


def test_live_mock_exam(sock, make_mock_exam):
    mock_exam = make_mock_exam(subjects=2, labels=['A', 'A'])
    links = list(db.session.get(MockExam, mock_exam.id).subjects)

    ack = sock.emit('start_mock_exam', {'mock_exam_id': mock_exam.id}, callback=True)
    assert ack['success'] is True
    events = _received(sock)
    assert len(events['mock_exam_loaded']['subjects']) == 2
    assert events['subject_started']['subject']['subject_id'] == links[0].subject_id

    for _ in links:
        for q in events['exam_loaded']['questions']:
            sock.emit('answer', {'question_id': q['id'], 'label': 'A'})
        sock.emit('submit_exam')
        events = _received(sock)

    completed = events['mock_exam_completed']
    assert completed['exam_completed'] is True
    assert completed['total_score'] == 4
    assert completed['total_exam_questions'] == 4
    db.session.expire_all()
    assert db.session.get(MockExamSession, ack['session_id']).is_completed
