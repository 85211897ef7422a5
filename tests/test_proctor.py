import threading

from guard import SubmissionGuard
from proctor import ViolationMonitor, describe_signal


class FakeClock:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


def test_guard_admits_exactly_one_caller():
    guard = SubmissionGuard()
    assert not guard.acquired
    assert guard.try_acquire() is True
    assert guard.try_acquire() is False
    assert guard.acquired


def test_guard_under_contention():
    guard = SubmissionGuard()
    barrier = threading.Barrier(16)
    wins = []

    def worker():
        barrier.wait()
        if guard.try_acquire():
            wins.append(threading.get_ident())

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(wins) == 1


def test_signals_inside_cooldown_fold_into_one_breach():
    clock = FakeClock()
    persisted = []
    monitor = ViolationMonitor(persist=persisted.append, min_violation_gap_sec=2.5, now=clock)

    first = monitor.observe('visibility_hidden')
    clock.t = 0.4
    assert monitor.observe('window_blur') is None
    clock.t = 3.0
    second = monitor.observe('window_blur')

    assert first.count == 1
    assert first.reason == 'Tab hidden'
    assert second.count == 2
    assert persisted == ['Tab hidden', 'Window blur']
    assert monitor.count == 2


def test_persist_failure_does_not_interrupt():
    def broken(reason):
        raise RuntimeError('db down')

    monitor = ViolationMonitor(persist=broken, min_violation_gap_sec=0)
    breach = monitor.observe('page_hide')

    assert breach is not None
    assert breach.to_dict() == {'signal': 'page_hide', 'message': 'Page hidden', 'count': 1}


def test_stopped_monitor_ignores_signals():
    monitor = ViolationMonitor(min_violation_gap_sec=0)
    monitor.stop()
    assert monitor.observe('visibility_hidden') is None
    assert monitor.count == 0


def test_describe_signal_falls_back_to_readable_text():
    assert describe_signal('connection_lost') == 'Connection lost'
    assert describe_signal('devtools_open') == 'Devtools open'
