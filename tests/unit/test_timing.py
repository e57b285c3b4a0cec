import pytest
from core.timing import TimeBudgetGuard


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def make_guard(clock):
    return TimeBudgetGuard("test", budget_seconds=30, warning_seconds=25, critical_seconds=28, clock=clock)


def test_guard_thresholds():
    clock = FakeClock()
    guard = make_guard(clock)

    assert guard.elapsed() == 0
    assert not guard.is_exhausted()

    clock.now += 24
    assert not guard.is_exhausted()
    assert guard.remaining() == pytest.approx(6.0)

    clock.now += 1
    assert guard.is_exhausted()
    assert not guard.is_critical()

    clock.now += 3
    assert guard.is_critical()

    clock.now += 10
    assert guard.remaining() == 0.0


def test_guard_checkpoints_summary():
    clock = FakeClock()
    guard = make_guard(clock)

    clock.now += 1.5
    guard.checkpoint("page1")
    clock.now += 2.0
    guard.checkpoint("page2")

    assert guard.summary() == {"page1": 1.5, "page2": 3.5}


def test_performance_warning_logged(caplog):
    clock = FakeClock()
    guard = make_guard(clock)

    clock.now += 26
    guard.log_performance_warning()
    assert "[PERFORMANCE WARNING]" in caplog.text

    clock.now += 3
    guard.log_performance_warning()
    assert "[PERFORMANCE CRITICAL]" in caplog.text


def test_guard_keeps_explicit_zero_thresholds():
    guard = TimeBudgetGuard("test", budget_seconds=0, warning_seconds=0, critical_seconds=0, clock=FakeClock())

    assert guard.budget_seconds == 0
    assert guard.warning_seconds == 0
    assert guard.is_exhausted()
    assert guard.is_critical()
