import pytest

from pgpair.exceptions import ConvergenceTimeout
from pgpair.result import StepResult, summarize
from pgpair.utils.polling import wait_until


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def test_returns_first_truthy_value():
    clock = FakeClock()
    answers = iter([None, 0, "ready"])

    value = wait_until(lambda: next(answers), timeout=10, interval=1,
                       sleep=clock.sleep, clock=clock)

    assert value == "ready"
    assert clock.sleeps == [1, 1]


def test_times_out_with_last_error():
    clock = FakeClock()

    def probe():
        raise OSError("connection refused")

    with pytest.raises(ConvergenceTimeout, match="instance to start: connection refused"):
        wait_until(probe, timeout=3, interval=1, description="instance to start",
                   sleep=clock.sleep, clock=clock)
    assert clock.now == 3


def test_zero_timeout_probes_once():
    calls = []

    def probe():
        calls.append(1)
        return False

    with pytest.raises(ConvergenceTimeout):
        wait_until(probe, timeout=0, sleep=lambda s: None)
    assert len(calls) == 1


def test_summarize_counts_each_status():
    results = [
        StepResult.changed("install_postgresql"),
        StepResult.changed("configure_postgresql"),
        StepResult.unchanged("setup_postgres_user"),
        StepResult.failed("set_postgres_password"),
    ]
    assert summarize(results) == "1 unchanged, 2 changed, 1 failed"
    assert [r.ok for r in results] == [True, True, True, False]
