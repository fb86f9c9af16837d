# tests/test_wake_loop.py
import threading

import pytest

from bgsched.engine.host import WakeLoop


class FakeScheduler:
    def __init__(self):
        self.host = None
        self.wakes = []
        self.woke = threading.Event()

    def attach_host(self, host):
        self.host = host

    def on_wake(self, now_ms, budget_ms=None, environment=None):
        self.wakes.append((now_ms, budget_ms))
        self.woke.set()


def test_loop_attaches_itself_as_host():
    fake = FakeScheduler()
    loop = WakeLoop(fake, budget_ms=1_000)
    assert fake.host is loop


def test_request_wake_keeps_the_earliest_time():
    loop = WakeLoop(FakeScheduler(), budget_ms=1_000, clock=lambda: 0)
    loop.request_wake(500)
    loop.request_wake(200)
    loop.request_wake(900)
    assert loop.next_wake_at == 200


def test_start_wakes_immediately_with_budget():
    fake = FakeScheduler()
    loop = WakeLoop(fake, budget_ms=1_234, max_idle_ms=10_000, clock=lambda: 42)
    loop.start()
    try:
        assert fake.woke.wait(timeout=2.0)
    finally:
        loop.stop(timeout_s=2.0)
    assert fake.wakes[0] == (42, 1_234)


def test_failing_wake_does_not_kill_the_loop():
    class Exploding(FakeScheduler):
        def on_wake(self, now_ms, budget_ms=None, environment=None):
            super().on_wake(now_ms, budget_ms, environment)
            if len(self.wakes) == 1:
                raise RuntimeError("boom")

    fake = Exploding()
    loop = WakeLoop(fake, budget_ms=1_000, max_idle_ms=10_000, clock=lambda: 0)
    loop.start()
    try:
        assert fake.woke.wait(timeout=2.0)
        fake.woke.clear()
        loop.request_wake(0)
        assert fake.woke.wait(timeout=2.0)
    finally:
        loop.stop(timeout_s=2.0)
    assert len(fake.wakes) >= 2


def test_runs_registered_task_end_to_end(scheduler):
    done = threading.Event()
    scheduler.registry.bind("ping", lambda ctx: done.set() or True)

    loop = WakeLoop(scheduler, budget_ms=2_000, max_idle_ms=200)
    loop.start()
    try:
        scheduler.register("ping")
        assert done.wait(timeout=5.0)
    finally:
        loop.stop(timeout_s=5.0)


@pytest.mark.parametrize("kwargs", [{"budget_ms": 0}, {"budget_ms": 10, "max_idle_ms": 0}])
def test_invalid_arguments(kwargs):
    with pytest.raises(ValueError):
        WakeLoop(FakeScheduler(), **kwargs)
