# tests/test_executor.py
import asyncio
import sys
import threading
import time

import pytest

from bgsched.domain.errors import TIMED_OUT, TransientFailure
from bgsched.domain.models import ScheduledInstance, TaskDefinition
from bgsched.domain.states import Outcome
from bgsched.engine.executor import Executor
from bgsched.engine.registry import TaskRegistry


class RecordingNotifier:
    def __init__(self):
        self.messages = []

    def notify(self, title, body, *, task_name=None):
        self.messages.append((task_name, title, body))


@pytest.fixture()
def registry(db):
    return TaskRegistry(db)


def _run(registry, fn, *, budget_ms=2_000, notifier=None, cancel_event=None, attempt=0):
    registry.bind("job", fn)
    definition = TaskDefinition(name="job", work_id="job", input_data={"path": "/tmp/x"})
    instance = ScheduledInstance(id="i-1", task_name="job", next_run_at=0, attempt=attempt)
    return Executor(registry, notifier).run(definition, instance, budget_ms, cancel_event)


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, Outcome.SUCCESS),
        (True, Outcome.SUCCESS),
        ("anything", Outcome.SUCCESS),
        (False, Outcome.RETRY),
        (Outcome.FAILURE, Outcome.FAILURE),
    ],
)
def test_return_values_map_to_outcomes(registry, value, expected):
    result = _run(registry, lambda ctx: value)
    assert result.outcome == expected
    assert result.instance_id == "i-1"
    assert result.task_name == "job"
    assert result.error is None


def test_transient_failure_requests_retry(registry):
    def work(ctx):
        raise TransientFailure("server busy")

    result = _run(registry, work)
    assert result.outcome == Outcome.RETRY
    assert "server busy" in result.error


def test_unhandled_error_is_failure_with_captured_error(registry):
    def work(ctx):
        raise ValueError("corrupt payload")

    result = _run(registry, work)
    assert result.outcome == Outcome.FAILURE
    assert "ValueError" in result.error and "corrupt payload" in result.error


def test_missing_work_function_is_failure(registry):
    definition = TaskDefinition(name="orphan", work_id="nobody")
    instance = ScheduledInstance(id="i-2", task_name="orphan", next_run_at=0)
    result = Executor(registry).run(definition, instance, 1_000)
    assert result.outcome == Outcome.FAILURE
    assert result.error.startswith("UnknownWork")


def test_sync_timeout_sets_cancel_event_and_requests_retry(registry):
    observed = threading.Event()

    def work(ctx):
        if ctx.cancel_event.wait(timeout=5.0):
            observed.set()
        return True

    result = _run(registry, work, budget_ms=100)

    assert result.outcome == Outcome.RETRY
    assert result.error == TIMED_OUT
    assert result.duration_ms >= 90
    assert observed.wait(timeout=2.0), "work function never saw the cancellation"


def test_async_work_function(registry):
    async def work(ctx):
        await asyncio.sleep(0.01)
        return ctx.input_data["path"] == "/tmp/x"

    assert _run(registry, work).outcome == Outcome.SUCCESS


def test_async_timeout_is_cancelled_cooperatively(registry):
    async def work(ctx):
        await asyncio.sleep(5)
        return True

    result = _run(registry, work, budget_ms=100)
    assert result.outcome == Outcome.RETRY
    assert result.error == TIMED_OUT


def test_context_exposes_attempt_input_and_notifier(registry):
    notifier = RecordingNotifier()
    seen = {}

    def work(ctx):
        seen["attempt"] = ctx.attempt
        seen["input"] = ctx.input_data
        seen["remaining"] = ctx.remaining_s()
        ctx.notify("Upload", "done")
        return True

    _run(registry, work, notifier=notifier, attempt=2)

    assert seen["attempt"] == 2
    assert seen["input"] == {"path": "/tmp/x"}
    assert 0 < seen["remaining"] <= 2.0
    assert notifier.messages == [("job", "Upload", "done")]


def test_precancelled_token_is_visible(registry):
    token = threading.Event()
    token.set()
    result = _run(registry, lambda ctx: not ctx.cancelled, cancel_event=token)
    assert result.outcome == Outcome.RETRY


def test_system_exit_in_work_is_a_failure(registry):
    def work(ctx):
        sys.exit(3)

    result = _run(registry, work)
    assert result.outcome == Outcome.FAILURE
    assert "SystemExit" in result.error


def test_stubborn_timeout_keeps_task_busy_until_thread_exits(registry):
    gate = threading.Event()
    executor = Executor(registry)
    registry.bind("job", lambda ctx: gate.wait(timeout=5.0))
    definition = TaskDefinition(name="job", work_id="job")
    instance = ScheduledInstance(id="i-3", task_name="job", next_run_at=0)

    result = executor.run(definition, instance, 100)
    assert result.error == TIMED_OUT
    assert executor.is_busy("job")
    assert not executor.is_busy("other")

    gate.set()
    for _ in range(500):
        if not executor.is_busy("job"):
            break
        time.sleep(0.01)
    assert not executor.is_busy("job")
