# src/bgsched/engine/executor.py
from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from bgsched.domain.errors import TIMED_OUT, UNKNOWN_WORK, TransientFailure
from bgsched.domain.models import ExecutionResult, ScheduledInstance, TaskDefinition
from bgsched.domain.states import Outcome
from bgsched.logging import get_logger, get_work_logger

from .host import LoggingNotifier, Notifier
from .registry import TaskRegistry

_LOG = get_logger(__name__)


class _BudgetExceeded(Exception):
    def __init__(self, thread: Optional[threading.Thread] = None) -> None:
        super().__init__()
        self.thread = thread


class _WorkTimeout(Exception):
    def __init__(self, error: TimeoutError) -> None:
        super().__init__(error)
        self.error = error


@dataclass
class WorkContext:
    """
    What a work function receives.

    Cancellation is cooperative: long-running work should check `cancelled`
    (or wait on `cancel_event`) and return early once it is set.
    """
    task_name: str
    instance_id: str
    attempt: int
    input_data: dict[str, Any]
    deadline: float
    cancel_event: threading.Event = field(default_factory=threading.Event)
    notifier: Notifier = field(default_factory=LoggingNotifier)
    logger: logging.Logger = field(default_factory=lambda: get_logger("bgsched.work"))

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def remaining_s(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def notify(self, title: str, body: str = "") -> None:
        self.notifier.notify(title, body, task_name=self.task_name)


class Executor:
    """
    Runs one work function under a wall-clock budget and reports exactly one
    ExecutionResult.

    Return value mapping: an Outcome is taken as is, True or None mean
    SUCCESS, False means RETRY. TransientFailure means RETRY, any other
    exception means FAILURE. Running past the budget means RETRY with error
    TimedOut; the work is asked to stop through its cancel event, never killed.

    A sync work function that ignores the cancel event keeps its thread. The
    task stays busy (see is_busy) until that thread exits, so a retry never
    overlaps the run it replaces.
    """

    def __init__(self, registry: TaskRegistry, notifier: Optional[Notifier] = None) -> None:
        self._registry = registry
        self._notifier = notifier or LoggingNotifier()
        self._abandoned: dict[str, threading.Thread] = {}
        self._abandoned_lock = threading.Lock()

    def is_busy(self, task_name: str) -> bool:
        """True while a timed-out run of task_name is still executing."""
        with self._abandoned_lock:
            t = self._abandoned.get(task_name)
            if t is None:
                return False
            if t.is_alive():
                return True
            del self._abandoned[task_name]
        _LOG.info("Timed-out run of %s has exited", task_name)
        return False

    def run(
        self,
        definition: TaskDefinition,
        instance: ScheduledInstance,
        budget_ms: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExecutionResult:
        fn = self._registry.work_for(definition.work_id)
        if fn is None:
            _LOG.error("No work function bound for %s (task %s)", definition.work_id, definition.name)
            return self._result(instance, Outcome.FAILURE, 0, f"{UNKNOWN_WORK}: {definition.work_id}")

        budget_s = max(0.0, budget_ms / 1000.0)
        start = time.monotonic()
        ctx = WorkContext(
            task_name=definition.name,
            instance_id=instance.id,
            attempt=instance.attempt,
            input_data=dict(definition.input_data),
            deadline=start + budget_s,
            cancel_event=cancel_event if cancel_event is not None else threading.Event(),
            notifier=self._notifier,
            logger=get_work_logger(definition.name),
        )

        _LOG.info("Running task %s (instance=%s attempt=%d budget=%dms)",
                  definition.name, instance.id, instance.attempt, budget_ms)
        try:
            if inspect.iscoroutinefunction(fn):
                value = self._run_async(fn, ctx, budget_s)
            else:
                value = self._run_sync(fn, ctx, budget_s)
        except _BudgetExceeded as e:
            ctx.cancel_event.set()
            if e.thread is not None and e.thread.is_alive():
                with self._abandoned_lock:
                    self._abandoned[definition.name] = e.thread
            _LOG.warning("Task %s exceeded its %dms budget", definition.name, budget_ms)
            return self._result(instance, Outcome.RETRY, _elapsed_ms(start), TIMED_OUT)
        except TransientFailure as e:
            _LOG.info("Task %s asked for a retry: %s", definition.name, e)
            return self._result(instance, Outcome.RETRY, _elapsed_ms(start), f"TransientFailure: {e}")
        except Exception as e:
            _LOG.exception("Task %s raised", definition.name)
            return self._result(instance, Outcome.FAILURE, _elapsed_ms(start), repr(e))
        except KeyboardInterrupt:
            raise
        except BaseException as e:
            _LOG.error("Task %s raised %r", definition.name, e)
            return self._result(instance, Outcome.FAILURE, _elapsed_ms(start), repr(e))

        outcome = _to_outcome(value)
        duration = _elapsed_ms(start)
        _LOG.info("Task %s finished with %s in %dms", definition.name, outcome, duration)
        return self._result(instance, outcome, duration, None)

    def _run_async(self, fn, ctx: WorkContext, budget_s: float) -> Any:
        async def _call() -> Any:
            try:
                return await fn(ctx)
            except TimeoutError as e:
                # Keep the work's own TimeoutError apart from wait_for's.
                raise _WorkTimeout(e) from e

        try:
            return asyncio.run(asyncio.wait_for(_call(), timeout=budget_s))
        except TimeoutError:
            raise _BudgetExceeded() from None
        except _WorkTimeout as e:
            raise e.error from None

    def _run_sync(self, fn, ctx: WorkContext, budget_s: float) -> Any:
        box: dict[str, Any] = {}

        def _target() -> None:
            try:
                box["value"] = fn(ctx)
            except BaseException as e:  # re-raised on the calling thread
                box["error"] = e

        t = threading.Thread(target=_target, name=f"bgsched-work-{ctx.task_name}", daemon=True)
        t.start()
        t.join(timeout=budget_s)
        if t.is_alive():
            raise _BudgetExceeded(t)
        if "error" in box:
            raise box["error"]
        return box.get("value")

    def _result(self, instance: ScheduledInstance, outcome: Outcome, duration_ms: int,
                error: Optional[str]) -> ExecutionResult:
        return ExecutionResult(
            instance_id=instance.id,
            task_name=instance.task_name,
            outcome=outcome,
            attempt=instance.attempt,
            duration_ms=duration_ms,
            error=error,
        )


def _to_outcome(value: Any) -> Outcome:
    if isinstance(value, Outcome):
        return value
    if value is False:
        return Outcome.RETRY
    return Outcome.SUCCESS


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
