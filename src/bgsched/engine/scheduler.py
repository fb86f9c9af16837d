# src/bgsched/engine/scheduler.py
from __future__ import annotations

import math
import sqlite3
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, TypeVar, Union

import pydantic

from bgsched.config import Settings
from bgsched.domain.errors import PersistenceError, ValidationError, validation_details
from bgsched.domain.models import (
    Constraints,
    Environment,
    ExecutionResult,
    ScheduledInstance,
    TaskDefinition,
    TaskView,
)
from bgsched.domain.states import BackoffKind, InstanceState
from bgsched.logging import get_logger
from bgsched.storage import SQLiteDB, TaskRepo

from .constraints import ConstraintEvaluator
from .executor import Executor
from .host import HostBridge, Notifier, now_ms
from .recovery import find_stale_running, stale_result
from .registry import TaskRegistry
from .retry import Decision, RetryPolicy, Verdict

_LOG = get_logger(__name__)

T = TypeVar("T")

FailureCallback = Callable[[str, ExecutionResult], None]
EnvironmentProvider = Callable[[], Environment]


@dataclass(frozen=True)
class SchedulerConfig:
    """
    Runtime config for the scheduler core.
    """
    max_concurrent_tasks: int = 4
    max_attempts: int = 3
    base_delay_ms: int = 30_000
    max_delay_ms: int = 18_000_000
    min_interval_ms: int = 900_000
    recheck_delay_ms: int = 60_000
    stale_after_ms: int = 900_000
    wake_budget_ms: int = 600_000
    history_size: int = 200
    on_duplicate: str = "reject"

    # Part of each wake budget kept back for committing results.
    commit_reserve_ms: int = 1_000

    # Max due instances considered in a single tick
    dispatch_batch_size: int = 500

    @classmethod
    def from_settings(cls, settings: Settings) -> "SchedulerConfig":
        return cls(
            max_concurrent_tasks=settings.max_concurrent_tasks,
            max_attempts=settings.max_attempts,
            base_delay_ms=settings.base_delay_ms,
            max_delay_ms=settings.max_delay_ms,
            min_interval_ms=settings.min_interval_ms,
            recheck_delay_ms=settings.recheck_delay_ms,
            stale_after_ms=settings.stale_after_ms,
            wake_budget_ms=settings.wake_budget_ms,
            history_size=settings.history_size,
            on_duplicate=settings.on_duplicate,
        )


@dataclass
class TickReport:
    now_ms: int
    dispatched: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)
    next_wake_at: Optional[int] = None
    futures: list[Future] = field(default_factory=list, repr=False)


@dataclass
class _InFlight:
    task_name: str
    cancel_event: threading.Event


class Scheduler:
    """
    Wake-up driven scheduler with at-least-once delivery.

    Each wake-up (tick):
    - recovers RUNNING instances orphaned by a dead process
    - evaluates constraints of due PENDING instances, deferring the unmet ones
    - claims runnable instances (one RUNNING per task) and submits them to a worker pool

    Results flow back through on_result, where the retry policy decides the
    next state and periodic tasks get their next cycle.

    Concurrency semantics:
    - All instance mutations happen under one in-process lock and inside
      BEGIN IMMEDIATE transactions, so ticks and results never interleave.
    - Distinct tasks run in parallel on the pool; a tick never waits for
      executions, on_wake does (up to the budget).
    """

    def __init__(
        self,
        db: SQLiteDB,
        cfg: Optional[SchedulerConfig] = None,
        *,
        registry: Optional[TaskRegistry] = None,
        evaluator: Optional[ConstraintEvaluator] = None,
        retry_policy: Optional[RetryPolicy] = None,
        executor: Optional[Executor] = None,
        notifier: Optional[Notifier] = None,
        environment_provider: Optional[EnvironmentProvider] = None,
        on_failure: Optional[FailureCallback] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        cfg = cfg or SchedulerConfig()
        if cfg.max_concurrent_tasks <= 0:
            raise ValueError("max_concurrent_tasks must be > 0")
        if cfg.recheck_delay_ms <= 0:
            raise ValueError("recheck_delay_ms must be > 0")
        if cfg.stale_after_ms <= 0:
            raise ValueError("stale_after_ms must be > 0")

        self._db = db
        self._cfg = cfg
        self._registry = registry or TaskRegistry(
            db, min_interval_ms=cfg.min_interval_ms, on_duplicate=cfg.on_duplicate
        )
        self._evaluator = evaluator or ConstraintEvaluator()
        self._retry = retry_policy or RetryPolicy(
            max_attempts=cfg.max_attempts,
            base_delay_ms=cfg.base_delay_ms,
            max_delay_ms=cfg.max_delay_ms,
        )
        self._executor = executor or Executor(self._registry, notifier)
        self._environment = environment_provider or Environment.unrestricted
        self._on_failure = on_failure
        self._clock = clock

        self._host: Optional[HostBridge] = None
        self._lock = threading.RLock()
        self._inflight: dict[str, _InFlight] = {}
        self._history: deque[ExecutionResult] = deque(maxlen=cfg.history_size)

        self._pool = ThreadPoolExecutor(
            max_workers=cfg.max_concurrent_tasks,
            thread_name_prefix="bgsched-worker",
        )

    @property
    def registry(self) -> TaskRegistry:
        return self._registry

    @property
    def executor(self) -> Executor:
        return self._executor

    @property
    def config(self) -> SchedulerConfig:
        return self._cfg

    def attach_host(self, host: HostBridge) -> None:
        self._host = host

    def close(self) -> None:
        """
        Signals cancellation to in-flight work and shuts the worker pool down.

        Running work functions are not interrupted; their results still commit.
        """
        with self._lock:
            for f in self._inflight.values():
                f.cancel_event.set()
        self._pool.shutdown(wait=False, cancel_futures=False)

    # -------------------------
    # Registration / cancellation
    # -------------------------

    def register(
        self,
        name: str,
        *,
        work_id: Optional[str] = None,
        constraints: Union[Constraints, Mapping[str, Any], None] = None,
        periodic: bool = False,
        interval_ms: Optional[int] = None,
        initial_delay_ms: int = 0,
        input_data: Optional[Mapping[str, Any]] = None,
        tag: Optional[str] = None,
        backoff: BackoffKind = BackoffKind.EXPONENTIAL,
        now_ms: Optional[int] = None,
    ) -> TaskDefinition:
        """
        Declares a task and arms its first instance.

        Returns the stored definition (the existing one when the duplicate
        policy is keep).
        """
        now = self._now(now_ms)
        try:
            definition = TaskDefinition(
                name=name,
                work_id=work_id or name,
                constraints=constraints if constraints is not None else Constraints(),
                periodic=periodic,
                interval_ms=interval_ms,
                initial_delay_ms=initial_delay_ms,
                input_data=dict(input_data or {}),
                tag=tag,
                backoff=backoff,
                created_at=now,
            )
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid task definition: {name}", details=validation_details(e)) from e

        with self._lock:
            stored = self._persist("register", self._registry.register, definition, now)
        if not stored:
            return self._persist("lookup", self._registry.lookup, name)

        self._request_wake(now + definition.initial_delay_ms)
        return definition

    def cancel(self, name: str, *, now_ms: Optional[int] = None) -> list[str]:
        """
        Cancels the PENDING instances of a task and removes its definition.

        A RUNNING instance keeps running; its cancel event is set so
        cooperative work can stop early. Raises UnknownTaskError if absent.
        """
        now = self._now(now_ms)
        with self._lock:
            cancelled = self._persist("cancel", self._registry.unregister, name, now)
            self._signal_cancel({name})
        return cancelled

    def cancel_by_tag(self, tag: str, *, now_ms: Optional[int] = None) -> list[str]:
        now = self._now(now_ms)
        with self._lock:
            removed = self._persist("cancel by tag", self._registry.unregister_by_tag, tag, now)
            self._signal_cancel(set(removed))
        return removed

    def cancel_all(self, *, now_ms: Optional[int] = None) -> list[str]:
        now = self._now(now_ms)
        with self._lock:
            removed = self._persist("cancel all", self._registry.unregister_all, now)
            self._signal_cancel(set(removed))
        return removed

    # -------------------------
    # Host entry points
    # -------------------------

    def on_wake(
        self,
        now_ms: int,
        budget_ms: Optional[int] = None,
        environment: Optional[Environment] = None,
    ) -> TickReport:
        """
        Entry point for the host's wake-up.

        Ticks, waits for the dispatched executions until the budget runs out,
        then re-arms the host for the earliest pending instance.
        """
        budget = budget_ms if budget_ms is not None else self._cfg.wake_budget_ms
        started = time.monotonic()

        report = self.tick(now_ms, budget_ms=budget, environment=environment)

        if report.futures:
            remaining_s = max(0.0, budget / 1000.0 - (time.monotonic() - started))
            _, not_done = wait(report.futures, timeout=remaining_s)
            if not_done:
                _LOG.warning("%d execution(s) still running when the wake budget ran out", len(not_done))
            with self._lock:
                report.next_wake_at = self._persist("load next wake", self._load_next_wake)

        self._request_wake(report.next_wake_at)
        return report

    def tick(
        self,
        now_ms: int,
        *,
        budget_ms: Optional[int] = None,
        environment: Optional[Environment] = None,
    ) -> TickReport:
        budget = budget_ms if budget_ms is not None else self._cfg.wake_budget_ms
        env = environment if environment is not None else self._environment()
        # Executions must finish by run_deadline, leaving the reserve for commits.
        run_deadline = time.monotonic() + (budget - min(self._cfg.commit_reserve_ms, budget // 10)) / 1000.0
        report = TickReport(now_ms=now_ms)

        with self._lock:
            report.recovered = self._recover_stale(now_ms)

            due, running, definitions = self._persist("load due instances", self._load_due, now_ms)
            for inst in due:
                if inst.task_name in running:
                    _LOG.debug("Task %s already running; instance %s waits", inst.task_name, inst.id)
                    continue
                if self._executor.is_busy(inst.task_name):
                    _LOG.debug("Timed-out run of %s still executing; instance %s waits", inst.task_name, inst.id)
                    continue

                definition = definitions.get(inst.task_name)
                if definition is None:
                    _LOG.warning("Instance %s has no definition for task %s; skipping", inst.id, inst.task_name)
                    continue

                if not self._evaluator.is_runnable(definition, env, now_ms):
                    recheck_at = now_ms + self._cfg.recheck_delay_ms
                    self._persist("defer instance", self._defer, inst.id, recheck_at, now_ms)
                    report.deferred.append(inst.id)
                    _LOG.debug(
                        "Deferred %s (instance %s) until %d: unmet %s",
                        inst.task_name,
                        inst.id,
                        recheck_at,
                        self._evaluator.unmet(definition, env, now_ms),
                    )
                    continue

                claimed = self._persist("claim instance", self._claim, inst.id, now_ms)
                if claimed is None:
                    continue
                running.add(inst.task_name)

                report.futures.append(self._dispatch(definition, claimed, run_deadline))
                report.dispatched.append(claimed.id)

            report.next_wake_at = self._persist("load next wake", self._load_next_wake)

        if report.dispatched or report.recovered:
            _LOG.info(
                "Tick at %d: dispatched=%d deferred=%d recovered=%d",
                now_ms,
                len(report.dispatched),
                len(report.deferred),
                len(report.recovered),
            )
        return report

    def on_result(self, instance_id: str, result: ExecutionResult) -> Optional[Decision]:
        """
        Applies the retry policy to a finished execution.

        Returns the decision, or None when the instance was no longer RUNNING
        (for example recovered as stale in the meantime).
        """
        with self._lock:
            self._history.append(result)
            instance, definition = self._persist("load instance", self._load_instance, instance_id)
            if instance is None or instance.state != InstanceState.RUNNING:
                _LOG.warning(
                    "Ignoring result for instance %s (state=%s)",
                    instance_id,
                    instance.state if instance else "missing",
                )
                return None
            decision = self._apply(instance, definition, result)

        if decision.verdict == Verdict.FAILED:
            self._report_failure(result)
        return decision

    # -------------------------
    # Queries
    # -------------------------

    def instances(self, task_name: Optional[str] = None) -> list[ScheduledInstance]:
        with self._db.session() as conn:
            return TaskRepo(conn).list_instances(task_name=task_name)

    def describe(self, name: str) -> TaskView:
        with self._db.session() as conn:
            repo = TaskRepo(conn)
            return TaskView(definition=repo.get_definition(name), instances=repo.list_instances(task_name=name))

    def describe_all(self, tag: Optional[str] = None) -> list[TaskView]:
        with self._db.session() as conn:
            repo = TaskRepo(conn)
            return [
                TaskView(definition=d, instances=repo.list_instances(task_name=d.name))
                for d in repo.list_definitions(tag=tag)
            ]

    def history(self) -> list[ExecutionResult]:
        with self._lock:
            return list(self._history)

    def export_state(self) -> dict[str, dict[str, Any]]:
        with self._lock, self._db.session() as conn:
            return TaskRepo(conn).export_state()

    def import_state(self, state: Mapping[str, Any]) -> int:
        with self._lock:
            written = self._persist("import state", self._import_state, dict(state))
        _LOG.info("Imported %d instance(s) for %d task(s)", written, len(state))
        return written

    # -------------------------
    # Internals
    # -------------------------

    def _dispatch(self, definition: TaskDefinition, instance: ScheduledInstance, deadline: float) -> Future:
        token = threading.Event()
        self._inflight[instance.id] = _InFlight(task_name=instance.task_name, cancel_event=token)
        fut = self._pool.submit(self._execute, definition, instance, deadline, token)
        fut.add_done_callback(self._on_job_done(instance.task_name, instance.id))
        return fut

    def _execute(
        self,
        definition: TaskDefinition,
        instance: ScheduledInstance,
        deadline: float,
        token: threading.Event,
    ) -> Optional[ExecutionResult]:
        """
        Runs one claimed instance on a pool thread.

        The budget is measured against the wake-up deadline, so work that
        waited in the pool queue only gets what is left of it. When nothing is
        left the instance goes back to PENDING without using an attempt.
        """
        try:
            budget_ms = math.ceil((deadline - time.monotonic()) * 1000)
            if budget_ms <= 0:
                with self._lock:
                    self._persist("release instance", self._release, instance.id, instance.started_at or 0)
                _LOG.info("Wake budget spent before %s (instance %s) could start; released", instance.task_name,
                          instance.id)
                return None
            result = self._executor.run(definition, instance, budget_ms, token)
            self.on_result(instance.id, result)
            return result
        finally:
            with self._lock:
                self._inflight.pop(instance.id, None)

    def _on_job_done(self, task_name: str, instance_id: str):
        def _cb(fut: Future) -> None:
            try:
                fut.result()
            except Exception as e:
                # The instance stays RUNNING; stale recovery picks it up.
                _LOG.exception("Committing result of %s (instance %s) failed: %r", task_name, instance_id, e)

        return _cb

    def _apply(
        self,
        instance: ScheduledInstance,
        definition: Optional[TaskDefinition],
        result: ExecutionResult,
    ) -> Decision:
        backoff = definition.backoff if definition is not None else BackoffKind.EXPONENTIAL
        decision = self._retry.decide(result.outcome, instance.attempt, backoff)

        started = instance.started_at if instance.started_at is not None else instance.next_run_at
        finished = started + result.duration_ms
        next_cycle_at = None
        if definition is not None and definition.periodic and definition.interval_ms:
            next_cycle_at = started + definition.interval_ms

        if decision.is_retry and definition is not None:
            state = InstanceState.PENDING
            attempt = instance.attempt + 1
            next_run_at = finished + decision.delay_ms
            finished_at = None
        elif decision.is_retry:
            # Task was cancelled while this attempt ran; the chain ends here.
            state = InstanceState.CANCELLED
            attempt, next_run_at, finished_at = instance.attempt, instance.next_run_at, finished
        else:
            state = InstanceState.SUCCEEDED if decision.verdict == Verdict.SUCCEEDED else InstanceState.FAILED
            attempt, next_run_at, finished_at = instance.attempt, instance.next_run_at, finished

        self._persist(
            "record result",
            self._finish,
            instance.id,
            state=state,
            attempt=attempt,
            next_run_at=next_run_at,
            finished_at=finished_at,
            error=result.error,
            now_ms=finished,
            next_cycle_at=next_cycle_at,
        )
        _LOG.info(
            "Task %s instance %s attempt %d: %s -> %s%s",
            instance.task_name,
            instance.id,
            instance.attempt,
            result.outcome,
            state,
            f" (retry at {next_run_at})" if state == InstanceState.PENDING else "",
        )
        return decision

    def _recover_stale(self, now_ms: int) -> list[str]:
        stale = self._persist(
            "find stale instances",
            find_stale_running,
            self._db,
            now_ms,
            stale_after_ms=self._cfg.stale_after_ms,
            in_flight=set(self._inflight),
        )
        recovered: list[str] = []
        for inst in stale:
            _LOG.warning("Instance %s of %s stuck RUNNING since %s; treating as retry", inst.id, inst.task_name,
                         inst.started_at)
            definition = self._persist("load definition", self._find_definition, inst.task_name)
            result = stale_result(inst)
            self._history.append(result)
            decision = self._apply(inst, definition, result)
            if decision.verdict == Verdict.FAILED:
                self._report_failure(result)
            recovered.append(inst.id)
        return recovered

    def _report_failure(self, result: ExecutionResult) -> None:
        _LOG.error(
            "Task %s failed permanently after %d attempt(s): %s",
            result.task_name,
            result.attempt + 1,
            result.error,
        )
        if self._on_failure is None:
            return
        try:
            self._on_failure(result.task_name, result)
        except Exception:
            _LOG.exception("Failure callback for %s raised", result.task_name)

    def _signal_cancel(self, names: set[str]) -> None:
        for f in self._inflight.values():
            if f.task_name in names:
                f.cancel_event.set()

    def _request_wake(self, at_ms: Optional[int]) -> None:
        if self._host is not None and at_ms is not None:
            self._host.request_wake(at_ms)

    def _now(self, now_ms: Optional[int]) -> int:
        return self._clock() if now_ms is None else now_ms

    def _persist(self, op: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Runs a storage call, retrying once on a SQLite failure.

        Every call opens its own connection and transaction, so the retry starts
        from committed state; a second failure surfaces as PersistenceError.
        """
        try:
            return fn(*args, **kwargs)
        except sqlite3.Error as e:
            _LOG.warning("Persistence failure during %s (%r); retrying once", op, e)
        try:
            return fn(*args, **kwargs)
        except sqlite3.Error as e:
            _LOG.error("Persistence failure during %s after retry: %r", op, e)
            raise PersistenceError(f"Persistence failure during {op}: {e}", details={"operation": op}) from e

    # Storage calls, each on a fresh connection.

    def _load_due(self, now_ms: int) -> tuple[list[ScheduledInstance], set[str], dict[str, TaskDefinition]]:
        with self._db.session() as conn:
            repo = TaskRepo(conn)
            due = repo.due_pending(now_ms, limit=self._cfg.dispatch_batch_size)
            running = repo.running_task_names()
            definitions: dict[str, TaskDefinition] = {}
            for name in {inst.task_name for inst in due}:
                definition = repo.find_definition(name)
                if definition is not None:
                    definitions[name] = definition
        return due, running, definitions

    def _load_instance(self, instance_id: str) -> tuple[Optional[ScheduledInstance], Optional[TaskDefinition]]:
        with self._db.session() as conn:
            repo = TaskRepo(conn)
            instance = repo.get_instance(instance_id)
            definition = repo.find_definition(instance.task_name) if instance is not None else None
        return instance, definition

    def _find_definition(self, name: str) -> Optional[TaskDefinition]:
        with self._db.session() as conn:
            return TaskRepo(conn).find_definition(name)

    def _load_next_wake(self) -> Optional[int]:
        with self._db.session() as conn:
            return TaskRepo(conn).next_pending_at()

    def _claim(self, instance_id: str, now_ms: int) -> Optional[ScheduledInstance]:
        with self._db.session() as conn:
            return TaskRepo(conn).claim_instance(instance_id, now_ms)

    def _defer(self, instance_id: str, next_run_at: int, now_ms: int) -> bool:
        with self._db.session() as conn:
            return TaskRepo(conn).defer_instance(instance_id, next_run_at, now_ms)

    def _finish(self, instance_id: str, **kwargs: Any) -> bool:
        with self._db.session() as conn:
            return TaskRepo(conn).finish_attempt(instance_id, **kwargs)

    def _release(self, instance_id: str, now_ms: int) -> bool:
        with self._db.session() as conn:
            return TaskRepo(conn).release_instance(instance_id, now_ms)

    def _import_state(self, state: dict[str, Any]) -> int:
        with self._db.session() as conn:
            return TaskRepo(conn).import_state(state)
