# src/bgsched/engine/registry.py
from __future__ import annotations

import importlib
import threading
from typing import Any, Callable, Iterable, Optional

from bgsched.domain.errors import ValidationError
from bgsched.domain.models import TaskDefinition
from bgsched.logging import get_logger
from bgsched.storage import SQLiteDB, TaskRepo

_LOG = get_logger(__name__)

WorkFunction = Callable[..., Any]


class TaskRegistry:
    """
    Declared task definitions plus the table of work functions they point at.

    Definitions are persisted, work functions are not: after a restart the host
    program binds its work functions again (usually at import time through
    @registry.work) and the stored definitions pick them up by work_id.
    """

    def __init__(
        self,
        db: SQLiteDB,
        *,
        min_interval_ms: int = 900_000,
        on_duplicate: str = "reject",
    ) -> None:
        self._db = db
        self._min_interval_ms = min_interval_ms
        self._on_duplicate = on_duplicate
        self._work: dict[str, WorkFunction] = {}
        self._work_lock = threading.Lock()

    # -------------------------
    # Work function table
    # -------------------------

    def bind(self, work_id: str, fn: WorkFunction) -> None:
        if not callable(fn):
            raise ValidationError(f"Work function for {work_id!r} is not callable", details={"work_id": work_id})
        with self._work_lock:
            if work_id in self._work and self._work[work_id] is not fn:
                _LOG.warning("Rebinding work function %s", work_id)
            self._work[work_id] = fn

    def work(self, work_id: str) -> Callable[[WorkFunction], WorkFunction]:
        """
        Decorator form of bind():

            @registry.work("sync")
            def sync(ctx): ...
        """
        def _decorator(fn: WorkFunction) -> WorkFunction:
            self.bind(work_id, fn)
            return fn

        return _decorator

    def work_for(self, work_id: str) -> Optional[WorkFunction]:
        with self._work_lock:
            return self._work.get(work_id)

    # -------------------------
    # Definitions
    # -------------------------

    def register(self, definition: TaskDefinition, now_ms: int) -> bool:
        """
        Stores the definition and its first PENDING instance at now + initial delay.

        Raises DuplicateTaskError for a known name unless the duplicate policy
        is keep (returns False) or replace.
        """
        if definition.periodic and (definition.interval_ms or 0) < self._min_interval_ms:
            raise ValidationError(
                f"interval_ms must be >= {self._min_interval_ms} for periodic tasks",
                details={"name": definition.name, "interval_ms": definition.interval_ms},
            )

        first_run_at = now_ms + definition.initial_delay_ms
        with self._db.session() as conn:
            stored = TaskRepo(conn).register_task(
                definition,
                first_run_at=first_run_at,
                now_ms=now_ms,
                on_duplicate=self._on_duplicate,
            )

        if stored:
            _LOG.info(
                "Registered task %s (work=%s periodic=%s interval_ms=%s) first run at %d",
                definition.name,
                definition.work_id,
                definition.periodic,
                definition.interval_ms,
                first_run_at,
            )
        else:
            _LOG.info("Task %s already registered; keeping existing definition", definition.name)
        return stored

    def lookup(self, name: str) -> TaskDefinition:
        with self._db.session() as conn:
            return TaskRepo(conn).get_definition(name)

    def definitions(self, tag: Optional[str] = None) -> list[TaskDefinition]:
        with self._db.session() as conn:
            return TaskRepo(conn).list_definitions(tag=tag)

    def unregister(self, name: str, now_ms: int) -> list[str]:
        """
        Removes the definition and cancels its PENDING instances.

        Raises UnknownTaskError if the name is not registered.
        """
        with self._db.session() as conn:
            cancelled = TaskRepo(conn).unregister_task(name, now_ms)
        _LOG.info("Unregistered task %s (%d pending instance(s) cancelled)", name, len(cancelled))
        return cancelled

    def unregister_by_tag(self, tag: str, now_ms: int) -> list[str]:
        with self._db.session() as conn:
            repo = TaskRepo(conn)
            names = [d.name for d in repo.list_definitions(tag=tag)]
            removed = repo.unregister_many(names, now_ms)
        _LOG.info("Unregistered %d task(s) tagged %s", len(removed), tag)
        return removed

    def unregister_all(self, now_ms: int) -> list[str]:
        with self._db.session() as conn:
            repo = TaskRepo(conn)
            removed = repo.unregister_many([d.name for d in repo.list_definitions()], now_ms)
        _LOG.info("Unregistered all tasks (%d)", len(removed))
        return removed


def load_work_modules(registry: TaskRegistry, modules: Iterable[str]) -> list[str]:
    """
    Imports each module and calls its register_work(registry) hook.

    This is how a deployed service learns its work functions. Returns the
    modules loaded.
    """
    loaded: list[str] = []
    for module_name in modules:
        module = importlib.import_module(module_name)
        hook = getattr(module, "register_work", None)
        if not callable(hook):
            raise ValueError(f"Work module {module_name} has no register_work(registry) function")
        hook(registry)
        loaded.append(module_name)
        _LOG.info("Loaded work module %s", module_name)
    return loaded
