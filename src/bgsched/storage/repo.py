# src/bgsched/storage/repo.py
from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import pydantic

from bgsched.domain.errors import DuplicateTaskError, UnknownTaskError, ValidationError, validation_details
from bgsched.domain.models import Constraints, ScheduledInstance, TaskDefinition
from bgsched.domain.states import InstanceState
from bgsched.logging import get_logger

from .db import begin_immediate, commit, rollback

_LOG = get_logger(__name__)

_INSTANCE_COLS = """
    id, task_name, cycle, next_run_at, attempt, state, deferrals,
    started_at, finished_at, last_error, created_at, updated_at
"""

_DEFINITION_COLS = """
    name, work_id, periodic, interval_ms, initial_delay_ms,
    constraints, input_data, tag, backoff, created_at
"""


def new_instance_id() -> str:
    return uuid.uuid4().hex


@dataclass
class TaskRepo:
    """
    Repository encapsulating all SQL access.

    Important invariants:
    - Every write runs inside BEGIN IMMEDIATE, so instance transitions are serialized.
    - Claiming is guarded: a PENDING row only becomes RUNNING when no other
      instance of the same task is RUNNING (also backed by a partial unique index).
    - Result commits only apply to rows that are still RUNNING.
    """
    conn: sqlite3.Connection

    # -------------------------
    # Read operations
    # -------------------------

    def get_definition(self, name: str) -> TaskDefinition:
        definition = self.find_definition(name)
        if definition is None:
            raise UnknownTaskError(f"Task not found: {name}", details={"name": name})
        return definition

    def find_definition(self, name: str) -> Optional[TaskDefinition]:
        row = self.conn.execute(
            f"SELECT {_DEFINITION_COLS} FROM task_definitions WHERE name = ?;",
            (name,),
        ).fetchone()
        return _row_to_definition(row) if row else None

    def list_definitions(self, tag: Optional[str] = None) -> list[TaskDefinition]:
        if tag is None:
            rows = self.conn.execute(
                f"SELECT {_DEFINITION_COLS} FROM task_definitions ORDER BY created_at ASC, name ASC;"
            ).fetchall()
        else:
            rows = self.conn.execute(
                f"SELECT {_DEFINITION_COLS} FROM task_definitions WHERE tag = ? ORDER BY created_at ASC, name ASC;",
                (tag,),
            ).fetchall()
        return [_row_to_definition(r) for r in rows]

    def get_instance(self, instance_id: str) -> Optional[ScheduledInstance]:
        row = self.conn.execute(
            f"SELECT {_INSTANCE_COLS} FROM scheduled_instances WHERE id = ?;",
            (instance_id,),
        ).fetchone()
        return _row_to_instance(row) if row else None

    def list_instances(
        self,
        task_name: Optional[str] = None,
        states: Optional[Iterable[InstanceState]] = None,
    ) -> list[ScheduledInstance]:
        clauses: list[str] = []
        params: list[Any] = []
        if task_name is not None:
            clauses.append("task_name = ?")
            params.append(task_name)
        if states is not None:
            state_values = [InstanceState(s).value for s in states]
            if not state_values:
                return []
            clauses.append(f"state IN ({','.join('?' for _ in state_values)})")
            params.extend(state_values)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"SELECT {_INSTANCE_COLS} FROM scheduled_instances {where} ORDER BY task_name ASC, cycle ASC;",
            tuple(params),
        ).fetchall()
        return [_row_to_instance(r) for r in rows]

    def due_pending(self, now_ms: int, limit: int = 500) -> list[ScheduledInstance]:
        rows = self.conn.execute(
            f"""
            SELECT {_INSTANCE_COLS}
            FROM scheduled_instances
            WHERE state = ?
              AND next_run_at <= ?
            ORDER BY next_run_at ASC, cycle ASC
            LIMIT ?;
            """,
            (InstanceState.PENDING.value, now_ms, limit),
        ).fetchall()
        return [_row_to_instance(r) for r in rows]

    def running_task_names(self) -> set[str]:
        rows = self.conn.execute(
            "SELECT task_name FROM scheduled_instances WHERE state = ?;",
            (InstanceState.RUNNING.value,),
        ).fetchall()
        return {r["task_name"] for r in rows}

    def stale_running(self, started_before_ms: int) -> list[ScheduledInstance]:
        rows = self.conn.execute(
            f"""
            SELECT {_INSTANCE_COLS}
            FROM scheduled_instances
            WHERE state = ?
              AND (started_at IS NULL OR started_at <= ?)
            ORDER BY started_at ASC;
            """,
            (InstanceState.RUNNING.value, started_before_ms),
        ).fetchall()
        return [_row_to_instance(r) for r in rows]

    def next_pending_at(self) -> Optional[int]:
        row = self.conn.execute(
            "SELECT MIN(next_run_at) AS m FROM scheduled_instances WHERE state = ?;",
            (InstanceState.PENDING.value,),
        ).fetchone()
        return None if row["m"] is None else int(row["m"])

    # -------------------------
    # Write operations
    # -------------------------

    def register_task(
        self,
        definition: TaskDefinition,
        first_run_at: int,
        now_ms: int,
        on_duplicate: str = "reject",
    ) -> bool:
        """
        Stores a definition and its first PENDING instance in one transaction.

        Duplicate names follow on_duplicate:
        - reject: DuplicateTaskError
        - keep: leave the existing definition untouched, return False
        - replace: cancel the old PENDING instances and store the new definition

        Returns True when the definition was stored.
        """
        try:
            begin_immediate(self.conn)

            if self.find_definition(definition.name) is not None:
                if on_duplicate == "keep":
                    commit(self.conn)
                    return False
                if on_duplicate != "replace":
                    raise DuplicateTaskError(
                        f"Task already registered: {definition.name}",
                        details={"name": definition.name},
                    )
                self._cancel_pending(definition.name, now_ms)
                self.conn.execute("DELETE FROM task_definitions WHERE name = ?;", (definition.name,))

            self._insert_definition(definition)
            self._insert_instance(
                definition.name,
                cycle=self._next_cycle(definition.name),
                next_run_at=first_run_at,
                now_ms=now_ms,
            )

            commit(self.conn)
            return True
        except Exception:
            rollback(self.conn)
            raise

    def unregister_task(self, name: str, now_ms: int) -> list[str]:
        """
        Deletes the definition and cancels its PENDING instances.

        RUNNING instances are left alone; they finish and are not re-armed.
        Returns the ids of the cancelled instances.
        """
        try:
            begin_immediate(self.conn)

            if self.find_definition(name) is None:
                raise UnknownTaskError(f"Task not found: {name}", details={"name": name})

            cancelled = self._cancel_pending(name, now_ms)
            self.conn.execute("DELETE FROM task_definitions WHERE name = ?;", (name,))

            commit(self.conn)
            return cancelled
        except Exception:
            rollback(self.conn)
            raise

    def unregister_many(self, names: Iterable[str], now_ms: int) -> list[str]:
        """
        Unregisters every listed task that still exists. Returns the names removed.
        """
        removed: list[str] = []
        try:
            begin_immediate(self.conn)
            for name in names:
                if self.find_definition(name) is None:
                    continue
                self._cancel_pending(name, now_ms)
                self.conn.execute("DELETE FROM task_definitions WHERE name = ?;", (name,))
                removed.append(name)
            commit(self.conn)
            return removed
        except Exception:
            rollback(self.conn)
            raise

    def claim_instance(self, instance_id: str, now_ms: int) -> Optional[ScheduledInstance]:
        """
        Atomically moves one PENDING instance to RUNNING.

        Returns None when the instance is no longer PENDING or when another
        instance of the same task is already RUNNING.
        """
        try:
            begin_immediate(self.conn)

            updated = self.conn.execute(
                """
                UPDATE scheduled_instances
                SET state = ?,
                    started_at = ?,
                    finished_at = NULL,
                    updated_at = ?
                WHERE id = ?
                  AND state = ?
                  AND NOT EXISTS (
                    SELECT 1 FROM scheduled_instances AS r
                    WHERE r.task_name = scheduled_instances.task_name
                      AND r.state = ?
                  );
                """,
                (
                    InstanceState.RUNNING.value,
                    now_ms,
                    now_ms,
                    instance_id,
                    InstanceState.PENDING.value,
                    InstanceState.RUNNING.value,
                ),
            ).rowcount

            claimed = self.get_instance(instance_id) if updated else None
            commit(self.conn)
            return claimed
        except Exception:
            rollback(self.conn)
            raise

    def release_instance(self, instance_id: str, now_ms: int) -> bool:
        """
        Puts a claimed instance that never started back to PENDING, attempt unchanged.

        If its task was unregistered meanwhile the instance ends CANCELLED.
        """
        try:
            begin_immediate(self.conn)
            row = self.conn.execute(
                "SELECT task_name FROM scheduled_instances WHERE id = ? AND state = ?;",
                (instance_id, InstanceState.RUNNING.value),
            ).fetchone()
            if row is None:
                rollback(self.conn)
                return False

            if self.find_definition(row["task_name"]) is None:
                state, finished_at = InstanceState.CANCELLED, now_ms
            else:
                state, finished_at = InstanceState.PENDING, None
            self.conn.execute(
                """
                UPDATE scheduled_instances
                SET state = ?,
                    started_at = NULL,
                    finished_at = ?,
                    updated_at = ?
                WHERE id = ?;
                """,
                (state.value, finished_at, now_ms, instance_id),
            )
            commit(self.conn)
            return True
        except Exception:
            rollback(self.conn)
            raise

    def defer_instance(self, instance_id: str, next_run_at: int, now_ms: int) -> bool:
        try:
            begin_immediate(self.conn)
            updated = self.conn.execute(
                """
                UPDATE scheduled_instances
                SET next_run_at = ?,
                    deferrals = deferrals + 1,
                    updated_at = ?
                WHERE id = ?
                  AND state = ?;
                """,
                (next_run_at, now_ms, instance_id, InstanceState.PENDING.value),
            ).rowcount
            commit(self.conn)
            return bool(updated)
        except Exception:
            rollback(self.conn)
            raise

    def finish_attempt(
        self,
        instance_id: str,
        *,
        state: InstanceState,
        attempt: int,
        next_run_at: int,
        finished_at: Optional[int],
        error: Optional[str],
        now_ms: int,
        next_cycle_at: Optional[int] = None,
    ) -> bool:
        """
        Commits the outcome of one attempt of a RUNNING instance.

        state is PENDING for a retry, SUCCEEDED or FAILED otherwise. When
        next_cycle_at is given and the task is still registered, the next
        periodic cycle is enqueued unless it already exists.

        Returns False if the instance was not RUNNING (nothing changed).
        """
        try:
            begin_immediate(self.conn)

            updated = self.conn.execute(
                """
                UPDATE scheduled_instances
                SET state = ?,
                    attempt = ?,
                    next_run_at = ?,
                    finished_at = ?,
                    last_error = ?,
                    updated_at = ?
                WHERE id = ?
                  AND state = ?;
                """,
                (
                    InstanceState(state).value,
                    attempt,
                    next_run_at,
                    finished_at,
                    error,
                    now_ms,
                    instance_id,
                    InstanceState.RUNNING.value,
                ),
            ).rowcount

            if updated == 0:
                rollback(self.conn)
                return False

            if next_cycle_at is not None:
                row = self.conn.execute(
                    "SELECT task_name, cycle FROM scheduled_instances WHERE id = ?;",
                    (instance_id,),
                ).fetchone()
                self._enqueue_cycle(row["task_name"], int(row["cycle"]) + 1, next_cycle_at, now_ms)

            commit(self.conn)
            return True
        except Exception:
            rollback(self.conn)
            raise

    # -------------------------
    # Snapshot (flat records keyed by task name)
    # -------------------------

    def export_state(self) -> dict[str, dict[str, Any]]:
        state: dict[str, dict[str, Any]] = {}
        for definition in self.list_definitions():
            state[definition.name] = {"definition": definition.model_dump(mode="json"), "instances": []}
        for inst in self.list_instances():
            entry = state.setdefault(inst.task_name, {"definition": None, "instances": []})
            entry["instances"].append(inst.model_dump(mode="json"))
        return state

    def import_state(self, state: dict[str, Any]) -> int:
        """
        Loads a snapshot produced by export_state. Unknown fields are ignored.

        A snapshot holding more than one RUNNING instance for a task, counting
        the ones already stored, is rejected with ValidationError.

        Returns the number of instances written.
        """
        written = 0
        try:
            begin_immediate(self.conn)
            for name, entry in state.items():
                raw_def = entry.get("definition")
                if raw_def is not None:
                    self.conn.execute("DELETE FROM task_definitions WHERE name = ?;", (name,))
                    self._insert_definition(TaskDefinition.model_validate(raw_def))
                for raw_inst in entry.get("instances") or []:
                    inst = ScheduledInstance.model_validate(raw_inst)
                    if inst.state == InstanceState.RUNNING:
                        self._check_single_running(inst)
                    self._upsert_instance(inst)
                    written += 1
            commit(self.conn)
            return written
        except pydantic.ValidationError as e:
            rollback(self.conn)
            raise ValidationError("Invalid state snapshot", details=validation_details(e)) from e
        except Exception:
            rollback(self.conn)
            raise

    # -------------------------
    # Helpers
    # -------------------------

    def _check_single_running(self, inst: ScheduledInstance) -> None:
        row = self.conn.execute(
            "SELECT id FROM scheduled_instances WHERE task_name = ? AND state = ? AND id != ?;",
            (inst.task_name, InstanceState.RUNNING.value, inst.id),
        ).fetchone()
        if row is not None:
            raise ValidationError(
                f"Snapshot has more than one RUNNING instance for task {inst.task_name}",
                details={"task_name": inst.task_name, "instance_ids": [row["id"], inst.id]},
            )

    def _cancel_pending(self, name: str, now_ms: int) -> list[str]:
        rows = self.conn.execute(
            "SELECT id FROM scheduled_instances WHERE task_name = ? AND state = ?;",
            (name, InstanceState.PENDING.value),
        ).fetchall()
        ids = [r["id"] for r in rows]
        if ids:
            self.conn.execute(
                """
                UPDATE scheduled_instances
                SET state = ?,
                    finished_at = ?,
                    updated_at = ?
                WHERE task_name = ?
                  AND state = ?;
                """,
                (InstanceState.CANCELLED.value, now_ms, now_ms, name, InstanceState.PENDING.value),
            )
        return ids

    def _next_cycle(self, name: str) -> int:
        row = self.conn.execute(
            "SELECT COALESCE(MAX(cycle), -1) + 1 AS c FROM scheduled_instances WHERE task_name = ?;",
            (name,),
        ).fetchone()
        return int(row["c"])

    def _enqueue_cycle(self, name: str, cycle: int, next_run_at: int, now_ms: int) -> None:
        if self.find_definition(name) is None:
            return
        exists = self.conn.execute(
            "SELECT 1 FROM scheduled_instances WHERE task_name = ? AND cycle = ?;",
            (name, cycle),
        ).fetchone()
        if exists:
            return
        self._insert_instance(name, cycle=cycle, next_run_at=next_run_at, now_ms=now_ms)

    def _insert_definition(self, d: TaskDefinition) -> None:
        self.conn.execute(
            f"""
            INSERT INTO task_definitions({_DEFINITION_COLS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                d.name,
                d.work_id,
                int(d.periodic),
                d.interval_ms,
                d.initial_delay_ms,
                d.constraints.model_dump_json(),
                json.dumps(d.input_data),
                d.tag,
                d.backoff.value,
                d.created_at,
            ),
        )

    def _insert_instance(self, name: str, *, cycle: int, next_run_at: int, now_ms: int) -> str:
        instance_id = new_instance_id()
        self.conn.execute(
            """
            INSERT INTO scheduled_instances(
              id, task_name, cycle, next_run_at, attempt, state, deferrals, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, 0, ?, 0, ?, ?);
            """,
            (instance_id, name, cycle, next_run_at, InstanceState.PENDING.value, now_ms, now_ms),
        )
        return instance_id

    def _upsert_instance(self, inst: ScheduledInstance) -> None:
        self.conn.execute(
            f"""
            INSERT OR REPLACE INTO scheduled_instances({_INSTANCE_COLS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                inst.id,
                inst.task_name,
                inst.cycle,
                inst.next_run_at,
                inst.attempt,
                inst.state.value,
                inst.deferrals,
                inst.started_at,
                inst.finished_at,
                inst.last_error,
                inst.created_at,
                inst.updated_at,
            ),
        )


def _row_to_definition(row: sqlite3.Row) -> TaskDefinition:
    return TaskDefinition(
        name=row["name"],
        work_id=row["work_id"],
        constraints=Constraints.model_validate_json(row["constraints"]),
        periodic=bool(row["periodic"]),
        interval_ms=row["interval_ms"],
        initial_delay_ms=row["initial_delay_ms"],
        input_data=json.loads(row["input_data"]),
        tag=row["tag"],
        backoff=row["backoff"],
        created_at=row["created_at"],
    )


def _row_to_instance(row: sqlite3.Row) -> ScheduledInstance:
    return ScheduledInstance.model_validate(dict(row))
