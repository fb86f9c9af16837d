# src/bgsched/engine/recovery.py
from __future__ import annotations

from typing import Collection

from bgsched.domain.errors import STALE
from bgsched.domain.models import ExecutionResult, ScheduledInstance
from bgsched.domain.states import Outcome
from bgsched.storage import SQLiteDB, TaskRepo


def find_stale_running(
    db: SQLiteDB,
    now_ms: int,
    *,
    stale_after_ms: int,
    in_flight: Collection[str] = (),
) -> list[ScheduledInstance]:
    """
    Crash recovery:
    - RUNNING instances started more than stale_after_ms ago
    - minus the ones this process is still executing

    Whatever is left was orphaned by a killed process; its true state is unknown.
    """
    with db.session() as conn:
        candidates = TaskRepo(conn).stale_running(now_ms - stale_after_ms)
    return [inst for inst in candidates if inst.id not in in_flight]


def stale_result(instance: ScheduledInstance) -> ExecutionResult:
    """The result recorded for an orphaned run: retry-eligible, duration unknown."""
    return ExecutionResult(
        instance_id=instance.id,
        task_name=instance.task_name,
        outcome=Outcome.RETRY,
        attempt=instance.attempt,
        duration_ms=0,
        error=STALE,
    )
