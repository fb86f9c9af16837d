# tests/helpers.py
from concurrent.futures import wait
from typing import Optional

from bgsched.domain.models import Environment
from bgsched.engine.scheduler import Scheduler, SchedulerConfig, TickReport

MINUTE = 60_000

TEST_CONFIG = SchedulerConfig(
    max_concurrent_tasks=4,
    max_attempts=3,
    base_delay_ms=1_000,
    max_delay_ms=60_000,
    min_interval_ms=15 * MINUTE,
    recheck_delay_ms=MINUTE,
    stale_after_ms=10 * MINUTE,
    wake_budget_ms=5_000,
    history_size=100,
    commit_reserve_ms=50,
)


def run_wake(
    scheduler: Scheduler,
    now_ms: int,
    environment: Optional[Environment] = None,
    budget_ms: Optional[int] = None,
) -> TickReport:
    """Tick and wait for every dispatched execution to commit its result."""
    report = scheduler.tick(now_ms, budget_ms=budget_ms, environment=environment)
    wait(report.futures)
    for fut in report.futures:
        fut.result()
    return report


def states(scheduler: Scheduler, task_name: str) -> list[str]:
    return [i.state.value for i in scheduler.instances(task_name)]
