# src/bgsched/engine/__init__.py
"""
Scheduling engine for bgsched.

- registry: task definitions + work function table
- constraints: runnable-or-not decisions from an environment snapshot
- retry: backoff / retry decisions
- executor: runs one work function under a budget
- scheduler: wake-up handling, claim/dispatch, result application
- recovery: orphaned RUNNING instances
- host: host-side collaborators (HostBridge, WakeLoop, Notifier)
"""

from .constraints import ConstraintEvaluator
from .executor import Executor, WorkContext
from .host import HostBridge, LoggingNotifier, Notifier, WakeLoop
from .registry import TaskRegistry
from .retry import Decision, RetryPolicy, Verdict
from .scheduler import Scheduler, SchedulerConfig, TickReport

__all__ = [
    "ConstraintEvaluator",
    "Executor",
    "WorkContext",
    "HostBridge",
    "LoggingNotifier",
    "Notifier",
    "WakeLoop",
    "TaskRegistry",
    "Decision",
    "RetryPolicy",
    "Verdict",
    "Scheduler",
    "SchedulerConfig",
    "TickReport",
]
