"""
Domain layer for bgsched.

- states: InstanceState / Outcome / NetworkState / BackoffKind enums
- models: Pydantic models for definitions, instances, results and the API
- errors: domain-level exceptions and execution error markers
"""

from .states import BackoffKind, InstanceState, NetworkState, Outcome
from .models import (
    Constraints,
    Environment,
    ErrorResponse,
    ExecutionResult,
    HistoryResponse,
    ScheduledInstance,
    TaskDefinition,
    TaskListResponse,
    TaskRegister,
    TaskView,
    WakeRequest,
    WakeResponse,
)
from .errors import (
    BGSBaseError,
    DuplicateTaskError,
    PersistenceError,
    TransientFailure,
    UnknownTaskError,
    ValidationError,
)

__all__ = [
    "BackoffKind",
    "InstanceState",
    "NetworkState",
    "Outcome",
    "Constraints",
    "Environment",
    "ExecutionResult",
    "ScheduledInstance",
    "TaskDefinition",
    "TaskRegister",
    "TaskView",
    "TaskListResponse",
    "WakeRequest",
    "WakeResponse",
    "HistoryResponse",
    "ErrorResponse",
    "BGSBaseError",
    "ValidationError",
    "DuplicateTaskError",
    "UnknownTaskError",
    "PersistenceError",
    "TransientFailure",
]
