from __future__ import annotations

from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .states import BackoffKind, InstanceState, NetworkState, Outcome


TaskName = Annotated[str, Field(min_length=1, max_length=256)]
MinuteOfDay = Annotated[int, Field(ge=0, le=1439)]


class Constraints(BaseModel):
    """
    Preconditions a task needs before it may run.

    Stored as JSON; unknown keys written by newer versions are ignored on load.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    requires_network: bool = False
    requires_unmetered_network: bool = False
    requires_charging: bool = False
    requires_device_idle: bool = False
    min_battery_level: Optional[Annotated[int, Field(ge=0, le=100)]] = None

    # Allowed time-of-day window in UTC minutes; start > end wraps past midnight.
    window_start_minute: Optional[MinuteOfDay] = None
    window_end_minute: Optional[MinuteOfDay] = None

    @model_validator(mode="after")
    def _validate_window(self):
        if (self.window_start_minute is None) != (self.window_end_minute is None):
            raise ValueError("window_start_minute and window_end_minute must be set together")
        return self


class TaskDefinition(BaseModel):
    """
    A declared task. Immutable once registered.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    name: TaskName
    work_id: TaskName
    constraints: Constraints = Field(default_factory=Constraints)
    periodic: bool = False
    interval_ms: Optional[Annotated[int, Field(gt=0)]] = None
    initial_delay_ms: Annotated[int, Field(ge=0)] = 0
    input_data: dict[str, Any] = Field(default_factory=dict)
    tag: Optional[str] = None
    backoff: BackoffKind = BackoffKind.EXPONENTIAL
    created_at: int = 0

    @model_validator(mode="after")
    def _validate_interval(self):
        if self.periodic and self.interval_ms is None:
            raise ValueError("periodic tasks require interval_ms")
        if not self.periodic and self.interval_ms is not None:
            raise ValueError("interval_ms is only valid for periodic tasks")
        return self


class ScheduledInstance(BaseModel):
    """
    One scheduled run (and its retries) of a task.

    cycle counts periodic repetitions; attempt counts retries inside a cycle.
    """
    model_config = ConfigDict(extra="ignore")

    id: str
    task_name: str
    cycle: int = 0
    next_run_at: int
    attempt: Annotated[int, Field(ge=0)] = 0
    state: InstanceState = InstanceState.PENDING
    deferrals: int = 0
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    last_error: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0


class ExecutionResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    instance_id: str
    task_name: str
    outcome: Outcome
    attempt: int = 0
    duration_ms: int = 0
    error: Optional[str] = None


class Environment(BaseModel):
    """
    Snapshot of the device conditions at wake-up time.

    None means the host could not tell; constraints depending on it are unmet.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    network: NetworkState = NetworkState.NONE
    charging: Optional[bool] = None
    battery_level: Optional[Annotated[int, Field(ge=0, le=100)]] = None
    device_idle: Optional[bool] = None

    @classmethod
    def unrestricted(cls) -> "Environment":
        return cls(network=NetworkState.UNMETERED, charging=True, battery_level=100, device_idle=True)


# -------------------------
# API models
# -------------------------


class TaskRegister(BaseModel):
    """
    API input model for registering a task.

    work_id defaults to the task name.
    """
    model_config = ConfigDict(extra="forbid")

    name: TaskName
    work_id: Optional[TaskName] = None
    constraints: Constraints = Field(default_factory=Constraints)
    periodic: bool = False
    interval_ms: Optional[Annotated[int, Field(gt=0)]] = None
    initial_delay_ms: Annotated[int, Field(ge=0)] = 0
    input_data: dict[str, Any] = Field(default_factory=dict)
    tag: Optional[str] = None
    backoff: BackoffKind = BackoffKind.EXPONENTIAL


class TaskView(BaseModel):
    model_config = ConfigDict(extra="forbid")

    definition: TaskDefinition
    instances: list[ScheduledInstance] = Field(default_factory=list)


class TaskListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tasks: list[TaskView]
    total: int


class WakeRequest(BaseModel):
    """
    Body of the host wake-up call. now_ms defaults to the server clock.
    """
    model_config = ConfigDict(extra="forbid")

    now_ms: Optional[int] = None
    budget_ms: Optional[Annotated[int, Field(gt=0)]] = None
    environment: Environment = Field(default_factory=Environment.unrestricted)


class WakeResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    dispatched: list[str]
    deferred: list[str]
    recovered: list[str]
    next_wake_at: Optional[int] = None


class HistoryResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    results: list[ExecutionResult]


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error: str
    code: str
    details: dict = Field(default_factory=dict)
