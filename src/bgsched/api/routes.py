# src/bgsched/api/routes.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from bgsched.domain.errors import (
    BGSBaseError,
    DuplicateTaskError,
    PersistenceError,
    UnknownTaskError,
    ValidationError,
)
from bgsched.domain.models import (
    ErrorResponse,
    HistoryResponse,
    TaskListResponse,
    TaskRegister,
    TaskView,
    WakeRequest,
    WakeResponse,
)
from bgsched.engine.host import now_ms
from bgsched.engine.scheduler import Scheduler
from bgsched.logging import get_logger

from .deps import get_scheduler

_LOG = get_logger(__name__)
router = APIRouter()

_STATUS_BY_ERROR: list[tuple[type[BGSBaseError], int]] = [
    (DuplicateTaskError, 409),
    (UnknownTaskError, 404),
    (PersistenceError, 503),
    (ValidationError, 400),
]


def _error_response(err: BGSBaseError) -> JSONResponse:
    http_status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(err, cls)), 400)
    if http_status >= 500:
        _LOG.error("Request failed: %s (%s)", err.message, err.code)
    payload = ErrorResponse(
        error=err.message,
        code=err.code,
        details=err.details or {},
    ).model_dump()
    return JSONResponse(status_code=http_status, content=payload)


@router.get("/healthz")
def healthz() -> dict:
    return {"ok": True}


@router.post("/tasks", response_model=TaskView, status_code=201)
def register_task(
    payload: TaskRegister,
    scheduler: Scheduler = Depends(get_scheduler),
):
    """
    Register a task definition and arm its first run.

    Duplicate names answer 409 unless BGS_ON_DUPLICATE is replace or keep.
    """
    try:
        scheduler.register(**payload.model_dump(), now_ms=now_ms())
        return scheduler.describe(payload.name)
    except BGSBaseError as e:
        return _error_response(e)


@router.delete("/tasks/{name}")
def cancel_task(
    name: str,
    scheduler: Scheduler = Depends(get_scheduler),
):
    """
    Cancel a task: pending runs are dropped, a running one finishes.
    """
    try:
        cancelled = scheduler.cancel(name, now_ms=now_ms())
        return {"name": name, "cancelled": cancelled}
    except BGSBaseError as e:
        return _error_response(e)


@router.delete("/tasks")
def cancel_tasks(
    tag: Optional[str] = Query(default=None, min_length=1),
    scheduler: Scheduler = Depends(get_scheduler),
):
    """
    Cancel every task carrying `tag`, or every task when no tag is given.
    """
    try:
        if tag is None:
            removed = scheduler.cancel_all(now_ms=now_ms())
        else:
            removed = scheduler.cancel_by_tag(tag, now_ms=now_ms())
        return {"removed": removed}
    except BGSBaseError as e:
        return _error_response(e)


@router.get("/tasks/{name}", response_model=TaskView)
def get_task(
    name: str,
    scheduler: Scheduler = Depends(get_scheduler),
):
    try:
        return scheduler.describe(name)
    except BGSBaseError as e:
        return _error_response(e)


@router.get("/tasks", response_model=TaskListResponse)
def list_tasks(
    tag: Optional[str] = Query(default=None, min_length=1),
    scheduler: Scheduler = Depends(get_scheduler),
):
    tasks = scheduler.describe_all(tag=tag)
    return TaskListResponse(tasks=tasks, total=len(tasks))


@router.post("/wake", response_model=WakeResponse)
def wake(
    payload: WakeRequest,
    scheduler: Scheduler = Depends(get_scheduler),
):
    """
    Host wake-up: run everything due, wait up to the budget, report what happened.
    """
    try:
        report = scheduler.on_wake(
            payload.now_ms if payload.now_ms is not None else now_ms(),
            payload.budget_ms,
            environment=payload.environment,
        )
    except BGSBaseError as e:
        return _error_response(e)
    return WakeResponse(
        dispatched=report.dispatched,
        deferred=report.deferred,
        recovered=report.recovered,
        next_wake_at=report.next_wake_at,
    )


@router.get("/history", response_model=HistoryResponse)
def history(scheduler: Scheduler = Depends(get_scheduler)):
    return HistoryResponse(results=scheduler.history())


@router.get("/state")
def export_state(scheduler: Scheduler = Depends(get_scheduler)) -> dict:
    """
    Persisted schedule as flat records keyed by task name.
    """
    return scheduler.export_state()
