# src/bgsched/api/deps.py
from __future__ import annotations

from fastapi import Request

from bgsched.engine.scheduler import Scheduler


def get_scheduler(request: Request) -> Scheduler:
    """
    The process-wide scheduler created by the lifespan handler.
    """
    return request.app.state.scheduler  # type: ignore[attr-defined]
