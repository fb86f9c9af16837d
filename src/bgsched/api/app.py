# src/bgsched/api/app.py
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from bgsched.config import load_settings
from bgsched.engine.host import WakeLoop
from bgsched.engine.registry import TaskRegistry, load_work_modules
from bgsched.engine.scheduler import Scheduler, SchedulerConfig
from bgsched.logging import configure_logging, get_logger
from bgsched.storage import SQLiteDB, apply_migrations

from .routes import router

_LOG = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Lifespan handler.

    Responsible for:
    - loading settings and configuring logging
    - running DB migrations
    - binding work functions from BGS_WORK_MODULES
    - starting the scheduler and, unless disabled, the in-process wake loop
    """
    settings = load_settings()
    configure_logging(settings.log_level)

    db = SQLiteDB(settings.db_path)
    with db.session() as conn:
        apply_migrations(conn)

    cfg = SchedulerConfig.from_settings(settings)
    registry = TaskRegistry(db, min_interval_ms=cfg.min_interval_ms, on_duplicate=cfg.on_duplicate)
    load_work_modules(registry, settings.work_modules)

    scheduler = Scheduler(db, cfg, registry=registry)
    wake_loop = None
    if settings.auto_wake:
        wake_loop = WakeLoop(scheduler, budget_ms=cfg.wake_budget_ms, max_idle_ms=settings.max_idle_ms)
        wake_loop.start()

    app.state.settings = settings
    app.state.db = db
    app.state.scheduler = scheduler
    app.state.wake_loop = wake_loop

    _LOG.info("Startup complete (db=%s auto_wake=%s).", settings.db_path, settings.auto_wake)

    try:
        yield
    finally:
        if wake_loop is not None:
            wake_loop.stop(timeout_s=5.0)
        scheduler.close()
        _LOG.info("Shutdown complete.")


app = FastAPI(
    title="Background Work Scheduler",
    version="0.1.0",
    lifespan=lifespan,
)
app.include_router(router)
