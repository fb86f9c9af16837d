from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO

_ROOT_NAME = "bgsched"

_LEVELS = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,  # Python stdlib has no TRACE; map to DEBUG.
}


def configure_logging(log_level: str = "info", stream: Optional[TextIO] = None) -> None:
    """
    Configures root logging for the scheduler process.

    - one handler on stdout (or the given stream)
    - re-running it replaces the previous stream handlers instead of stacking them
    """
    level = parse_level(log_level)

    root = logging.getLogger()
    root.setLevel(level)

    for h in list(root.handlers):
        if isinstance(h, logging.StreamHandler):
            root.removeHandler(h)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s [%(threadName)s] - %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )
    )
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(max(level, logging.INFO))
    logging.getLogger("uvicorn.error").setLevel(level)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name if name else _ROOT_NAME)


def get_work_logger(task_name: str) -> logging.Logger:
    """Logger handed to work functions, one child per task name."""
    return logging.getLogger(f"{_ROOT_NAME}.work.{task_name}")


def parse_level(log_level: str) -> int:
    return _LEVELS.get(log_level.lower().strip(), logging.INFO)
