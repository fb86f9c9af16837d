from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DUPLICATE_POLICIES = ("reject", "replace", "keep")


def _get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"Environment variable {name} must be an int, got: {raw!r}") from e
    return value


def _get_env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Environment variable {name} must be a boolean, got: {raw!r}")


def _get_env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name) or ""
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _require_positive(name: str, value: int) -> int:
    if value <= 0:
        raise ValueError(f"{name} must be > 0")
    return value


@dataclass(frozen=True)
class Settings:
    # Database
    db_path: Path

    # Execution
    max_concurrent_tasks: int
    wake_budget_ms: int
    stale_after_ms: int

    # Retry policy
    max_attempts: int
    base_delay_ms: int
    max_delay_ms: int

    # Scheduling
    min_interval_ms: int
    recheck_delay_ms: int
    max_idle_ms: int
    history_size: int
    on_duplicate: str

    # Host side
    auto_wake: bool
    work_modules: tuple[str, ...]

    # Server (used by bgsched.main when starting uvicorn programmatically)
    host: str
    port: int
    log_level: str


def load_settings() -> Settings:
    """
    Loads settings from env vars with sane defaults.

    Env vars:
      - BGS_DB_PATH (default: ./var/bgsched.db)
      - BGS_MAX_CONCURRENT (default: 4)
      - BGS_WAKE_BUDGET_MS (default: 600000, the 10 minute host execution window)
      - BGS_STALE_MS (default: 900000)
      - BGS_MAX_ATTEMPTS (default: 3)
      - BGS_BASE_DELAY_MS (default: 30000)
      - BGS_MAX_DELAY_MS (default: 18000000)
      - BGS_MIN_INTERVAL_MS (default: 900000, i.e. 15 minutes)
      - BGS_RECHECK_MS (default: 60000)
      - BGS_MAX_IDLE_MS (default: 60000)
      - BGS_HISTORY_SIZE (default: 200)
      - BGS_ON_DUPLICATE (default: reject; one of reject|replace|keep)
      - BGS_AUTO_WAKE (default: true; run the in-process wake loop)
      - BGS_WORK_MODULES (default: empty; comma-separated modules exposing register_work(registry))
      - BGS_HOST (default: 127.0.0.1)
      - BGS_PORT (default: 8000)
      - BGS_LOG_LEVEL (default: info)
    """
    db_path = Path(_get_env_str("BGS_DB_PATH", "./var/bgsched.db")).expanduser()

    max_concurrent = _require_positive("BGS_MAX_CONCURRENT", _get_env_int("BGS_MAX_CONCURRENT", 4))
    wake_budget_ms = _require_positive("BGS_WAKE_BUDGET_MS", _get_env_int("BGS_WAKE_BUDGET_MS", 600_000))
    stale_after_ms = _require_positive("BGS_STALE_MS", _get_env_int("BGS_STALE_MS", 900_000))

    max_attempts = _require_positive("BGS_MAX_ATTEMPTS", _get_env_int("BGS_MAX_ATTEMPTS", 3))
    base_delay_ms = _require_positive("BGS_BASE_DELAY_MS", _get_env_int("BGS_BASE_DELAY_MS", 30_000))
    max_delay_ms = _require_positive("BGS_MAX_DELAY_MS", _get_env_int("BGS_MAX_DELAY_MS", 18_000_000))
    if max_delay_ms < base_delay_ms:
        raise ValueError("BGS_MAX_DELAY_MS must be >= BGS_BASE_DELAY_MS")

    min_interval_ms = _require_positive("BGS_MIN_INTERVAL_MS", _get_env_int("BGS_MIN_INTERVAL_MS", 900_000))
    recheck_delay_ms = _require_positive("BGS_RECHECK_MS", _get_env_int("BGS_RECHECK_MS", 60_000))
    max_idle_ms = _require_positive("BGS_MAX_IDLE_MS", _get_env_int("BGS_MAX_IDLE_MS", 60_000))
    history_size = _require_positive("BGS_HISTORY_SIZE", _get_env_int("BGS_HISTORY_SIZE", 200))

    on_duplicate = _get_env_str("BGS_ON_DUPLICATE", "reject").lower().strip()
    if on_duplicate not in DUPLICATE_POLICIES:
        raise ValueError(f"BGS_ON_DUPLICATE must be one of {', '.join(DUPLICATE_POLICIES)}")

    auto_wake = _get_env_bool("BGS_AUTO_WAKE", True)
    work_modules = _get_env_list("BGS_WORK_MODULES")

    host = _get_env_str("BGS_HOST", "127.0.0.1")
    port = _get_env_int("BGS_PORT", 8000)
    if not (1 <= port <= 65535):
        raise ValueError("BGS_PORT must be between 1 and 65535")

    log_level = _get_env_str("BGS_LOG_LEVEL", "info").lower()

    return Settings(
        db_path=db_path,
        max_concurrent_tasks=max_concurrent,
        wake_budget_ms=wake_budget_ms,
        stale_after_ms=stale_after_ms,
        max_attempts=max_attempts,
        base_delay_ms=base_delay_ms,
        max_delay_ms=max_delay_ms,
        min_interval_ms=min_interval_ms,
        recheck_delay_ms=recheck_delay_ms,
        max_idle_ms=max_idle_ms,
        history_size=history_size,
        on_duplicate=on_duplicate,
        auto_wake=auto_wake,
        work_modules=work_modules,
        host=host,
        port=port,
        log_level=log_level,
    )
