from __future__ import annotations

from bgsched.config import load_settings
from bgsched.logging import configure_logging, get_logger


def main() -> int:
    """
    Programmatic entrypoint.

    Recommended dev command:
      uvicorn bgsched.api.app:app --reload

    This entrypoint exists so you can also do:
      python -m bgsched.main
    """
    settings = load_settings()
    configure_logging(settings.log_level)
    log = get_logger(__name__)

    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    log.info(
        "Starting bgsched with DB path %s (work modules: %s)",
        settings.db_path,
        ", ".join(settings.work_modules) or "none",
    )

    # Import here so config/logging are set before app import side-effects.
    try:
        from bgsched.api.app import app  # noqa: F401
    except Exception:
        log.exception("Failed to import FastAPI app (bgsched.api.app:app).")
        return 1

    import uvicorn

    uvicorn.run(
        "bgsched.api.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        reload=False,  # prefer `uvicorn ... --reload` in dev
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
