#!/usr/bin/env python3
from __future__ import annotations

import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = REPO_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from bgsched.config import load_settings
from bgsched.logging import configure_logging, get_logger
from bgsched.storage import SQLiteDB, TaskRepo, apply_migrations


def main(argv: list[str]) -> int:
    """
    Creates or upgrades the schedule DB at BGS_DB_PATH.

    Optionally loads a snapshot exported from GET /state:
      python scripts/init_db.py state.json
    """
    settings = load_settings()
    configure_logging(settings.log_level)
    log = get_logger(__name__)

    db = SQLiteDB(settings.db_path)
    with db.session() as conn:
        applied = apply_migrations(conn)
        log.info("DB initialized at %s (migrations applied: %s)", settings.db_path, applied or "none")

        if argv:
            snapshot = json.loads(Path(argv[0]).read_text(encoding="utf-8"))
            written = TaskRepo(conn).import_state(snapshot)
            log.info("Imported %d instance(s) from %s", written, argv[0])
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
