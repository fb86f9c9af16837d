# src/bgsched/storage/__init__.py
"""
Storage layer for bgsched (SQLite).

- db: connection factory + pragmas
- migrations: lightweight SQL migrations runner (SQL files ship in storage/sql)
- repo: transactional access to definitions and scheduled instances
"""

from .db import SQLiteDB
from .migrations import DEFAULT_MIGRATIONS_DIR, apply_migrations
from .repo import TaskRepo

__all__ = ["SQLiteDB", "DEFAULT_MIGRATIONS_DIR", "apply_migrations", "TaskRepo"]
