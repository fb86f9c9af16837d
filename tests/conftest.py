# tests/conftest.py
import importlib
import itertools
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import pytest
from fastapi.testclient import TestClient

from bgsched.engine.scheduler import Scheduler, SchedulerConfig
from bgsched.storage import SQLiteDB, apply_migrations
from helpers import TEST_CONFIG

_counter = itertools.count(1)

DEFAULT_ENV = {
    "BGS_MAX_CONCURRENT": "2",
    "BGS_MAX_ATTEMPTS": "3",
    "BGS_BASE_DELAY_MS": "1000",
    "BGS_MIN_INTERVAL_MS": "1000",
    "BGS_WAKE_BUDGET_MS": "3000",
    "BGS_AUTO_WAKE": "0",
    "BGS_WORK_MODULES": "sample_work",
    "BGS_LOG_LEVEL": "warning",
}


@pytest.fixture()
def db(tmp_path: Path) -> SQLiteDB:
    n = next(_counter)
    database = SQLiteDB(tmp_path / f"schedule_{n}.db")
    with database.session() as conn:
        apply_migrations(conn)
    return database


@pytest.fixture()
def scheduler_factory(db: SQLiteDB):
    """
    Builds schedulers on the test DB (or another one) and closes them afterwards.

    Usage:
      scheduler = scheduler_factory()
      scheduler = scheduler_factory(cfg=replace(TEST_CONFIG, max_attempts=5))
    """
    created: list[Scheduler] = []

    def _make(*, cfg: SchedulerConfig = TEST_CONFIG, database: Optional[SQLiteDB] = None, **kwargs) -> Scheduler:
        s = Scheduler(database or db, cfg, **kwargs)
        created.append(s)
        return s

    yield _make

    for s in created:
        s.close()


@pytest.fixture()
def scheduler(scheduler_factory) -> Scheduler:
    return scheduler_factory()


def _apply_env(monkeypatch: pytest.MonkeyPatch, db_path: Path, overrides: Optional[dict[str, str]] = None) -> None:
    monkeypatch.setenv("BGS_DB_PATH", str(db_path))
    for k, v in DEFAULT_ENV.items():
        monkeypatch.setenv(k, v)
    if overrides:
        for k, v in overrides.items():
            monkeypatch.setenv(k, v)


@contextmanager
def _client_ctx(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, *, overrides: Optional[dict[str, str]] = None,
                db_path: Optional[Path] = None) -> Iterator[TestClient]:
    if db_path is None:
        n = next(_counter)
        db_path = tmp_path / f"api_{n}.db"

    _apply_env(monkeypatch, db_path, overrides)

    # Import after env is set; reload to avoid cross-test state
    app_mod = importlib.import_module("bgsched.api.app")
    importlib.reload(app_mod)

    with TestClient(app_mod.app) as client:
        yield client


@pytest.fixture()
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    """
    Default API client: fresh sqlite db, no background wake loop, sample_work bound.
    """
    with _client_ctx(monkeypatch, tmp_path) as c:
        yield c


@pytest.fixture()
def client_factory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """
    Factory for tests that need custom settings or a pre-populated DB.

      with client_factory(overrides={"BGS_ON_DUPLICATE": "replace"}) as client:
          ...
    """

    def _make(*, overrides: Optional[dict[str, str]] = None, db_path: Optional[Path] = None):
        return _client_ctx(monkeypatch, tmp_path, overrides=overrides, db_path=db_path)

    return _make
