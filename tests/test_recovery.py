# tests/test_recovery.py
from pathlib import Path

from bgsched.domain.models import TaskDefinition
from bgsched.storage import SQLiteDB, TaskRepo, apply_migrations
from bgsched.engine.recovery import find_stale_running, stale_result

MINUTE = 60_000


def _seed_stale_running(db_path: Path, *, started_at: int) -> str:
    db = SQLiteDB(db_path)
    with db.session() as conn:
        apply_migrations(conn)
        repo = TaskRepo(conn)
        repo.register_task(TaskDefinition(name="resume", work_id="echo"), first_run_at=started_at, now_ms=started_at)
        (inst,) = repo.list_instances("resume")
        # Simulated crash: claimed, never finished.
        assert repo.claim_instance(inst.id, now_ms=started_at) is not None
    return inst.id


def test_find_stale_running_skips_in_flight_and_recent(tmp_path: Path):
    db_path = tmp_path / "stale.db"
    instance_id = _seed_stale_running(db_path, started_at=0)
    db = SQLiteDB(db_path)

    assert find_stale_running(db, 5 * MINUTE, stale_after_ms=10 * MINUTE) == []
    assert find_stale_running(db, 20 * MINUTE, stale_after_ms=10 * MINUTE, in_flight={instance_id}) == []

    (stale,) = find_stale_running(db, 20 * MINUTE, stale_after_ms=10 * MINUTE)
    assert stale.id == instance_id

    result = stale_result(stale)
    assert result.outcome == "RETRY"
    assert result.error == "Stale"
    assert result.attempt == 0


def test_wake_recovers_stale_running_and_reruns_it(tmp_path: Path, client_factory):
    db_path = tmp_path / "tasks.db"
    instance_id = _seed_stale_running(db_path, started_at=0)

    with client_factory(db_path=db_path, overrides={"BGS_STALE_MS": str(10 * MINUTE)}) as client:
        r = client.post("/wake", json={"now_ms": 30 * MINUTE, "budget_ms": 2_000})
        assert r.status_code == 200, r.text
        body = r.json()
        assert body["recovered"] == [instance_id]
        assert body["dispatched"] == [instance_id]

        (inst,) = client.get("/tasks/resume").json()["instances"]
        assert inst["state"] == "SUCCEEDED"
        assert inst["attempt"] == 1

        errors = [x["error"] for x in client.get("/history").json()["results"]]
        assert errors == ["Stale", None]
