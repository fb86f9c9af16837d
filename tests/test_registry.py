# tests/test_registry.py
import pytest

from bgsched.domain.errors import DuplicateTaskError, UnknownTaskError, ValidationError
from bgsched.domain.models import TaskDefinition
from bgsched.domain.states import InstanceState
from bgsched.engine.registry import TaskRegistry, load_work_modules
from bgsched.storage import TaskRepo
from helpers import MINUTE


def _definition(name: str = "sync", **kwargs) -> TaskDefinition:
    kwargs.setdefault("work_id", name)
    return TaskDefinition(name=name, **kwargs)


def _instances(db, name):
    with db.session() as conn:
        return TaskRepo(conn).list_instances(task_name=name)


def test_register_and_lookup(db):
    registry = TaskRegistry(db)
    assert registry.register(_definition(initial_delay_ms=5_000), now_ms=1_000) is True

    found = registry.lookup("sync")
    assert found.name == "sync"
    assert [d.name for d in registry.definitions()] == ["sync"]

    (inst,) = _instances(db, "sync")
    assert inst.state == InstanceState.PENDING
    assert inst.next_run_at == 6_000
    assert inst.attempt == 0


def test_duplicate_name_rejected_by_default(db):
    registry = TaskRegistry(db)
    registry.register(_definition(), now_ms=0)
    with pytest.raises(DuplicateTaskError) as exc:
        registry.register(_definition(), now_ms=10)
    assert exc.value.code == "DUPLICATE_TASK"
    assert len(_instances(db, "sync")) == 1


def test_duplicate_keep_policy_leaves_existing(db):
    registry = TaskRegistry(db, on_duplicate="keep")
    registry.register(_definition(input_data={"v": 1}), now_ms=0)
    assert registry.register(_definition(input_data={"v": 2}), now_ms=10) is False
    assert registry.lookup("sync").input_data == {"v": 1}


def test_duplicate_replace_policy_swaps_definition(db):
    registry = TaskRegistry(db, on_duplicate="replace")
    registry.register(_definition(input_data={"v": 1}), now_ms=0)
    assert registry.register(_definition(input_data={"v": 2}), now_ms=10) is True

    assert registry.lookup("sync").input_data == {"v": 2}
    states = [(i.cycle, i.state) for i in _instances(db, "sync")]
    assert states == [(0, InstanceState.CANCELLED), (1, InstanceState.PENDING)]


def test_lookup_and_unregister_unknown(db):
    registry = TaskRegistry(db)
    with pytest.raises(UnknownTaskError):
        registry.lookup("nope")
    with pytest.raises(UnknownTaskError):
        registry.unregister("nope", now_ms=0)


def test_unregister_cancels_pending_instances(db):
    registry = TaskRegistry(db)
    registry.register(_definition(), now_ms=0)

    cancelled = registry.unregister("sync", now_ms=50)

    assert len(cancelled) == 1
    (inst,) = _instances(db, "sync")
    assert inst.state == InstanceState.CANCELLED
    assert inst.finished_at == 50
    with pytest.raises(UnknownTaskError):
        registry.lookup("sync")


def test_periodic_interval_below_platform_minimum_rejected(db):
    registry = TaskRegistry(db, min_interval_ms=15 * MINUTE)
    with pytest.raises(ValidationError):
        registry.register(_definition(periodic=True, interval_ms=MINUTE), now_ms=0)
    registry.register(_definition(periodic=True, interval_ms=15 * MINUTE), now_ms=0)


def test_unregister_by_tag_and_all(db):
    registry = TaskRegistry(db)
    registry.register(_definition("a", tag="sync"), now_ms=0)
    registry.register(_definition("b", tag="sync"), now_ms=0)
    registry.register(_definition("c"), now_ms=0)

    assert sorted(registry.unregister_by_tag("sync", now_ms=1)) == ["a", "b"]
    assert [d.name for d in registry.definitions()] == ["c"]
    assert registry.unregister_all(now_ms=2) == ["c"]
    assert registry.definitions() == []


def test_work_binding(db):
    registry = TaskRegistry(db)

    @registry.work("upload")
    def upload(ctx):
        return True

    assert registry.work_for("upload") is upload
    assert registry.work_for("missing") is None
    with pytest.raises(ValidationError):
        registry.bind("bad", "not callable")


def test_load_work_modules(db):
    registry = TaskRegistry(db)
    assert load_work_modules(registry, ["sample_work"]) == ["sample_work"]
    assert registry.work_for("echo") is not None

    with pytest.raises(ValueError):
        load_work_modules(registry, ["helpers"])
