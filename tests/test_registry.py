import pytest

from ralph.errors import RegistryError
from ralph.registry import ChildTask, ChildTaskStatus, SessionRegistry, SessionRole


def test_get_auto_creates_unassigned_record() -> None:
    registry = SessionRegistry(clock=lambda: 50.0)

    record = registry.get("ses-1")

    assert record.role is None
    assert record.assigned is False
    assert record.context_loaded is False
    assert record.last_progress_at == 50.0
    assert registry.peek("ses-1") is record
    assert registry.peek("ses-2") is None


def test_role_is_immutable_once_assigned() -> None:
    registry = SessionRegistry()
    registry.register("ses-1", SessionRole.WORKER, 2, title="worker")

    registry.register("ses-1", SessionRole.WORKER, 2)
    with pytest.raises(RegistryError, match="already registered as worker"):
        registry.register("ses-1", SessionRole.STRATEGIST, 2)

    assert registry.get("ses-1").role is SessionRole.WORKER
    assert registry.get("ses-1").title == "worker"


def test_register_assigns_auto_created_record() -> None:
    registry = SessionRegistry()
    registry.get("ses-1")

    record = registry.register("ses-1", SessionRole.SUBTASK, 4)

    assert record.role is SessionRole.SUBTASK
    assert record.attempt == 4


def test_mutate_returns_callback_result() -> None:
    registry = SessionRegistry()

    def _load(record):
        record.context_loaded = True
        return "loaded"

    assert registry.mutate("ses-1", _load) == "loaded"
    assert registry.get("ses-1").context_loaded is True


def test_touch_updates_progress_time() -> None:
    now = [10.0]
    registry = SessionRegistry(clock=lambda: now[0])
    registry.register("ses-1", SessionRole.WORKER, 1)

    now[0] = 99.0
    registry.touch("ses-1")

    assert registry.get("ses-1").last_progress_at == 99.0


def test_session_ids_filter_by_role_and_remove() -> None:
    registry = SessionRegistry()
    registry.register("main", SessionRole.MAIN, 0)
    registry.register("s-1", SessionRole.STRATEGIST, 1)
    registry.register("w-1", SessionRole.WORKER, 1)

    assert registry.session_ids(role=SessionRole.WORKER) == ["w-1"]
    assert set(registry.session_ids()) == {"main", "s-1", "w-1"}

    removed = registry.remove("w-1")

    assert removed is not None and removed.session_id == "w-1"
    assert registry.remove("w-1") is None
    assert registry.session_ids(role=SessionRole.WORKER) == []


def test_record_running_tasks_and_snapshot() -> None:
    registry = SessionRegistry()
    record = registry.register("w-1", SessionRole.WORKER, 1)
    record.child_tasks.append(ChildTask(id="c-1", label="alpha", goal="a", spawn_time=1.0))
    record.child_tasks.append(
        ChildTask(
            id="c-2",
            label="beta",
            goal="b",
            spawn_time=2.0,
            status=ChildTaskStatus.DONE,
            result_text="ok",
        )
    )

    assert [task.label for task in record.running_tasks()] == ["alpha"]
    assert record.find_task("beta").result_text == "ok"
    assert record.find_task("gamma") is None

    snapshot = registry.snapshot()
    assert snapshot[0]["role"] == "worker"
    assert snapshot[0]["child_tasks"][1]["status"] == "done"
