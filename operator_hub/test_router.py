"""Tests for the assignment router: assign, spawn failure, complete, sweep."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from operator_hub.router import AssignmentRouter
from operator_hub.session_runner import SessionSpawnError
from operator_hub.store import HeartbeatStore, SlotStore, TaskStore
from operator_hub.task_service import TaskConflictError, new_task


class FakeRunner:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.spawned: list[tuple[str, str]] = []

    async def spawn(self, slot: dict, task: dict) -> str:
        self.spawned.append((slot["slot"], task["id"]))
        if self.fail:
            raise SessionSpawnError("openclaw exited with 1")
        return f"agent:main:subagent:{slot['slot']}-{task['id']}"


class SlowRunner:
    def __init__(self):
        self.log: list[tuple[str, str]] = []

    async def spawn(self, slot: dict, task: dict) -> str:
        self.log.append(("start", slot["slot"]))
        await asyncio.sleep(0.05)
        self.log.append(("end", slot["slot"]))
        return f"agent:main:subagent:{slot['slot']}-{task['id']}"


@pytest.fixture
def stores(tmp_path):
    return (
        TaskStore(tmp_path / "tasks.json"),
        SlotStore(tmp_path / "slots.json"),
        HeartbeatStore(tmp_path / "worker-heartbeats.json"),
    )


def _router(stores, runner=None, **kwargs) -> AssignmentRouter:
    task_store, slot_store, heartbeat_store = stores
    return AssignmentRouter(
        task_store=task_store,
        slot_store=slot_store,
        heartbeat_store=heartbeat_store,
        session_runner=runner or FakeRunner(),
        **kwargs,
    )


def _add(task_store, **kwargs) -> dict:
    task = new_task(**kwargs)
    with task_store.transaction() as data:
        data["tasks"].append(task)
    return task


def _wake(router, *slots):
    for slot in slots:
        asyncio.run(router.heartbeat(slot))


class TestAssign:
    def test_assign_moves_task_to_development_and_marks_slot(self, stores):
        router = _router(stores)
        task = _add(stores[0], title="Build login API", priority="P1")
        _wake(router, "dev-1")

        updated = asyncio.run(router.assign(task["id"], "dev-1"))

        assert updated["lane"] == "development"
        assert updated["owner"] == "dev-1"
        assert updated["session_id"] == f"agent:main:subagent:dev-1-{task['id']}"
        worker = router.worker("dev-1")
        assert worker["status"] == "working"
        assert worker["taskId"] == task["id"]
        events = [e["type"] for e in stores[0].read()["events"]]
        assert "task_assigned" in events

    def test_busy_slot_is_refused(self, stores):
        router = _router(stores)
        first = _add(stores[0], title="First")
        second = _add(stores[0], title="Second")
        _wake(router, "dev-1")
        asyncio.run(router.assign(first["id"], "dev-1"))

        with pytest.raises(TaskConflictError):
            asyncio.run(router.assign(second["id"], "dev-1"))
        assert stores[0].get(second["id"])["lane"] == "queued"

    def test_spawn_failure_blocks_task_and_frees_slot(self, stores):
        router = _router(stores, FakeRunner(fail=True))
        task = _add(stores[0], title="Flaky")
        _wake(router, "qa")

        updated = asyncio.run(router.assign(task["id"], "qa"))

        assert updated["lane"] == "blocked"
        assert "session spawn failed" in updated["blocked_reason"]
        assert updated["owner"] is None
        assert router.worker("qa")["status"] == "idle"
        assert stores[0].read()["events"][-1]["type"] == "session_spawn_failed"


class TestCycle:
    def test_cycle_assigns_by_priority_to_idle_slots_only(self, stores):
        runner = FakeRunner()
        router = _router(stores, runner)
        low = _add(stores[0], title="Low", priority="P3")
        top = _add(stores[0], title="Top", priority="P0")
        _wake(router, "dev-1")

        results = asyncio.run(router.run_cycle())

        assert results == [{"task_id": top["id"], "slot": "dev-1", "lane": "development"}]
        assert stores[0].get(low["id"])["lane"] == "queued"
        assert router.stats["cycle_count"] == 1

    def test_second_cycle_does_not_double_assign(self, stores):
        router = _router(stores)
        _add(stores[0], title="A", priority="P1")
        _add(stores[0], title="B", priority="P1")
        _wake(router, "dev-1")

        asyncio.run(router.run_cycle())
        assert asyncio.run(router.run_cycle()) == []
        assert len(stores[0].list(lane="development")) == 1

    def test_slow_spawn_does_not_hold_up_other_slots(self, stores):
        runner = SlowRunner()
        router = _router(stores, runner)
        _add(stores[0], title="A", priority="P0")
        _add(stores[0], title="B", priority="P1")
        _wake(router, "dev-1", "dev-2")

        results = asyncio.run(router.run_cycle())

        assert {r["slot"] for r in results} == {"dev-1", "dev-2"}
        assert runner.log[:2] == [("start", "dev-1"), ("start", "dev-2")]
        assert router.launches == {}

    def test_auto_assign_reports_no_idle_slot(self, stores):
        router = _router(stores)
        task = _add(stores[0], title="Nobody home")
        result = asyncio.run(router.auto_assign(task["id"]))
        assert result["assigned"] is False
        assert result["reason"] == "no-idle-slot"


class TestLaneChanges:
    def test_complete_clears_owner_and_slot(self, stores):
        router = _router(stores)
        task = _add(stores[0], title="Docs", priority="P1")
        _wake(router, "dev-2")
        asyncio.run(router.assign(task["id"], "dev-2"))

        done = asyncio.run(router.complete(task["id"], lane="done", summary="shipped", slot_id="dev-2"))

        assert done["lane"] == "done"
        assert done["owner"] is None
        assert done["completed_by"] == "dev-2"
        assert router.worker("dev-2")["status"] == "idle"

    def test_complete_from_wrong_slot_is_refused(self, stores):
        router = _router(stores)
        task = _add(stores[0], title="Docs")
        _wake(router, "dev-2")
        asyncio.run(router.assign(task["id"], "dev-2"))
        with pytest.raises(TaskConflictError):
            asyncio.run(router.complete(task["id"], slot_id="qa"))

    def test_release_returns_task_to_queue(self, stores):
        router = _router(stores)
        task = _add(stores[0], title="Retry me")
        _wake(router, "pm")
        asyncio.run(router.assign(task["id"], "pm"))

        released = asyncio.run(router.release(task["id"]))

        assert released["lane"] == "queued"
        assert router.slot_store.get("pm")["current_task_id"] is None


class TestSweep:
    def test_orphaned_task_of_offline_slot_is_released(self, stores):
        router = _router(stores)
        task = _add(stores[0], title="Long job")
        _wake(router, "dev-1")
        asyncio.run(router.assign(task["id"], "dev-1"))

        later = datetime.now(timezone.utc) + timedelta(minutes=20)
        sweeper = _router(stores, clock=lambda: later)
        released = asyncio.run(sweeper.sweep_cycle())

        assert released == [task["id"]]
        assert stores[0].get(task["id"])["lane"] == "queued"

    def test_alive_slot_keeps_its_task(self, stores):
        router = _router(stores)
        task = _add(stores[0], title="Long job")
        _wake(router, "dev-1")
        asyncio.run(router.assign(task["id"], "dev-1"))

        later = datetime.now(timezone.utc) + timedelta(minutes=20)
        stores[2].write_record("dev-1", {"slot": "dev-1", "status": "working", "last_update": later.isoformat()})
        sweeper = _router(stores, clock=lambda: later)

        assert asyncio.run(sweeper.sweep_cycle()) == []
        assert stores[0].get(task["id"])["lane"] == "development"
