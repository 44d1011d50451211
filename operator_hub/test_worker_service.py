"""Tests for the worker heartbeat process."""
from __future__ import annotations

import asyncio

import pytest

from operator_hub.router import AssignmentRouter
from operator_hub.session_runner import SessionRunner
from operator_hub.store import HeartbeatStore, SlotStore, TaskStore
from operator_hub.task_service import new_task
from operator_hub.worker_service import WorkerService, parse_args, pick_active_task


def _task(task_id, owner, lane="development", priority="P2", updated_at="2025-01-01T00:00:00+00:00"):
    return {"id": task_id, "title": task_id.upper(), "owner": owner, "lane": lane, "priority": priority, "updated_at": updated_at}


class TestPickActiveTask:
    def test_best_priority_then_most_recent(self):
        tasks = [
            _task("old-p1", "dev-1", priority="P1", updated_at="2025-01-01T00:00:00+00:00"),
            _task("new-p1", "dev-1", priority="P1", updated_at="2025-02-01T00:00:00+00:00"),
            _task("new-p2", "dev-1", priority="P2", updated_at="2025-03-01T00:00:00+00:00"),
        ]
        assert pick_active_task(tasks, "dev-1")["id"] == "new-p1"

    def test_ignores_other_slots_and_lanes(self):
        tasks = [_task("theirs", "dev-2"), _task("review", "dev-1", lane="review")]
        assert pick_active_task(tasks, "dev-1") is None


class TestWorkerService:
    def _service(self, tmp_path, slot="dev-1"):
        return WorkerService(
            slot,
            task_store=TaskStore(tmp_path / "tasks.json"),
            heartbeat_store=HeartbeatStore(tmp_path / "worker-heartbeats.json"),
            interval_sec=1,
        )

    def test_unknown_slot_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            self._service(tmp_path, slot="dev-9")

    def test_beat_without_task_is_idle(self, tmp_path):
        service = self._service(tmp_path)
        record = service.beat()
        assert record["status"] == "idle"
        assert record["task"] is None
        assert record["last_update"]
        assert service.heartbeat_store.records()["dev-1"]["metadata"]["pid"]

    def test_beat_reports_active_task(self, tmp_path):
        service = self._service(tmp_path)
        with service.task_store.transaction() as data:
            data["tasks"].append(_task("task-1", "dev-1"))
        record = service.beat()
        assert record["status"] == "working"
        assert record["task"] == "task-1"
        assert record["task_title"] == "TASK-1"

    def test_stop_writes_offline_record(self, tmp_path):
        service = self._service(tmp_path)

        async def _run():
            loop = asyncio.get_running_loop()
            loop.call_later(0.05, service.stop)
            await service.run()

        asyncio.run(_run())
        assert service.heartbeat_store.records()["dev-1"]["status"] == "offline"

    def test_stopped_worker_gets_no_new_tasks(self, tmp_path):
        service = self._service(tmp_path)
        with service.task_store.transaction() as data:
            data["tasks"].append(new_task(title="Urgent fix", priority="P0"))
        router = AssignmentRouter(
            task_store=service.task_store,
            slot_store=SlotStore(tmp_path / "slots.json"),
            heartbeat_store=service.heartbeat_store,
            session_runner=SessionRunner(agent_cli="openclaw", exec_mode="dry-run"),
        )

        service.beat()
        assert router.worker("dev-1")["status"] == "idle"

        service.write_offline()
        assert router.worker("dev-1")["status"] == "offline"
        assert asyncio.run(router.run_cycle()) == []
        assert service.task_store.list(lane="queued")[0]["title"] == "Urgent fix"

    def test_parse_args(self):
        args = parse_args(["qa", "--interval", "5"])
        assert args.slot == "qa"
        assert args.interval == 5
