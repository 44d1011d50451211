from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest import TestCase

from operator_hub.status import (
    IDLE,
    OFFLINE,
    WORKING,
    compute_blockers,
    last_beat,
    resolve_status,
    worker_view,
)

NOW = datetime(2025, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class ResolveStatusTests(TestCase):
    def test_current_task_wins_over_stale_heartbeat(self):
        self.assertEqual(resolve_status("task-1", NOW - timedelta(hours=3), NOW, 60), WORKING)
        self.assertEqual(resolve_status("task-1", None, NOW, 60), WORKING)

    def test_fresh_heartbeat_without_task_is_idle(self):
        self.assertEqual(resolve_status(None, NOW - timedelta(seconds=10), NOW, 60), IDLE)

    def test_window_boundary_is_inclusive(self):
        self.assertEqual(resolve_status(None, NOW - timedelta(seconds=60), NOW, 60), IDLE)
        self.assertEqual(resolve_status(None, NOW - timedelta(seconds=61), NOW, 60), OFFLINE)

    def test_never_seen_is_offline(self):
        self.assertEqual(resolve_status(None, None, NOW, 60), OFFLINE)


class WorkerViewTests(TestCase):
    def test_last_beat_takes_latest_source(self):
        slot = {"slot": "dev-1", "last_heartbeat_at": "2025-05-01T11:00:00+00:00"}
        record = {"last_update": "2025-05-01T11:59:30Z"}
        self.assertEqual(last_beat(slot, record), datetime(2025, 5, 1, 11, 59, 30, tzinfo=timezone.utc))
        self.assertIsNone(last_beat({"slot": "dev-1"}, None))

    def test_offline_record_is_not_a_heartbeat(self):
        slot = {"slot": "dev-1", "last_heartbeat_at": "2025-05-01T11:59:00+00:00", "beats": []}
        record = {"status": "offline", "last_update": "2025-05-01T11:59:55+00:00"}
        self.assertIsNone(last_beat(slot, record))

        view = worker_view(slot, record, NOW, 60)
        self.assertEqual(view["status"], OFFLINE)
        self.assertEqual(view["agentStatus"], "offline")
        self.assertEqual(view["beats"], [])

    def test_api_beat_after_stop_counts(self):
        slot = {"slot": "dev-1", "last_heartbeat_at": "2025-05-01T11:59:58+00:00"}
        record = {"status": "offline", "last_update": "2025-05-01T11:59:30+00:00"}
        self.assertEqual(resolve_status(None, last_beat(slot, record), NOW, 60), IDLE)

    def test_view_fields(self):
        slot = {
            "slot": "dev-1",
            "label": "Forge",
            "role": "developer",
            "current_task_id": "task-9",
            "current_task_title": "Fix login",
            "session_id": "agent:main:subagent:dev-1-9",
            "last_heartbeat_at": None,
            "beats": [],
        }
        record = {"status": "working", "last_update": "2025-05-01T11:59:50+00:00"}
        view = worker_view(slot, record, NOW, 60)

        self.assertEqual(view["status"], WORKING)
        self.assertEqual(view["taskId"], "task-9")
        self.assertEqual(view["task"], "Fix login")
        self.assertEqual(view["agentStatus"], "working")
        self.assertEqual(view["lastBeatAt"], "2025-05-01T11:59:50+00:00")
        self.assertEqual(view["beats"], [{"at": "2025-05-01T11:59:50+00:00"}])


class BlockerTests(TestCase):
    def test_no_blockers_when_everyone_reports(self):
        self.assertEqual(compute_blockers([{"slot": "pm", "status": IDLE}], NOW), [])

    def test_offline_workers_raise_blocker(self):
        workers = [{"slot": "pm", "status": OFFLINE}, {"slot": "qa", "status": IDLE}]
        blockers = compute_blockers(workers, NOW)
        self.assertEqual(len(blockers), 1)
        self.assertEqual(blockers[0]["id"], "workers-offline")
        self.assertEqual(blockers[0]["severity"], "Medium")
        self.assertIn("pm", blockers[0]["details"])

    def test_all_offline_is_high_severity(self):
        blockers = compute_blockers([{"slot": "pm", "status": OFFLINE}], NOW)
        self.assertEqual(blockers[0]["severity"], "High")
