"""Heartbeat-derived worker status."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from operator_hub.config import HEARTBEAT_FILE
from operator_hub.task_service import parse_iso

WORKING = "working"
IDLE = "idle"
OFFLINE = "offline"


def resolve_status(
    current_task_id: Optional[str],
    last_heartbeat_at: Optional[datetime],
    now: datetime,
    stale_after_sec: float,
) -> str:
    """Map a slot's current task and last heartbeat to working/idle/offline.

    A current task wins over a stale heartbeat: a slot holding a task is
    reported ``working`` whatever the heartbeat age.
    """
    if current_task_id:
        return WORKING
    if last_heartbeat_at is not None and (now - last_heartbeat_at).total_seconds() <= stale_after_sec:
        return IDLE
    return OFFLINE


def _live_update(record: Optional[dict]) -> Optional[str]:
    # a stopped worker's final record is not a heartbeat
    if not record or record.get("status") == OFFLINE:
        return None
    return record.get("last_update")


def last_beat(slot: dict, record: Optional[dict]) -> Optional[datetime]:
    """Latest of the API-side heartbeat and the worker process heartbeat.

    API-side beats older than a worker's offline record are ignored too, so a
    cleanly stopped worker reads offline immediately.
    """
    api_beat = parse_iso(slot.get("last_heartbeat_at"))
    if record and record.get("status") == OFFLINE:
        stopped_at = parse_iso(record.get("last_update"))
        if api_beat and stopped_at and api_beat <= stopped_at:
            api_beat = None
    candidates = [api_beat, parse_iso(_live_update(record))]
    present = [c for c in candidates if c is not None]
    return max(present) if present else None


def slot_status(slot: dict, record: Optional[dict], now: datetime, stale_after_sec: float) -> str:
    return resolve_status(slot.get("current_task_id"), last_beat(slot, record), now, stale_after_sec)


def worker_view(slot: dict, record: Optional[dict], now: datetime, stale_after_sec: float) -> dict:
    beat = last_beat(slot, record)
    beats = list(slot.get("beats") or [])
    live = _live_update(record)
    if live and not any(b.get("at") == live for b in beats):
        beats.insert(0, {"at": live})
    agent_status = slot.get("agent_status")
    if record and record.get("status"):
        agent_status = record["status"]
    return {
        "slot": slot["slot"],
        "label": slot.get("label"),
        "role": slot.get("role"),
        "status": resolve_status(slot.get("current_task_id"), beat, now, stale_after_sec),
        "task": slot.get("current_task_title"),
        "taskId": slot.get("current_task_id"),
        "sessionId": slot.get("session_id"),
        "agentStatus": agent_status,
        "lastBeatAt": beat.isoformat() if beat else None,
        "beats": beats,
    }


def compute_blockers(workers: list[dict], now: datetime) -> list[dict]:
    blockers = []
    offline = [w["slot"] for w in workers if w.get("status") == OFFLINE]
    if offline:
        blockers.append({
            "id": "workers-offline",
            "title": "Some workers are offline",
            "severity": "High" if len(offline) == len(workers) else "Medium",
            "detected_at": now.isoformat(),
            "details": f"offline: {', '.join(offline)}",
            "remediation": [
                {"label": "Start a worker", "command": f"operator-hub-worker {offline[0]}"},
                {"label": "Inspect heartbeat file", "command": f"cat {HEARTBEAT_FILE}"},
            ],
        })
    return blockers
