"""Task validation and mutation helpers."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from operator_hub.config import (
    CREATE_LANES,
    DEFAULT_PRIORITY,
    LANE_TRANSITIONS,
    LANES,
    MAX_EVENTS,
    PRIORITY_ORDER,
    UNKNOWN_PRIORITY_RANK,
)


class TaskValidationError(ValueError):
    """Raised when a task payload is invalid."""


class TaskConflictError(RuntimeError):
    """Raised when a task is not in a state that allows the operation."""


class TaskNotFoundError(LookupError):
    pass


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_title(title: Optional[str]) -> str:
    normalized = (title or "").strip()
    if not normalized:
        raise TaskValidationError("title is required")
    if len(normalized) > 200:
        raise TaskValidationError("title must be at most 200 characters")
    return normalized


def normalize_lane(lane: Optional[str], *, allowed: tuple[str, ...] = LANES, default: str = "queued") -> str:
    if lane is None or lane == "":
        return default
    value = str(lane).strip().lower()
    if value not in allowed:
        raise TaskValidationError(f"lane must be one of: {', '.join(allowed)}")
    return value


def normalize_priority(priority: Optional[str]) -> str:
    if priority is None or priority == "":
        return DEFAULT_PRIORITY
    value = str(priority).strip().upper()
    if value not in PRIORITY_ORDER:
        raise TaskValidationError(f"priority must be one of: {', '.join(PRIORITY_ORDER)}")
    return value


def priority_rank(priority: Optional[str]) -> int:
    return PRIORITY_ORDER.get(str(priority or "").upper(), UNKNOWN_PRIORITY_RANK)


def gen_task_id() -> str:
    return f"task-{uuid.uuid4().hex[:12]}"


def find_task(data: dict, task_id: str) -> Optional[dict]:
    for task in data.get("tasks", []):
        if task.get("id") == task_id:
            return task
    return None


def new_task(
    *,
    title: str,
    lane: Optional[str] = None,
    priority: Optional[str] = None,
    task_id: Optional[str] = None,
    owner: Optional[str] = None,
    description: str = "",
    problem: Optional[str] = None,
    scope: Optional[str] = None,
    acceptance_criteria: Optional[list[str]] = None,
    tags: Optional[list[str]] = None,
) -> dict:
    normalized_lane = normalize_lane(lane, allowed=CREATE_LANES)
    now = now_iso()
    task = {
        "id": (task_id or "").strip() or gen_task_id(),
        "title": normalize_title(title),
        "description": description or "",
        "problem": problem,
        "scope": scope,
        "acceptance_criteria": [c for c in (acceptance_criteria or []) if isinstance(c, str)],
        "tags": [t for t in (tags or []) if isinstance(t, str)],
        "lane": normalized_lane,
        "priority": normalize_priority(priority),
        "owner": owner or None,
        "session_id": None,
        "created_at": now,
        "updated_at": now,
        "assigned_at": None,
        "completed_at": None,
        "blocked_at": None,
        "blocked_reason": None,
        "history": [{"at": now, "from": None, "to": normalized_lane, "note": "created"}],
        "work": None,
    }
    return task


def ensure_lane_transition(current: str, target: str) -> None:
    if current == target:
        return
    if target not in LANE_TRANSITIONS.get(current, set()):
        raise TaskConflictError(f"lane transition not allowed: {current} -> {target}")


def record_transition(task: dict, target: str, note: str = "") -> None:
    """Move ``task`` to ``target`` and append a history entry."""
    current = task.get("lane")
    now = now_iso()
    task["updated_at"] = now
    if current == target:
        return
    task["lane"] = target
    task.setdefault("history", []).append({"at": now, "from": current, "to": target, "note": note})


def apply_update(task: dict, updates: dict[str, Any]) -> Optional[str]:
    """Apply a partial update. Returns the previous owner when the task leaves
    an active development assignment, so the caller can free that slot."""
    freed_owner = None
    if "title" in updates:
        task["title"] = normalize_title(updates["title"])
    if "priority" in updates:
        task["priority"] = normalize_priority(updates["priority"])
    for key in ("description", "problem", "scope"):
        if key in updates:
            task[key] = updates[key]
    if "acceptance_criteria" in updates:
        task["acceptance_criteria"] = [c for c in updates["acceptance_criteria"] or [] if isinstance(c, str)]
    if "tags" in updates:
        task["tags"] = [t for t in updates["tags"] or [] if isinstance(t, str)]

    if "owner" in updates and updates["owner"] != task.get("owner"):
        if task.get("lane") == "development":
            raise TaskConflictError("cannot change owner of a task in development")
        task["owner"] = updates["owner"] or None

    if "lane" in updates:
        target = normalize_lane(updates["lane"])
        current = task.get("lane", "proposed")
        ensure_lane_transition(current, target)
        if target == "development" and current != "development":
            raise TaskConflictError("tasks enter development through assignment")
        if current == "development" and target != "development":
            freed_owner = task.get("owner")
            task["session_id"] = None
            task["owner"] = None
        if target == "done":
            task["completed_at"] = now_iso()
        record_transition(task, target, "updated")
    else:
        task["updated_at"] = now_iso()
    return freed_owner


def merge_work(task: dict, *, commits=None, artifacts=None, test_results=None, notes=None, by: Optional[str] = None) -> dict:
    work = task.get("work") or {
        "commits": [],
        "test_results": None,
        "artifacts": [],
        "notes": None,
        "updated_at": None,
        "updated_by": None,
    }
    for key, incoming in (("commits", commits), ("artifacts", artifacts)):
        if isinstance(incoming, list):
            existing = work.setdefault(key, [])
            for item in incoming:
                if item not in existing:
                    existing.append(item)
    if test_results is not None:
        work["test_results"] = test_results
    if notes is not None:
        work["notes"] = notes
    work["updated_at"] = now_iso()
    work["updated_by"] = by or "unknown"
    task["work"] = work
    task["updated_at"] = work["updated_at"]
    return work


def emit_event(
    data: dict,
    event_type: str,
    *,
    level: str = "info",
    task_id: Optional[str] = None,
    slot: Optional[str] = None,
    message: str = "",
    meta: Optional[dict] = None,
) -> dict:
    event = {
        "id": f"evt-{uuid.uuid4().hex[:10]}",
        "type": event_type,
        "level": level,
        "task_id": task_id,
        "slot": slot,
        "message": message,
        "meta": meta or {},
        "created_at": now_iso(),
    }
    data.setdefault("events", []).append(event)
    if len(data["events"]) > MAX_EVENTS:
        data["events"] = data["events"][-MAX_EVENTS:]
    return event
