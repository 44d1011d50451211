"""Operator Hub - task router: assignment and orphan sweep loops."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from operator_hub.assignment import analyze_task_roles, find_best_slot, plan_assignments, slot_accepts
from operator_hub.session_runner import SessionRunner, SessionSpawnError
from operator_hub.status import IDLE, OFFLINE, slot_status, worker_view
from operator_hub.store import HeartbeatStore, SlotStore, TaskStore
from operator_hub.task_service import (
    TaskConflictError,
    TaskNotFoundError,
    emit_event,
    ensure_lane_transition,
    find_task,
    now_iso,
    parse_iso,
    record_transition,
)

logger = logging.getLogger("operator_hub.router")


async def _noop(*_args, **_kwargs) -> None:
    return None


def _clear_slot(slot: dict) -> None:
    slot["current_task_id"] = None
    slot["current_task_title"] = None
    slot["session_id"] = None
    slot["assigned_at"] = None


class AssignmentRouter:
    """Owns slot/task assignment state changes and the background loops.

    `main.py` owns API composition; this module owns the assignment policy
    application, lane transitions that free slots, and the loops.
    """

    def __init__(
        self,
        *,
        task_store: TaskStore,
        slot_store: SlotStore,
        heartbeat_store: HeartbeatStore,
        session_runner: SessionRunner,
        broadcast_event: Callable[[dict], Any] = _noop,
        broadcast_task: Callable[[dict, str], Any] = _noop,
        broadcast_worker: Callable[[dict], Any] = _noop,
        assign_interval_sec: int = 30,
        sweep_interval_sec: int = 300,
        orphan_threshold_sec: int = 900,
        stale_after_sec: int = 60,
        max_beats: int = 40,
        clock: Callable[[], datetime] | None = None,
    ):
        self.task_store = task_store
        self.slot_store = slot_store
        self.heartbeat_store = heartbeat_store
        self.session_runner = session_runner
        self.broadcast_event = broadcast_event
        self.broadcast_task = broadcast_task
        self.broadcast_worker = broadcast_worker
        self.assign_interval_sec = assign_interval_sec
        self.sweep_interval_sec = sweep_interval_sec
        self.orphan_threshold_sec = orphan_threshold_sec
        self.stale_after_sec = stale_after_sec
        self.max_beats = max_beats
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.enabled = True
        # in-flight session spawns (task_id -> asyncio.Task), not persisted
        self.launches: dict[str, asyncio.Task] = {}
        self.stats: dict[str, Any] = {"last_cycle_at": None, "cycle_count": 0, "last_assigned": [], "last_sweep_at": None}

    # --- slot views ---
    def workers(self) -> list[dict]:
        now = self._clock()
        records = self.heartbeat_store.records()
        return [worker_view(s, records.get(s["slot"]), now, self.stale_after_sec) for s in self.slot_store.all()]

    def worker(self, slot_id: str) -> Optional[dict]:
        for view in self.workers():
            if view["slot"] == slot_id:
                return view
        return None

    def idle_slots(self) -> list[dict]:
        now = self._clock()
        records = self.heartbeat_store.records()
        return [
            s for s in self.slot_store.all()
            if slot_status(s, records.get(s["slot"]), now, self.stale_after_sec) == IDLE
        ]

    async def heartbeat(
        self,
        slot_id: str,
        *,
        agent_status: Optional[str] = None,
        task_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Optional[dict]:
        at = self._clock().isoformat()
        found = False
        with self.slot_store.transaction() as data:
            for slot in data["slots"]:
                if slot["slot"] != slot_id:
                    continue
                found = True
                slot["last_heartbeat_at"] = at
                if agent_status:
                    slot["agent_status"] = agent_status
                if session_id and task_id and slot.get("current_task_id") == task_id:
                    slot["session_id"] = session_id
                slot["beats"] = ([{"at": at}] + list(slot.get("beats") or []))[: self.max_beats]
        if not found:
            return None
        view = self.worker(slot_id)
        await self.broadcast_worker(view)
        return view

    def free_slot(self, slot_id: Optional[str], task_id: str) -> bool:
        if not slot_id:
            return False
        freed = False
        with self.slot_store.transaction() as data:
            for slot in data["slots"]:
                if slot["slot"] == slot_id and slot.get("current_task_id") == task_id:
                    _clear_slot(slot)
                    freed = True
        return freed

    # --- assignment ---
    def _claim(self, task_id: str, slot_id: str, source: str) -> tuple[dict, dict, dict]:
        """Persist the assignment of ``task_id`` to ``slot_id``."""
        with self.task_store.transaction() as data:
            task = find_task(data, task_id)
            if not task:
                raise TaskNotFoundError(task_id)
            if task.get("lane") != "queued":
                raise TaskConflictError(f"task {task_id} is not queued (lane={task.get('lane')})")

            with self.slot_store.transaction() as slot_data:
                slot = next((s for s in slot_data["slots"] if s["slot"] == slot_id), None)
                if slot is None:
                    raise TaskConflictError(f"unknown slot {slot_id}")
                if slot.get("current_task_id"):
                    raise TaskConflictError(f"slot {slot_id} already holds {slot['current_task_id']}")
                if not slot_accepts(slot, task):
                    raise TaskConflictError(f"task {task_id} is reserved for {task.get('owner')}")
                at = now_iso()
                slot["current_task_id"] = task_id
                slot["current_task_title"] = task.get("title")
                slot["session_id"] = None
                slot["assigned_at"] = at

            task["owner"] = slot_id
            task["assigned_at"] = at
            task["blocked_reason"] = None
            record_transition(task, "development", f"assigned to {slot_id} ({source})")
            event = emit_event(
                data,
                "task_assigned",
                task_id=task_id,
                slot=slot_id,
                message=f"Task {task_id} assigned to {slot_id}",
                meta={"source": source, "priority": task.get("priority")},
            )
        return task, dict(slot), event

    async def assign(self, task_id: str, slot_id: str, *, source: str = "router") -> dict:
        task, slot = await self._claim_and_announce(task_id, slot_id, source)
        return await self._launch(task, slot)

    async def _claim_and_announce(self, task_id: str, slot_id: str, source: str) -> tuple[dict, dict]:
        task, slot, event = self._claim(task_id, slot_id, source)
        logger.info("Assigned %s (%s) to %s via %s", task_id, task.get("priority"), slot_id, source)
        await self.broadcast_event(event)
        await self.broadcast_task(task, "task_updated")
        return task, slot

    async def _launch(self, task: dict, slot: dict) -> dict:
        """Spawn the session for a claimed task; block the task if that fails."""
        task_id, slot_id = task["id"], slot["slot"]
        try:
            session_id = await self.session_runner.spawn(slot, task)
        except SessionSpawnError as exc:
            logger.error("Session spawn failed for %s on %s: %s", task_id, slot_id, exc)
            return await self.block(task_id, reason=f"session spawn failed: {exc}", slot_id=slot_id, event_type="session_spawn_failed")

        with self.task_store.transaction() as data:
            current = find_task(data, task_id)
            if current and current.get("owner") == slot_id and current.get("lane") == "development":
                current["session_id"] = session_id
                task = current
        with self.slot_store.transaction() as slot_data:
            for s in slot_data["slots"]:
                if s["slot"] == slot_id and s.get("current_task_id") == task_id:
                    s["session_id"] = session_id
        await self.broadcast_task(task, "task_updated")
        return task

    async def auto_assign(self, task_id: str) -> dict:
        task = self.task_store.get(task_id)
        if not task:
            raise TaskNotFoundError(task_id)
        roles = analyze_task_roles(task)
        if task.get("lane") != "queued":
            raise TaskConflictError(f"task {task_id} is not queued (lane={task.get('lane')})")
        slot = find_best_slot(task, self.idle_slots())
        if slot is None:
            reason = "owner-not-idle" if task.get("owner") else "no-idle-slot"
            return {"assigned": False, "slot": None, "reason": reason, "roles": roles, "task": task}
        updated = await self.assign(task_id, slot["slot"], source="auto-assign")
        return {
            "assigned": updated.get("lane") == "development",
            "slot": slot["slot"],
            "reason": None if updated.get("lane") == "development" else updated.get("blocked_reason"),
            "roles": roles,
            "task": updated,
        }

    async def assignment_cycle(self) -> list[dict]:
        """Claim every planned pair, then spawn their sessions concurrently."""
        idle = self.idle_slots()
        if not idle:
            return []
        queued = [t for t in self.task_store.read()["tasks"] if t.get("lane") == "queued"]
        claimed = []
        for task, slot in plan_assignments(queued, idle):
            try:
                claimed.append(await self._claim_and_announce(task["id"], slot["slot"], "router"))
            except (TaskConflictError, TaskNotFoundError) as exc:
                logger.warning("Skipped assignment of %s to %s: %s", task["id"], slot["slot"], exc)

        for task, slot in claimed:
            self.launches[task["id"]] = asyncio.create_task(self._launch(task, slot))
        outcomes = await asyncio.gather(*(self.launches[t["id"]] for t, _ in claimed), return_exceptions=True)

        results = []
        for (task, slot), outcome in zip(claimed, outcomes):
            self.launches.pop(task["id"], None)
            if isinstance(outcome, BaseException):
                logger.error("Session launch crashed for %s on %s: %s", task["id"], slot["slot"], outcome)
                lane = "development"
            else:
                lane = outcome.get("lane")
            results.append({"task_id": task["id"], "slot": slot["slot"], "lane": lane})
        return results

    # --- lane transitions that free a slot ---
    async def _finish(
        self,
        task_id: str,
        target: str,
        *,
        note: str,
        event_type: str,
        level: str = "info",
        slot_id: Optional[str] = None,
        reason: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> dict:
        with self.task_store.transaction() as data:
            task = find_task(data, task_id)
            if not task:
                raise TaskNotFoundError(task_id)
            if slot_id and task.get("owner") and task["owner"] != slot_id:
                raise TaskConflictError(f"task {task_id} is owned by {task['owner']}, not {slot_id}")
            ensure_lane_transition(task.get("lane", "proposed"), target)
            owner = task.get("owner")
            at = now_iso()
            if target in {"review", "done"}:
                task["completed_at"] = at
                task["completed_by"] = owner or slot_id
            if target == "blocked":
                task["blocked_at"] = at
                task["blocked_reason"] = reason or "No reason provided"
                task["blocked_by"] = owner or slot_id
            task["owner"] = None
            task["session_id"] = None
            task["assigned_at"] = None
            record_transition(task, target, note)
            event = emit_event(
                data,
                event_type,
                level=level,
                task_id=task_id,
                slot=owner or slot_id,
                message=f"Task {task_id} moved to {target}",
                meta={**(meta or {}), **({"reason": reason} if reason else {})},
            )
        if self.free_slot(owner or slot_id, task_id):
            view = self.worker(owner or slot_id)
            if view:
                await self.broadcast_worker(view)
        await self.broadcast_event(event)
        await self.broadcast_task(task, "task_updated")
        return task

    async def complete(self, task_id: str, *, lane: str = "review", summary: Optional[str] = None, slot_id: Optional[str] = None) -> dict:
        if lane not in {"review", "done"}:
            raise TaskConflictError(f"complete must target review or done, not {lane}")
        task = await self._finish(
            task_id,
            lane,
            note=f"completed{': ' + summary if summary else ''}",
            event_type="task_completed",
            slot_id=slot_id,
            meta={"summary": summary} if summary else None,
        )
        logger.info("Task %s completed -> %s", task_id, lane)
        return task

    async def block(self, task_id: str, *, reason: Optional[str] = None, slot_id: Optional[str] = None, event_type: str = "task_blocked") -> dict:
        task = await self._finish(
            task_id,
            "blocked",
            note=f"blocked: {reason or 'unknown reason'}",
            event_type=event_type,
            level="error" if event_type == "session_spawn_failed" else "warning",
            slot_id=slot_id,
            reason=reason,
        )
        logger.warning("Task %s blocked: %s", task_id, reason)
        return task

    async def release(self, task_id: str, *, note: str = "released") -> dict:
        task = await self._finish(task_id, "queued", note=note, event_type="task_released", level="warning")
        logger.info("Task %s released back to queued", task_id)
        return task

    async def delete(self, task_id: str) -> dict:
        with self.task_store.transaction() as data:
            task = find_task(data, task_id)
            if not task:
                raise TaskNotFoundError(task_id)
            owner = task.get("owner") if task.get("lane") == "development" else None
            data["tasks"] = [t for t in data["tasks"] if t.get("id") != task_id]
            task["deleted_at"] = now_iso()
            data["trash"].append(task)
            event = emit_event(data, "task_deleted", task_id=task_id, slot=owner, message=f"Task {task_id} moved to trash")
        self.free_slot(owner, task_id)
        await self.broadcast_event(event)
        return task

    # --- orphan sweep ---
    async def sweep_cycle(self) -> list[str]:
        """Release development tasks held past the orphan threshold by offline slots."""
        now = self._clock()
        records = self.heartbeat_store.records()
        statuses = {}
        for slot in self.slot_store.all():
            probe = {**slot, "current_task_id": None}
            statuses[slot["slot"]] = slot_status(probe, records.get(slot["slot"]), now, self.stale_after_sec)

        released = []
        for task in self.task_store.list(lane="development"):
            claimed = parse_iso(task.get("assigned_at") or task.get("updated_at"))
            if not claimed or (now - claimed).total_seconds() <= self.orphan_threshold_sec:
                continue
            if statuses.get(task.get("owner")) != OFFLINE:
                logger.info("Long-running task %s on %s, slot still alive", task["id"], task.get("owner"))
                continue
            logger.warning("Orphaned task %s (owner %s offline), releasing", task["id"], task.get("owner"))
            await self.release(task["id"], note="released by sweep: owner offline")
            released.append(task["id"])
        self.stats["last_sweep_at"] = now.isoformat()
        return released

    # --- loops ---
    async def run_cycle(self) -> list[dict]:
        results = await self.assignment_cycle()
        self.stats["last_cycle_at"] = self._clock().isoformat()
        self.stats["cycle_count"] = self.stats.get("cycle_count", 0) + 1
        self.stats["last_assigned"] = results
        return results

    async def assignment_loop(self):
        logger.info("Assignment loop started (every %ss)", self.assign_interval_sec)
        while True:
            try:
                if self.enabled:
                    await self.run_cycle()
            except Exception as exc:  # noqa: BLE001
                logger.exception("assignment loop error: %s", exc)
            await asyncio.sleep(self.assign_interval_sec)

    async def sweep_loop(self):
        logger.info("Sweep loop started (every %ss)", self.sweep_interval_sec)
        while True:
            await asyncio.sleep(self.sweep_interval_sec)
            try:
                await self.sweep_cycle()
            except Exception as exc:  # noqa: BLE001
                logger.exception("sweep loop error: %s", exc)
