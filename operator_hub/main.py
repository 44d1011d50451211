"""Operator Hub backend - task board API with auto-assignment and worker status.

Key capabilities:
- Background assignment loop: queued tasks go to idle slots by priority
- Agent session spawn per assignment (blocked on spawn failure)
- Heartbeat-derived worker status (working / idle / offline)
- Task execution protocol endpoints (complete / blocked / release / work)
- Activity log and WebSocket broadcast
"""
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from operator_hub import __version__
from operator_hub.assignment import analyze_task_roles
from operator_hub.config import (
    AGENT_CLI,
    ALLOWED_ORIGINS,
    ASSIGN_INTERVAL_SEC,
    DATA_DIR,
    HEARTBEAT_FILE,
    HEARTBEAT_STALE_SEC,
    HOST,
    MAX_BEATS,
    MAX_EVENTS,
    ORPHAN_THRESHOLD_SEC,
    PORT,
    SESSION_EXEC_MODE,
    SESSION_SPAWN_TIMEOUT_SEC,
    SESSION_WORKDIR,
    SLOTS_FILE,
    SWEEP_INTERVAL_SEC,
    TASKS_FILE,
)
from operator_hub.models import (
    BlockRequest,
    CompleteRequest,
    HeartbeatRequest,
    ReleaseRequest,
    TaskCreate,
    TaskUpdate,
    WorkUpdate,
)
from operator_hub.router import AssignmentRouter
from operator_hub.session_runner import SessionRunner
from operator_hub.status import compute_blockers
from operator_hub.store import HeartbeatStore, SlotStore, TaskStore
from operator_hub.task_service import (
    TaskConflictError,
    TaskNotFoundError,
    TaskValidationError,
    apply_update,
    emit_event,
    find_task,
    merge_work,
    new_task,
    now_iso,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("operator_hub")

TASK_STORE = TaskStore(TASKS_FILE)
SLOT_STORE = SlotStore(SLOTS_FILE)
HEARTBEAT_STORE = HeartbeatStore(HEARTBEAT_FILE)
SESSION_RUNNER = SessionRunner(
    agent_cli=AGENT_CLI,
    exec_mode=SESSION_EXEC_MODE,
    timeout_sec=SESSION_SPAWN_TIMEOUT_SEC,
    workdir=SESSION_WORKDIR,
)

# in-memory runtime handles (not persisted)
BACKGROUND_TASKS: list[asyncio.Task] = []
ROUTER: Optional[AssignmentRouter] = None


# --- WebSocket connection manager ---
class ConnectionManager:
    def __init__(self):
        self.active: list[WebSocket] = []

    async def connect(self, ws: WebSocket):
        await ws.accept()
        self.active.append(ws)

    def disconnect(self, ws: WebSocket):
        if ws in self.active:
            self.active.remove(ws)

    async def broadcast(self, message: dict):
        for ws in list(self.active):
            try:
                await ws.send_json(message)
            except Exception:
                if ws in self.active:
                    self.active.remove(ws)


ws_manager = ConnectionManager()


# --- Helpers ---
async def broadcast_task_event(task: dict, event_type: str):
    await ws_manager.broadcast({"type": event_type, "task": task})


async def broadcast_event(event: dict):
    await ws_manager.broadcast({"type": "event_created", "event": event})


async def broadcast_worker(worker: dict):
    await ws_manager.broadcast({"type": "worker_updated", "worker": worker})


def _get_router() -> AssignmentRouter:
    global ROUTER
    if ROUTER is None:
        ROUTER = AssignmentRouter(
            task_store=TASK_STORE,
            slot_store=SLOT_STORE,
            heartbeat_store=HEARTBEAT_STORE,
            session_runner=SESSION_RUNNER,
            broadcast_event=broadcast_event,
            broadcast_task=broadcast_task_event,
            broadcast_worker=broadcast_worker,
            assign_interval_sec=ASSIGN_INTERVAL_SEC,
            sweep_interval_sec=SWEEP_INTERVAL_SEC,
            orphan_threshold_sec=ORPHAN_THRESHOLD_SEC,
            stale_after_sec=HEARTBEAT_STALE_SEC,
            max_beats=MAX_BEATS,
        )
    return ROUTER


def _require_task(task_id: str) -> dict:
    task = TASK_STORE.get(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


# --- FastAPI app lifecycle ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    HEARTBEAT_FILE.parent.mkdir(parents=True, exist_ok=True)

    router = _get_router()
    logger.info(
        "Operator Hub starting: data=%s heartbeats=%s session_mode=%s",
        DATA_DIR, HEARTBEAT_FILE, SESSION_EXEC_MODE,
    )

    BACKGROUND_TASKS.clear()
    BACKGROUND_TASKS.append(asyncio.create_task(router.assignment_loop()))
    BACKGROUND_TASKS.append(asyncio.create_task(router.sweep_loop()))

    yield

    for task in BACKGROUND_TASKS:
        task.cancel()
    BACKGROUND_TASKS.clear()


app = FastAPI(title="Operator Hub API", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


# --- Error mapping ---
@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(TaskValidationError)
async def task_validation_handler(request: Request, exc: TaskValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(TaskConflictError)
async def task_conflict_handler(request: Request, exc: TaskConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(TaskNotFoundError)
async def task_not_found_handler(request: Request, exc: TaskNotFoundError):
    return JSONResponse(status_code=404, content={"detail": "Task not found"})


# --- API routes ---
@app.get("/api/health")
async def health():
    router = _get_router()
    return {
        "status": "ok",
        "timestamp": now_iso(),
        "version": __version__,
        "session_exec_mode": SESSION_EXEC_MODE,
        "router": {"enabled": router.enabled, "last_cycle_at": router.stats.get("last_cycle_at")},
    }


# --- Worker endpoints ---
@app.get("/api/workers")
async def list_workers():
    return _get_router().workers()


@app.get("/api/workers/{slot_id}")
async def get_worker(slot_id: str):
    worker = _get_router().worker(slot_id)
    if not worker:
        raise HTTPException(status_code=404, detail="Worker not found")
    return worker


@app.post("/api/workers/{slot_id}/heartbeat")
async def worker_heartbeat(slot_id: str, body: Optional[HeartbeatRequest] = None):
    body = body or HeartbeatRequest()
    worker = await _get_router().heartbeat(
        slot_id,
        agent_status=body.status,
        task_id=body.task_id,
        session_id=body.session_id,
    )
    if not worker:
        raise HTTPException(status_code=404, detail="Worker not found")
    return worker


@app.get("/api/blockers")
async def list_blockers():
    now = datetime.now(timezone.utc)
    return {"blockers": compute_blockers(_get_router().workers(), now)}


# --- Task endpoints ---
@app.get("/api/tasks")
async def list_tasks(lane: Optional[str] = None, owner: Optional[str] = None):
    return TASK_STORE.list(lane=lane, owner=owner)


@app.post("/api/tasks", status_code=201)
async def create_task(body: TaskCreate):
    task = new_task(
        title=body.title,
        lane=body.lane,
        priority=body.priority,
        task_id=body.id,
        owner=body.owner,
        description=body.description,
        problem=body.problem,
        scope=body.scope,
        acceptance_criteria=body.acceptance_criteria,
        tags=body.tags,
    )
    with TASK_STORE.transaction() as data:
        if find_task(data, task["id"]):
            raise TaskConflictError(f"task {task['id']} already exists")
        data["tasks"].insert(0, task)
        event = emit_event(
            data,
            "task_created",
            task_id=task["id"],
            message=f"Task {task['id']} created",
            meta={"lane": task["lane"], "priority": task["priority"]},
        )
    logger.info("Task %s created (%s, %s)", task["id"], task["lane"], task["priority"])

    await broadcast_task_event(task, "task_updated")
    await broadcast_event(event)
    return task


@app.get("/api/tasks/{task_id}")
async def get_task(task_id: str):
    return _require_task(task_id)


@app.patch("/api/tasks/{task_id}")
async def update_task(task_id: str, body: TaskUpdate):
    updates = body.model_dump(exclude_unset=True)
    with TASK_STORE.transaction() as data:
        task = find_task(data, task_id)
        if not task:
            raise HTTPException(status_code=404, detail="Task not found")
        previous_lane = task.get("lane")
        freed_owner = apply_update(task, updates)
        event = emit_event(
            data,
            "task_updated",
            task_id=task_id,
            message=f"Task {task_id} updated",
            meta={"fields": sorted(updates), "from": previous_lane, "to": task.get("lane")},
        )

    router = _get_router()
    if freed_owner and router.free_slot(freed_owner, task_id):
        worker = router.worker(freed_owner)
        if worker:
            await broadcast_worker(worker)
    await broadcast_task_event(task, "task_updated")
    await broadcast_event(event)
    return task


@app.delete("/api/tasks/{task_id}")
async def delete_task(task_id: str):
    task = await _get_router().delete(task_id)
    await ws_manager.broadcast({"type": "task_deleted", "task_id": task_id})
    return {"deleted": True, "task_id": task_id, "deleted_at": task["deleted_at"]}


@app.post("/api/tasks/{task_id}/auto-assign")
async def auto_assign_task(task_id: str):
    result = await _get_router().auto_assign(task_id)
    return result


@app.post("/api/tasks/{task_id}/complete")
async def complete_task(task_id: str, body: Optional[CompleteRequest] = None):
    body = body or CompleteRequest()
    return await _get_router().complete(task_id, lane=body.lane, summary=body.summary, slot_id=body.slot)


@app.post("/api/tasks/{task_id}/blocked")
async def block_task(task_id: str, body: Optional[BlockRequest] = None):
    body = body or BlockRequest()
    return await _get_router().block(task_id, reason=body.reason, slot_id=body.slot)


@app.post("/api/tasks/{task_id}/release")
async def release_task(task_id: str, body: Optional[ReleaseRequest] = None):
    body = body or ReleaseRequest()
    return await _get_router().release(task_id, note=body.note)


@app.put("/api/tasks/{task_id}/work")
async def update_task_work(task_id: str, body: WorkUpdate):
    with TASK_STORE.transaction() as data:
        task = find_task(data, task_id)
        if not task:
            raise HTTPException(status_code=404, detail="Task not found")
        work = merge_work(
            task,
            commits=body.commits,
            artifacts=body.artifacts,
            test_results=body.test_results,
            notes=body.notes,
            by=body.slot or task.get("owner"),
        )
        event = emit_event(
            data,
            "task_work_updated",
            task_id=task_id,
            slot=body.slot or task.get("owner"),
            message=f"Work recorded for {task_id}",
            meta={"commits": len(work["commits"]), "artifacts": len(work["artifacts"])},
        )
    await broadcast_task_event(task, "task_updated")
    await broadcast_event(event)
    return {"task_id": task_id, "work": work}


@app.get("/api/tasks/{task_id}/history")
async def task_history(task_id: str):
    task = _require_task(task_id)
    return {"task_id": task_id, "lane": task.get("lane"), "history": task.get("history", [])}


@app.get("/api/tasks/{task_id}/roles")
async def task_roles(task_id: str):
    task = _require_task(task_id)
    return {"task_id": task_id, "roles": analyze_task_roles(task)}


# --- Activity ---
@app.get("/api/activity")
async def list_activity(
    limit: int = Query(default=200, ge=1, le=MAX_EVENTS),
    level: Optional[str] = None,
    task_id: Optional[str] = None,
):
    events = TASK_STORE.read().get("events", [])
    result = []
    for event in reversed(events):
        if level and event.get("level") != level:
            continue
        if task_id and event.get("task_id") != task_id:
            continue
        result.append(event)
    return {"events": result[:limit]}


# --- Router control ---
@app.get("/api/router/status")
async def router_status():
    router = _get_router()
    return {
        "enabled": router.enabled,
        "last_cycle_at": router.stats.get("last_cycle_at"),
        "cycle_count": router.stats.get("cycle_count", 0),
        "last_assigned": router.stats.get("last_assigned", []),
        "last_sweep_at": router.stats.get("last_sweep_at"),
        "interval_sec": router.assign_interval_sec,
        "sweep_interval_sec": router.sweep_interval_sec,
        "orphan_threshold_sec": router.orphan_threshold_sec,
        "launching": sorted(router.launches),
    }


@app.post("/api/router/toggle")
async def router_toggle():
    """Pause or resume the assignment loop."""
    router = _get_router()
    router.enabled = not router.enabled
    state = "enabled" if router.enabled else "paused"
    logger.info("Router %s", state)

    with TASK_STORE.transaction() as data:
        event = emit_event(data, "router_toggled", message=f"Router {state}", meta={"enabled": router.enabled})
    await broadcast_event(event)
    return {"enabled": router.enabled}


@app.post("/api/router/trigger")
async def router_trigger():
    """Run a single assignment cycle now."""
    router = _get_router()
    assigned: list[dict[str, Any]] = await router.run_cycle()
    return {"triggered": True, "assigned": assigned, "cycle_count": router.stats["cycle_count"]}


# --- WebSocket ---
@app.websocket("/ws")
async def websocket_updates(ws: WebSocket):
    await ws_manager.connect(ws)
    try:
        while True:
            msg = await ws.receive_text()
            if msg == "ping":
                await ws.send_json({"type": "pong"})
    except WebSocketDisconnect:
        ws_manager.disconnect(ws)


def run() -> None:
    import uvicorn

    uvicorn.run("operator_hub.main:app", host=HOST, port=PORT, reload=os.getenv("RELOAD") == "1")


if __name__ == "__main__":
    run()
