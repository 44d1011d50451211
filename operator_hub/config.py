"""Operator Hub - Configuration (single source of truth)."""
from __future__ import annotations

import os
from pathlib import Path

# --- Paths ---
DATA_DIR = Path(os.getenv("OPERATOR_HUB_DATA_DIR", str(Path(__file__).parent / "data")))
TASKS_FILE = DATA_DIR / "tasks.json"
SLOTS_FILE = DATA_DIR / "slots.json"
HEARTBEAT_FILE = Path(os.getenv("OPERATOR_HUB_HEARTBEAT_FILE", str(DATA_DIR / "worker-heartbeats.json")))

# --- Router ---
ASSIGN_INTERVAL_SEC = int(os.getenv("ASSIGN_INTERVAL_SEC", "30"))
SWEEP_INTERVAL_SEC = int(os.getenv("SWEEP_INTERVAL_SEC", "300"))
ORPHAN_THRESHOLD_SEC = int(os.getenv("ORPHAN_THRESHOLD_SEC", "900"))

# --- Heartbeats ---
HEARTBEAT_INTERVAL_SEC = int(os.getenv("HEARTBEAT_INTERVAL_SEC", "15"))
HEARTBEAT_STALE_SEC = int(os.getenv("HEARTBEAT_STALE_SEC", "60"))
MAX_BEATS = 40

# --- Agent sessions ---
AGENT_CLI = os.getenv("AGENT_CLI", "openclaw")
SESSION_EXEC_MODE = os.getenv("SESSION_EXEC_MODE", "real").lower()
SESSION_SPAWN_TIMEOUT_SEC = int(os.getenv("SESSION_SPAWN_TIMEOUT_SEC", "120"))
SESSION_WORKDIR = os.getenv("SESSION_WORKDIR") or None

# --- Server ---
HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8787"))

# --- CORS ---
ALLOWED_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")

# --- Board ---
LANES = ("proposed", "queued", "development", "review", "blocked", "done")
CREATE_LANES = ("proposed", "queued")
PRIORITY_ORDER = {"P0": 0, "P1": 1, "P2": 2, "P3": 3}
UNKNOWN_PRIORITY_RANK = 9
DEFAULT_PRIORITY = "P2"
MAX_EVENTS = 500

# Allowed lane moves for manual updates. Router-driven moves go through the
# same graph (queued -> development, development -> review/done/blocked/queued).
LANE_TRANSITIONS: dict[str, set[str]] = {
    "proposed": {"queued", "blocked", "done"},
    "queued": {"proposed", "development", "blocked", "done"},
    "development": {"queued", "review", "blocked", "done"},
    "review": {"queued", "development", "blocked", "done"},
    "blocked": {"proposed", "queued", "done"},
    "done": {"queued"},
}

# --- Slot roster ---
SLOT_ROSTER = [
    {"slot": "pm", "label": "TARS", "role": "pm", "roles": ["pm"]},
    {"slot": "architect", "label": "Blueprint", "role": "architect", "roles": ["architect", "designer"]},
    {"slot": "dev-1", "label": "Forge", "role": "developer", "roles": ["backend-dev", "fullstack-dev", "devops"]},
    {"slot": "dev-2", "label": "Patch", "role": "developer", "roles": ["frontend-dev", "fullstack-dev", "content"]},
    {"slot": "qa", "label": "Sentinel", "role": "qa", "roles": ["qa"]},
]
SLOT_IDS = tuple(s["slot"] for s in SLOT_ROSTER)


def build_slots() -> list[dict]:
    """Generate full slot state from the SLOT_ROSTER template."""
    slots = []
    for cfg in SLOT_ROSTER:
        slots.append({
            "slot": cfg["slot"],
            "label": cfg["label"],
            "role": cfg["role"],
            "roles": list(cfg["roles"]),
            "current_task_id": None,
            "current_task_title": None,
            "session_id": None,
            "assigned_at": None,
            "last_heartbeat_at": None,
            "agent_status": None,
            "beats": [],
        })
    return slots
