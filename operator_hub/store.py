"""Operator Hub - JSON file stores.

Each JSON file has exactly one store object in a process. Every
read-modify-write runs inside ``transaction()``, which holds the file's
``FileLock`` for the whole cycle and replaces the file atomically on exit.
"""
from __future__ import annotations

import copy
import json
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from filelock import FileLock

from operator_hub.config import build_slots
from operator_hub.task_service import now_iso

logger = logging.getLogger("operator_hub.store")


class JsonFileStore:
    """Locked, atomically replaced JSON document."""

    def __init__(self, path: Path | str, default: Callable[[], dict]):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._default = default

    def _lock(self) -> FileLock:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return FileLock(str(self.lock_path))

    def _load(self) -> dict:
        if not self.path.exists():
            return self._default()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, ValueError):
            logger.warning("%s is corrupted, starting from an empty document", self.path)
            return self._default()
        if not isinstance(data, dict):
            return self._default()
        return data

    def _dump(self, data: dict) -> None:
        tmp = self.path.with_name(f".{self.path.name}.tmp.{os.getpid()}")
        try:
            tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    def shape(self, data: dict) -> dict:
        return data

    def read(self) -> dict:
        with self._lock():
            data = self._load()
        return self.shape(data)

    @contextmanager
    def transaction(self) -> Iterator[dict]:
        """Yield the document for mutation and persist it on clean exit."""
        with self._lock():
            data = self.shape(self._load())
            yield data
            self.before_write(data)
            self._dump(data)

    def before_write(self, data: dict) -> None:
        pass


class TaskStore(JsonFileStore):
    def __init__(self, path: Path | str):
        super().__init__(path, lambda: {"schema_version": 1, "tasks": [], "trash": [], "events": [], "meta": {}})

    def shape(self, data: dict) -> dict:
        data.setdefault("tasks", [])
        data.setdefault("trash", [])
        data.setdefault("events", [])
        data.setdefault("meta", {})
        data.setdefault("schema_version", 1)
        return data

    def before_write(self, data: dict) -> None:
        tasks = data.get("tasks", [])
        lanes: dict[str, int] = {}
        for task in tasks:
            lanes[task.get("lane", "proposed")] = lanes.get(task.get("lane", "proposed"), 0) + 1
        data["meta"]["last_updated"] = now_iso()
        data["meta"]["total"] = len(tasks)
        data["meta"]["by_lane"] = lanes

    def get(self, task_id: str) -> Optional[dict]:
        for task in self.read()["tasks"]:
            if task.get("id") == task_id:
                return task
        return None

    def list(self, lane: Optional[str] = None, owner: Optional[str] = None) -> list[dict]:
        tasks = self.read()["tasks"]
        if lane:
            tasks = [t for t in tasks if t.get("lane") == lane]
        if owner:
            tasks = [t for t in tasks if t.get("owner") == owner]
        return sorted(tasks, key=lambda t: t.get("updated_at") or "", reverse=True)


class SlotStore(JsonFileStore):
    """Slot state for the static roster. Unknown slots are dropped on read."""

    def __init__(self, path: Path | str):
        super().__init__(path, lambda: {"schema_version": 1, "slots": []})

    def shape(self, data: dict) -> dict:
        stored = {s.get("slot"): s for s in data.get("slots", []) if isinstance(s, dict)}
        slots = []
        for base in build_slots():
            existing = stored.get(base["slot"], {})
            merged = {**base, **{k: v for k, v in existing.items() if k in base}}
            # roster fields always come from config
            merged["label"] = base["label"]
            merged["role"] = base["role"]
            merged["roles"] = base["roles"]
            slots.append(merged)
        data["slots"] = slots
        data.setdefault("schema_version", 1)
        return data

    def all(self) -> list[dict]:
        return self.read()["slots"]

    def get(self, slot_id: str) -> Optional[dict]:
        for slot in self.all():
            if slot["slot"] == slot_id:
                return slot
        return None


class HeartbeatStore(JsonFileStore):
    """Heartbeat records written by worker processes, one key per slot."""

    def __init__(self, path: Path | str):
        super().__init__(path, lambda: {"updated_at": None, "workers": {}})

    def shape(self, data: dict) -> dict:
        workers = data.get("workers")
        # legacy snapshots stored a list of worker entries
        if isinstance(workers, list):
            workers = {w.get("slot"): w for w in workers if isinstance(w, dict) and w.get("slot")}
        data["workers"] = workers if isinstance(workers, dict) else {}
        data.setdefault("updated_at", None)
        return data

    def records(self) -> dict[str, dict]:
        return self.read()["workers"]

    def write_record(self, slot_id: str, record: dict[str, Any]) -> dict:
        with self.transaction() as data:
            previous = data["workers"].get(slot_id) or {}
            merged = copy.deepcopy(record)
            meta = merged.setdefault("metadata", {})
            meta.setdefault("restart_count", (previous.get("metadata") or {}).get("restart_count", 0))
            data["workers"][slot_id] = merged
            data["updated_at"] = now_iso()
        return merged
