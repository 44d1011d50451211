"""Operator Hub - worker heartbeat process.

Runs one process per slot and records a heartbeat for that slot every
``HEARTBEAT_INTERVAL_SEC``. The task store is only read; the heartbeat file is
the only thing this process writes.

    python -m operator_hub.worker_service dev-1
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from datetime import datetime, timezone
from typing import Optional

from operator_hub import __version__
from operator_hub.config import HEARTBEAT_FILE, HEARTBEAT_INTERVAL_SEC, SLOT_IDS, TASKS_FILE
from operator_hub.store import HeartbeatStore, TaskStore
from operator_hub.task_service import priority_rank

logger = logging.getLogger("operator_hub.worker")


def pick_active_task(tasks: list[dict], slot_id: str) -> Optional[dict]:
    """The slot's development task with the best priority, newest first on ties."""
    mine = [t for t in tasks if t.get("owner") == slot_id and t.get("lane") == "development"]
    if not mine:
        return None
    mine.sort(key=lambda t: t.get("updated_at") or "", reverse=True)
    mine.sort(key=lambda t: priority_rank(t.get("priority")))
    return mine[0]


class WorkerService:
    def __init__(
        self,
        slot_id: str,
        *,
        task_store: Optional[TaskStore] = None,
        heartbeat_store: Optional[HeartbeatStore] = None,
        interval_sec: int = HEARTBEAT_INTERVAL_SEC,
    ):
        if slot_id not in SLOT_IDS:
            raise ValueError(f"unknown slot {slot_id!r}, expected one of: {', '.join(SLOT_IDS)}")
        self.slot_id = slot_id
        self.task_store = task_store or TaskStore(TASKS_FILE)
        self.heartbeat_store = heartbeat_store or HeartbeatStore(HEARTBEAT_FILE)
        self.interval_sec = interval_sec
        self.started_at = datetime.now(timezone.utc).isoformat()
        self._stop = asyncio.Event()

    def build_record(self, task: Optional[dict], *, status: Optional[str] = None) -> dict:
        return {
            "slot": self.slot_id,
            "status": status or ("working" if task else "idle"),
            "task": task.get("id") if task else None,
            "task_title": task.get("title") if task else None,
            "session_id": task.get("session_id") if task else None,
            "last_update": datetime.now(timezone.utc).isoformat(),
            "started_at": self.started_at,
            "metadata": {"pid": os.getpid(), "version": __version__},
        }

    def beat(self) -> dict:
        task = pick_active_task(self.task_store.read()["tasks"], self.slot_id)
        record = self.heartbeat_store.write_record(self.slot_id, self.build_record(task))
        logger.debug("heartbeat %s status=%s task=%s", self.slot_id, record["status"], record["task"])
        return record

    def write_offline(self) -> dict:
        return self.heartbeat_store.write_record(self.slot_id, self.build_record(None, status="offline"))

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        logger.info("Worker %s heartbeating every %ss to %s", self.slot_id, self.interval_sec, self.heartbeat_store.path)
        while not self._stop.is_set():
            try:
                self.beat()
            except Exception as exc:  # noqa: BLE001
                logger.exception("heartbeat write failed for %s: %s", self.slot_id, exc)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_sec)
            except asyncio.TimeoutError:
                pass
        self.write_offline()
        logger.info("Worker %s stopped, marked offline", self.slot_id)


async def _serve(service: WorkerService) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, service.stop)
    await service.run()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Operator Hub worker heartbeat process")
    parser.add_argument("slot", choices=SLOT_IDS, help="slot this worker reports for")
    parser.add_argument("--interval", type=int, default=HEARTBEAT_INTERVAL_SEC, help="seconds between heartbeats")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    logging.basicConfig(level=logging.INFO)
    args = parse_args(argv)
    service = WorkerService(args.slot, interval_sec=args.interval)
    asyncio.run(_serve(service))


if __name__ == "__main__":
    main()
