"""Agent session launcher for assigned tasks."""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Optional

logger = logging.getLogger("operator_hub.session")


class SessionSpawnError(RuntimeError):
    """Raised when an agent session could not be started."""


class SessionRunner:
    def __init__(self, *, agent_cli: str, exec_mode: str = "real", timeout_sec: int = 120, workdir: Optional[str] = None):
        self.agent_cli = agent_cli
        self.exec_mode = exec_mode.lower()
        self.timeout_sec = timeout_sec
        self.workdir = workdir

    @staticmethod
    def build_prompt(slot: dict, task: dict) -> str:
        parts = [
            f"You are {slot.get('label') or slot['slot']} ({slot['slot']}) for the Operator Hub team.",
            "",
            f"**Task**: {task['title']}",
            "",
        ]
        if task.get("problem"):
            parts += [f"**Problem**: {task['problem']}", ""]
        if task.get("scope"):
            parts += [f"**Scope**: {task['scope']}", ""]
        if task.get("acceptance_criteria"):
            parts.append("**Acceptance Criteria**:")
            parts += [f"- {c}" for c in task["acceptance_criteria"]]
            parts.append("")
        parts += [
            f"**Task ID**: {task['id']}",
            f"**Priority**: {task.get('priority')}",
            "",
            "**Steps**:",
            "1. Complete the task as described",
            "2. Test your work",
            "3. Git add, commit",
            f"4. POST /api/tasks/{task['id']}/complete (or /blocked with a reason)",
            "5. Report completion",
        ]
        return "\n".join(parts)

    @staticmethod
    def session_label(slot: dict, task: dict) -> str:
        return f"{slot['slot']}-{str(task['id']).split('-')[-1]}"

    def _build_cmd(self, session_id: str, prompt: str) -> list[str]:
        return [
            self.agent_cli,
            "agent",
            "--session-id",
            session_id,
            "--message",
            prompt,
            "--thinking",
            "low",
            "--json",
        ]

    async def spawn(self, slot: dict, task: dict) -> str:
        """Start a session for ``task`` on ``slot`` and return its id."""
        session_id = f"agent:main:subagent:{self.session_label(slot, task)}"

        if self.exec_mode == "dry-run":
            await asyncio.sleep(0)
            logger.info("dry-run session %s for task %s", session_id, task["id"])
            return f"{session_id}:{uuid.uuid4().hex[:6]}"

        cmd = self._build_cmd(session_id, self.build_prompt(slot, task))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=self.workdir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SessionSpawnError(f"failed to start {self.agent_cli}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_sec)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise SessionSpawnError(f"session spawn timed out after {self.timeout_sec}s") from exc

        if proc.returncode != 0:
            err = (stderr.decode("utf-8", errors="ignore") or "unknown error").strip()[-2000:]
            raise SessionSpawnError(f"session spawn exited with {proc.returncode}: {err}")

        try:
            json.loads(stdout.decode("utf-8", errors="ignore"))
        except ValueError as exc:
            raise SessionSpawnError(f"failed to parse session response: {exc}") from exc

        logger.info("Session %s spawned for task %s", session_id, task["id"])
        return session_id
