"""Task auto-assignment policy.

Pure functions: given the board and the idle slots, decide which queued task
each slot should take. Persisting the decision and spawning sessions belongs to
``router.AssignmentRouter``.
"""
from __future__ import annotations

import re
from typing import Optional

from operator_hub.task_service import priority_rank

# keyword patterns used to guess which roles fit a task
ROLE_PATTERNS: dict[str, list[str]] = {
    "designer": [r"design", r"\bui\b", r"\bux\b", r"mockup", r"wireframe", r"prototype", r"visual", r"theme", r"layout"],
    "frontend-dev": [r"frontend", r"react", r"\bvue\b", r"angular", r"tailwind", r"\bcss\b", r"\bhtml\b", r"typescript", r"responsive", r"dashboard"],
    "backend-dev": [r"backend", r"\bapi\b", r"endpoint", r"database", r"server", r"\bauth", r"graphql", r"\brest\b", r"\bsql\b"],
    "fullstack-dev": [r"fullstack", r"full stack", r"end.to.end", r"integration"],
    "qa": [r"\btest", r"\bqa\b", r"\be2e\b", r"verify", r"validation", r"quality", r"\bbug", r"regression"],
    "content": [r"documentation", r"readme", r"\bdocs?\b", r"content", r"\bcopy\b", r"blog", r"article", r"guide", r"tutorial"],
    "devops": [r"deploy", r"devops", r"ci.cd", r"docker", r"kubernetes", r"infrastructure", r"pipeline", r"monitoring", r"hosting"],
    "architect": [r"architecture", r"design system", r"technical design", r"system design", r"blueprint", r"strategy"],
    "pm": [r"planning", r"coordination", r"\bepic\b", r"roadmap", r"prioriti[sz]e", r"organi[sz]e"],
}
DEFAULT_ROLES = ["fullstack-dev", "backend-dev", "frontend-dev"]


def analyze_task_roles(task: dict) -> list[str]:
    text = " ".join([
        task.get("title") or "",
        task.get("description") or "",
        " ".join(task.get("tags") or []),
    ]).lower()
    matches = [
        role for role, patterns in ROLE_PATTERNS.items()
        if any(re.search(pattern, text) for pattern in patterns)
    ]
    return matches or list(DEFAULT_ROLES)


def slot_accepts(slot: dict, task: dict) -> bool:
    owner = task.get("owner")
    if not owner:
        return True
    owner_key = str(owner).strip().lower()
    return owner_key in {str(slot["slot"]).lower(), str(slot.get("role") or "").lower()}


def eligible_tasks(tasks: list[dict], slot: dict) -> list[dict]:
    return [t for t in tasks if t.get("lane") == "queued" and slot_accepts(slot, t)]


def _selection_key(task: dict) -> tuple:
    return (priority_rank(task.get("priority")), task.get("created_at") or "", task.get("id") or "")


def select_task(tasks: list[dict], slot: dict) -> Optional[dict]:
    """Highest priority eligible task for ``slot``; FIFO by creation time on ties."""
    candidates = eligible_tasks(tasks, slot)
    if not candidates:
        return None
    return min(candidates, key=_selection_key)


def plan_assignments(tasks: list[dict], idle_slots: list[dict]) -> list[tuple[dict, dict]]:
    """Pair idle slots with queued tasks for one tick.

    Slots are visited in the given (roster) order. Each slot and each task is
    used at most once.
    """
    remaining = list(tasks)
    plan: list[tuple[dict, dict]] = []
    for slot in idle_slots:
        task = select_task(remaining, slot)
        if task is None:
            continue
        plan.append((task, slot))
        remaining = [t for t in remaining if t.get("id") != task.get("id")]
    return plan


def find_best_slot(task: dict, idle_slots: list[dict]) -> Optional[dict]:
    """Pick a slot for a single task: explicit owner, then role match, then any."""
    accepting = [s for s in idle_slots if slot_accepts(s, task)]
    if not accepting:
        return None
    if task.get("owner"):
        return accepting[0]
    roles = set(analyze_task_roles(task))
    for slot in accepting:
        if roles.intersection(slot.get("roles") or []):
            return slot
    return accepting[0]
