"""Operator Hub - Pydantic request models."""
from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

Priority = Literal["P0", "P1", "P2", "P3"]
Lane = Literal["proposed", "queued", "development", "review", "blocked", "done"]


class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    id: Optional[str] = Field(default=None, max_length=100)
    lane: Literal["proposed", "queued"] = "queued"
    priority: Priority = "P2"
    owner: Optional[str] = None
    description: str = Field(default="", max_length=5000)
    problem: Optional[str] = None
    scope: Optional[str] = None
    acceptance_criteria: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    lane: Optional[Lane] = None
    priority: Optional[Priority] = None
    owner: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=5000)
    problem: Optional[str] = None
    scope: Optional[str] = None
    acceptance_criteria: Optional[list[str]] = None
    tags: Optional[list[str]] = None


class CompleteRequest(BaseModel):
    slot: Optional[str] = None
    lane: Literal["review", "done"] = "review"
    summary: Optional[str] = Field(default=None, max_length=5000)


class BlockRequest(BaseModel):
    slot: Optional[str] = None
    reason: str = Field(default="No reason provided", max_length=2000)


class ReleaseRequest(BaseModel):
    note: str = "released"


class WorkUpdate(BaseModel):
    slot: Optional[str] = None
    commits: Optional[list[str]] = None
    artifacts: Optional[list[str]] = None
    test_results: Optional[dict[str, Any]] = None
    notes: Optional[str] = None


class HeartbeatRequest(BaseModel):
    status: Optional[str] = None
    task_id: Optional[str] = None
    session_id: Optional[str] = None
