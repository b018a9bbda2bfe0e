"""Task lifecycle schemas.

State machine:
    queued -> completed                      (fresh document already in the vault)
    queued -> assigned -> running -> completed | failed | cancelled
    queued | assigned -> failed | cancelled  (routing failure, overload, cancel)
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from research_vault.capabilities.schemas import Operation


class TaskState(str, Enum):
    QUEUED = "queued"
    ASSIGNED = "assigned"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED})

# Allowed source states for each target state
TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.ASSIGNED: frozenset({TaskState.QUEUED}),
    TaskState.RUNNING: frozenset({TaskState.ASSIGNED}),
    TaskState.COMPLETED: frozenset({TaskState.QUEUED, TaskState.RUNNING}),
    TaskState.FAILED: frozenset({TaskState.QUEUED, TaskState.ASSIGNED, TaskState.RUNNING}),
    TaskState.CANCELLED: frozenset({TaskState.QUEUED, TaskState.ASSIGNED, TaskState.RUNNING}),
}


class FailureReason(str, Enum):
    """Machine-readable reason carried by failed/cancelled tasks and jobs."""

    NO_CAPABLE_WORKER = "no_capable_worker"
    WRITE_CONFLICT = "write_conflict"
    OVERLOADED = "overloaded"
    INSUFFICIENT_INPUT = "insufficient_input"
    WORKER_ERROR = "worker_error"
    CLASSIFICATION_ERROR = "classification_error"
    CAPABILITY_VIOLATION = "capability_violation"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    CANCELLED = "cancelled"


class Task(BaseModel):
    """One research request and its routing/execution state."""

    id: str = Field(default_factory=lambda: f"task-{uuid.uuid4().hex[:12]}")
    request_text: str
    topic: str = ""
    domain_tags: frozenset[str] = Field(default_factory=frozenset)
    required_operations: frozenset[Operation] = Field(default_factory=frozenset)
    priority: int = 0
    state: TaskState = TaskState.QUEUED
    deadline: Optional[datetime] = None
    assigned_worker: Optional[str] = None
    # Weak match found at submission; the worker's output revises it
    revises_doc_id: Optional[str] = None
    result_doc_id: Optional[str] = None
    failure_reason: Optional[FailureReason] = None
    failure_detail: Optional[str] = None
    archived: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None


class SubmitTaskRequest(BaseModel):
    request_text: str = Field(..., min_length=1)
    priority: int = 0
    timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Deadline relative to now; defaults to the scheduler's task timeout",
    )


class SubmitTaskResponse(BaseModel):
    task_id: str
    state: TaskState
