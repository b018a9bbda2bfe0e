"""Research task routes.

Endpoints:
    POST /v1/tasks                  Submit a research request (returns immediately)
    GET  /v1/tasks                  List tasks
    GET  /v1/tasks/{task_id}        Poll a task
    POST /v1/tasks/{task_id}/cancel Cancel a queued or running task
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from research_vault.scheduler.schemas import (
    FailureReason,
    SubmitTaskRequest,
    SubmitTaskResponse,
    Task,
    TaskState,
)
from research_vault.service import get_vault

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["tasks"])


class CancelResponse(BaseModel):
    task_id: str
    cancelled: bool
    state: TaskState


@router.post("", response_model=SubmitTaskResponse)
async def submit_task(request: SubmitTaskRequest) -> SubmitTaskResponse:
    """Submit a research request.

    A request answered from the vault comes back already completed. If the
    worker pool is saturated the task is failed with `overloaded` and the
    call returns 503.
    """
    vault = get_vault()
    deadline: Optional[datetime] = None
    if request.timeout_seconds:
        deadline = datetime.now(timezone.utc) + timedelta(seconds=request.timeout_seconds)

    task_id = vault.submit(request.request_text, priority=request.priority, deadline=deadline)
    task = vault.scheduler.get_task(task_id)
    if task.failure_reason == FailureReason.OVERLOADED:
        raise HTTPException(
            status_code=503,
            detail={"task_id": task_id, "failure_reason": FailureReason.OVERLOADED.value},
        )
    return SubmitTaskResponse(task_id=task_id, state=task.state)


@router.get("", response_model=list[Task])
async def list_tasks(
    state: Optional[TaskState] = Query(None, description="Filter by state"),
    limit: int = Query(50, ge=1, le=500),
) -> list[Task]:
    return get_vault().scheduler.list_tasks(state=state, limit=limit)


@router.get("/{task_id}", response_model=Task)
async def get_task(task_id: str) -> Task:
    task = get_vault().scheduler.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
    return task


@router.post("/{task_id}/cancel", response_model=CancelResponse)
async def cancel_task(task_id: str) -> CancelResponse:
    vault = get_vault()
    task = vault.scheduler.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
    if task.state.is_terminal:
        raise HTTPException(
            status_code=409,
            detail=f"Task {task_id} is already {task.state.value}",
        )
    cancelled = vault.cancel(task_id)
    task = vault.scheduler.get_task(task_id)
    return CancelResponse(task_id=task_id, cancelled=cancelled, state=task.state)
