"""Task lifecycle: dedup, least-privilege routing, dispatch and commit.

The Scheduler itself lives in research_vault.scheduler.router.
"""

from research_vault.scheduler.schemas import (
    TERMINAL_STATES,
    FailureReason,
    SubmitTaskRequest,
    SubmitTaskResponse,
    Task,
    TaskState,
)

__all__ = [
    "TERMINAL_STATES",
    "FailureReason",
    "SubmitTaskRequest",
    "SubmitTaskResponse",
    "Task",
    "TaskState",
]
