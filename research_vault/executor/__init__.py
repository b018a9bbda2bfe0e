"""Worker pool executor: bounded concurrency, deadlines, cancellation."""

from research_vault.executor.cancellation import CancellationToken
from research_vault.executor.pool import WorkerPool
from research_vault.executor.schemas import OutputMode, RebasePolicy, WorkerOutput
from research_vault.executor.worker import (
    ExternalProcessWorker,
    FunctionWorker,
    Worker,
    WorkerContext,
)

__all__ = [
    "CancellationToken",
    "ExternalProcessWorker",
    "FunctionWorker",
    "OutputMode",
    "RebasePolicy",
    "Worker",
    "WorkerContext",
    "WorkerOutput",
    "WorkerPool",
]
