"""Worker boundary: the protocol workers implement and the context they run in.

A worker receives the task and a WorkerContext. Every operation a worker
performs through the context is checked against its profile's allowance;
anything outside it raises CapabilityViolation.
"""

import json
import logging
import subprocess
from typing import Callable, Optional, Protocol, runtime_checkable

from pydantic import ValidationError

from research_vault.capabilities.schemas import CapabilityProfile, Operation
from research_vault.errors import CapabilityViolation, TaskCancelledError, WorkerError
from research_vault.executor.cancellation import CancellationToken
from research_vault.executor.schemas import WorkerOutput
from research_vault.knowledge.schemas import KnowledgeDocument
from research_vault.scheduler.schemas import Task

logger = logging.getLogger(__name__)


class WorkerContext:
    """What a running worker may touch."""

    def __init__(
        self,
        task: Task,
        profile: CapabilityProfile,
        token: CancellationToken,
        document_reader=None,
    ):
        self.task = task
        self.profile = profile
        self.token = token
        self._reader = document_reader

    def require(self, operation: Operation) -> None:
        operation = Operation(operation)
        if operation not in self.profile.allowed_operations:
            raise CapabilityViolation(
                f"Worker '{self.profile.id}' attempted {operation.value} on task {self.task.id}; "
                f"allowed: {sorted(op.value for op in self.profile.allowed_operations)}"
            )

    def check_cancelled(self) -> None:
        self.token.raise_if_cancelled()

    def read_document(self, doc_id: str) -> Optional[KnowledgeDocument]:
        self.require(Operation.READ_DOC)
        self.check_cancelled()
        if self._reader is None:
            return None
        return self._reader.get(doc_id)

    def find_documents(self, topic: str, tags) -> list[KnowledgeDocument]:
        self.require(Operation.READ_DOC)
        self.check_cancelled()
        if self._reader is None:
            return []
        return self._reader.find(topic, tags)


@runtime_checkable
class Worker(Protocol):
    def run(self, task: Task, context: WorkerContext) -> WorkerOutput:
        ...


class FunctionWorker:
    """Adapts a plain callable `fn(task, context) -> WorkerOutput`."""

    def __init__(self, fn: Callable[[Task, WorkerContext], WorkerOutput], name: Optional[str] = None):
        self.fn = fn
        self.name = name or getattr(fn, "__name__", "function-worker")

    def run(self, task: Task, context: WorkerContext) -> WorkerOutput:
        return self.fn(task, context)


class ExternalProcessWorker:
    """Runs a configured command; task JSON on stdin, WorkerOutput JSON on stdout.

    The process is bounded by the execution's remaining deadline. The
    worker's allowance is passed along so the process can enforce it too.
    """

    def __init__(self, command: list[str] | tuple[str, ...], env: Optional[dict[str, str]] = None):
        if not command:
            raise ValueError("ExternalProcessWorker needs a non-empty command")
        self.command = list(command)
        self.env = env

    def run(self, task: Task, context: WorkerContext) -> WorkerOutput:
        context.check_cancelled()
        payload = {
            "task": task.model_dump(mode="json"),
            "profile_id": context.profile.id,
            "allowed_operations": sorted(op.value for op in context.profile.allowed_operations),
        }
        timeout = context.token.remaining()
        logger.info(f"Task {task.id}: running {self.command[0]} (timeout={timeout})")

        try:
            completed = subprocess.run(
                self.command,
                input=json.dumps(payload),
                capture_output=True,
                text=True,
                timeout=timeout,
                env=self.env,
            )
        except subprocess.TimeoutExpired:
            raise TaskCancelledError(task.id, "deadline_exceeded")
        except OSError as e:
            raise WorkerError(f"Could not start {self.command[0]}: {e}") from e

        context.check_cancelled()
        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()[-500:]
            raise WorkerError(f"{self.command[0]} exited with {completed.returncode}: {stderr}")

        try:
            return WorkerOutput.model_validate_json(completed.stdout)
        except ValidationError as e:
            raise WorkerError(f"{self.command[0]} produced invalid output: {e}") from e
