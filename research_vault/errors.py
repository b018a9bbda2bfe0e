"""Exception taxonomy shared by the store, scheduler, pool and synthesis engine.

Each exception maps onto a machine-readable FailureReason where it ends a
task or synthesis job (see research_vault.scheduler.schemas.FailureReason).
"""

from typing import Optional


class ResearchVaultError(Exception):
    """Base class for all research-vault errors."""


class DuplicateProfileError(ResearchVaultError):
    """Two capability profiles declare the same id. Fatal at boot."""

    def __init__(self, profile_id: str, first_source: str, second_source: str):
        self.profile_id = profile_id
        super().__init__(
            f"Duplicate capability profile id '{profile_id}' "
            f"(declared in {first_source} and {second_source})"
        )


class DocumentNotFoundError(ResearchVaultError):
    def __init__(self, doc_id: str):
        self.doc_id = doc_id
        super().__init__(f"Knowledge document not found: {doc_id}")


class ConflictError(ResearchVaultError):
    """Optimistic-concurrency check failed: the stored version moved on."""

    def __init__(self, doc_id: str, current_version: int, base_version: int):
        self.doc_id = doc_id
        self.current_version = current_version
        self.base_version = base_version
        super().__init__(
            f"Write conflict on {doc_id}: base_version={base_version}, "
            f"current_version={current_version}"
        )


class WriteConflictExhausted(ResearchVaultError):
    """Bounded write retry ran out of attempts (or the rebase was vetoed)."""

    def __init__(self, doc_id: Optional[str], attempts: int, last_error: Optional[ConflictError] = None):
        self.doc_id = doc_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Write to {doc_id} abandoned after {attempts} attempt(s)"
            + (f": {last_error}" if last_error else "")
        )


class CycleError(ResearchVaultError):
    """A supersedes edge would close a cycle."""

    def __init__(self, from_id: str, to_id: str):
        self.from_id = from_id
        self.to_id = to_id
        super().__init__(
            f"Refusing supersedes edge {from_id} -> {to_id}: "
            f"{to_id} already reaches {from_id}"
        )


class OverloadedError(ResearchVaultError):
    """Worker pool is saturated and its queue is full."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        super().__init__(f"Worker pool overloaded (capacity {capacity} in flight)")


class TaskCancelledError(ResearchVaultError):
    """Execution was cancelled explicitly or by its deadline."""

    def __init__(self, task_id: str, reason: str):
        self.task_id = task_id
        self.reason = reason
        super().__init__(f"Task {task_id} cancelled ({reason})")


class CapabilityViolation(ResearchVaultError):
    """A worker attempted (or was handed) an operation outside its allowance."""


class WorkerError(ResearchVaultError):
    """A worker failed to produce usable output."""


class ExtractionError(ResearchVaultError):
    """Claim extraction failed for one document. Non-fatal to a synthesis batch."""

    def __init__(self, doc_id: str, detail: str):
        self.doc_id = doc_id
        super().__init__(f"Claim extraction failed for {doc_id}: {detail}")


class InsufficientInputError(ResearchVaultError):
    """A synthesis cluster has fewer than two usable documents."""
