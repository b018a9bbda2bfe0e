"""Buffered worker output.

Workers never write the knowledge store themselves; they return a
WorkerOutput and the scheduler commits it.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from research_vault.knowledge.schemas import DocumentCategory


class OutputMode(str, Enum):
    REPLACE = "replace"  # body replaces the target document's body
    APPEND = "append"  # body is appended to the target document's body


class RebasePolicy(str, Enum):
    """What to do when the target document moved on while the worker ran."""

    REAPPLY = "reapply"
    ABORT = "abort"


class WorkerOutput(BaseModel):
    topic: Optional[str] = Field(default=None, description="Defaults to the task's topic")
    tags: Optional[list[str]] = Field(default=None, description="Defaults to the task's domain tags")
    body: str
    diff_summary: str = ""
    category: DocumentCategory = DocumentCategory.RESEARCH
    links: list[str] = Field(default_factory=list)
    target_doc_id: Optional[str] = Field(
        default=None,
        description="Existing document to revise; None creates a new document",
    )
    base_version: Optional[int] = Field(
        default=None,
        description="Version of target_doc_id the worker read; None means latest at commit time",
    )
    mode: OutputMode = OutputMode.REPLACE
    rebase: RebasePolicy = RebasePolicy.REAPPLY
