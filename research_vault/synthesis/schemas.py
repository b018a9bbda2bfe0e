"""Synthesis job, claim and contradiction schemas."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from research_vault.scheduler.schemas import FailureReason


class SynthesisState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Claim(BaseModel):
    """A (subject, predicate, value) assertion made by one document."""

    model_config = ConfigDict(frozen=True)

    subject: str
    predicate: str
    value: str
    source_doc_id: str

    @property
    def key(self) -> tuple[str, str]:
        return (_fold(self.subject), _fold(self.predicate))

    @property
    def normalized_value(self) -> str:
        return _fold(self.value)


def _fold(text: str) -> str:
    return " ".join(text.split()).lower()


class Contradiction(BaseModel):
    model_config = ConfigDict(frozen=True)

    doc_a: str
    doc_b: str
    subject: str
    predicate: str
    value_a: str
    value_b: str
    description: str = ""


class SynthesisJob(BaseModel):
    id: str = Field(default_factory=lambda: f"syn-{uuid.uuid4().hex[:12]}")
    input_doc_ids: list[str] = Field(
        default_factory=list,
        description="Most recently modified first; fixed at job creation",
    )
    input_versions: dict[str, int] = Field(default_factory=dict)
    fingerprint: str = ""
    state: SynthesisState = SynthesisState.PENDING
    output_doc_id: Optional[str] = None
    contradictions_found: list[Contradiction] = Field(default_factory=list)
    excluded_doc_ids: list[str] = Field(default_factory=list)
    failure_reason: Optional[FailureReason] = None
    failure_detail: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None


class ScanResult(BaseModel):
    clusters_found: int = 0
    skipped_unchanged: int = 0
    jobs: list[SynthesisJob] = Field(default_factory=list)
