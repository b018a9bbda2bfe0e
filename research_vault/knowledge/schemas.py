"""Knowledge store schemas: documents, revisions, graph edges."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class DocumentCategory(str, Enum):
    """Vault section a document belongs to."""

    RESEARCH = "research"
    ARCHITECTURE = "architecture"
    COMPONENT = "component"
    DECISION = "decision"
    DEPENDENCY = "dependency"
    PERFORMANCE = "performance"
    SECURITY = "security"
    TECH_DEBT = "tech_debt"
    SYNTHESIS = "synthesis"


class EdgeKind(str, Enum):
    RELATES_TO = "relates_to"
    SUPERSEDES = "supersedes"
    CONTRADICTS = "contradicts"


class Revision(BaseModel):
    """One accepted write. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    version: int
    timestamp: datetime
    author: str = Field(description="Worker id (or component name) that made the write")
    diff_summary: str = ""


class KnowledgeEdge(BaseModel):
    """Directed edge. (A, B, supersedes) means A supersedes B."""

    model_config = ConfigDict(frozen=True)

    from_id: str
    to_id: str
    kind: EdgeKind


class KnowledgeDocument(BaseModel):
    """A versioned research finding.

    Invariant: len(revision_history) == version, and
    revision_history[i].version == i + 1.
    """

    id: str
    topic: str
    tags: frozenset[str] = Field(default_factory=frozenset)
    category: DocumentCategory = DocumentCategory.RESEARCH
    body: str = ""
    version: int = Field(ge=1)
    revision_history: list[Revision] = Field(default_factory=list)
    created_at: datetime
    modified_at: datetime
    links: frozenset[str] = Field(
        default_factory=frozenset,
        description="Outgoing cross-references (targets of edges from this document)",
    )
    quality_score: float = Field(default=0.0, ge=0.0, le=1.0)
    source_fingerprint: Optional[str] = Field(
        default=None,
        description="Synthesis documents only: hash of the input ids and versions",
    )


class DocumentSummary(BaseModel):
    """Document metadata without the body (for listings and queries)."""

    id: str
    topic: str
    tags: list[str]
    category: DocumentCategory
    version: int
    links: list[str] = Field(default_factory=list)
    created_at: datetime
    modified_at: datetime
    quality_score: float

    @classmethod
    def from_document(cls, doc: KnowledgeDocument) -> "DocumentSummary":
        return cls(
            id=doc.id,
            topic=doc.topic,
            tags=sorted(doc.tags),
            category=doc.category,
            version=doc.version,
            links=sorted(doc.links),
            created_at=doc.created_at,
            modified_at=doc.modified_at,
            quality_score=doc.quality_score,
        )


class WriteRequest(BaseModel):
    """A single optimistic write, as produced by a write_with_retry builder."""

    topic: str
    tags: frozenset[str] = Field(default_factory=frozenset)
    body: str
    base_version: int = 0
    author: str = "system"
    diff_summary: str = ""
    category: DocumentCategory = DocumentCategory.RESEARCH
    links: frozenset[str] = Field(default_factory=frozenset)
    source_fingerprint: Optional[str] = None


class VaultStatus(BaseModel):
    """Aggregate counts over the vault."""

    total_documents: int = 0
    documents_by_category: dict[str, int] = Field(default_factory=dict)
    total_revisions: int = 0
    edges_by_kind: dict[str, int] = Field(default_factory=dict)
    superseded_documents: int = 0
