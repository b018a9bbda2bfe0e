"""Versioned knowledge store: documents, revisions and the cross-link graph."""

from research_vault.knowledge.schemas import (
    DocumentCategory,
    DocumentSummary,
    EdgeKind,
    KnowledgeDocument,
    KnowledgeEdge,
    Revision,
    VaultStatus,
    WriteRequest,
)
from research_vault.knowledge.store import KnowledgeStore

__all__ = [
    "DocumentCategory",
    "DocumentSummary",
    "EdgeKind",
    "KnowledgeDocument",
    "KnowledgeEdge",
    "KnowledgeStore",
    "Revision",
    "VaultStatus",
    "WriteRequest",
]
