"""Knowledge vault routes.

Endpoints:
    GET  /v1/knowledge                       Query document summaries (topic, tags)
    POST /v1/knowledge                       Create a document
    GET  /v1/knowledge/status                Aggregate counts
    GET  /v1/knowledge/{doc_id}              Full document (latest version)
    PUT  /v1/knowledge/{doc_id}              Update against a base version (409 on conflict)
    GET  /v1/knowledge/{doc_id}/revisions    Revision history
    POST /v1/knowledge/links                 Add an edge (409 if a supersedes cycle)
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from research_vault.errors import ConflictError, CycleError, DocumentNotFoundError
from research_vault.knowledge.schemas import (
    DocumentCategory,
    DocumentSummary,
    EdgeKind,
    KnowledgeDocument,
    KnowledgeEdge,
    Revision,
    VaultStatus,
)
from research_vault.service import get_vault

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/knowledge", tags=["knowledge"])


class DocumentWrite(BaseModel):
    topic: str
    tags: list[str] = Field(default_factory=list)
    body: str
    base_version: int = Field(default=0, ge=0)
    author: str = "api"
    diff_summary: str = ""
    category: DocumentCategory = DocumentCategory.RESEARCH
    links: list[str] = Field(default_factory=list)


class LinkRequest(BaseModel):
    from_id: str
    to_id: str
    kind: EdgeKind = EdgeKind.RELATES_TO


def _write(doc_id: Optional[str], request: DocumentWrite) -> KnowledgeDocument:
    store = get_vault().store
    try:
        return store.write(
            doc_id,
            request.topic,
            request.tags,
            request.body,
            request.base_version,
            author=request.author,
            diff_summary=request.diff_summary,
            category=request.category,
            links=request.links,
        )
    except ConflictError as e:
        raise HTTPException(
            status_code=409,
            detail={"error": "conflict", "doc_id": e.doc_id, "current_version": e.current_version},
        )
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("", response_model=list[DocumentSummary])
async def query_documents(
    topic: Optional[str] = Query(None, description="Topic (substring match when no tags are given)"),
    tags: Optional[str] = Query(None, description="Comma-separated tags"),
) -> list[DocumentSummary]:
    return get_vault().query(topic=topic, tags=tags)


@router.post("", response_model=KnowledgeDocument)
async def create_document(request: DocumentWrite) -> KnowledgeDocument:
    if request.base_version != 0:
        raise HTTPException(status_code=400, detail="New documents must use base_version 0")
    return _write(None, request)


@router.get("/status", response_model=VaultStatus)
async def vault_status() -> VaultStatus:
    return get_vault().store.status()


@router.get("/{doc_id}", response_model=KnowledgeDocument)
async def get_document(doc_id: str) -> KnowledgeDocument:
    doc = get_vault().store.get(doc_id)
    if doc is None:
        raise HTTPException(status_code=404, detail=f"Document not found: {doc_id}")
    return doc


@router.put("/{doc_id}", response_model=KnowledgeDocument)
async def update_document(doc_id: str, request: DocumentWrite) -> KnowledgeDocument:
    if request.base_version < 1:
        raise HTTPException(status_code=400, detail="Updates must name the base_version they were made against")
    return _write(doc_id, request)


@router.get("/{doc_id}/revisions", response_model=list[Revision])
async def get_revisions(doc_id: str) -> list[Revision]:
    try:
        return get_vault().store.get_revisions(doc_id)
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/links", response_model=KnowledgeEdge)
async def add_link(request: LinkRequest) -> KnowledgeEdge:
    try:
        return get_vault().store.link(request.from_id, request.to_id, request.kind)
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CycleError as e:
        raise HTTPException(status_code=409, detail=str(e))
