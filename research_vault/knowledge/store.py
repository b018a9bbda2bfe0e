"""Versioned, append-only knowledge store with a cross-link graph.

All mutation goes through two calls:

- write(): optimistic concurrency. An update is a single conditional
  UPDATE ... WHERE version = base_version, committed together with its
  revision row. A miss raises ConflictError carrying the current version;
  nothing blocks other writers.
- link(): edge insertion. Supersedes edges are checked for cycles before
  insertion and rejected whole (CycleError), never partially applied.

Reads (get/find/query) never take locks.
"""

import logging
import os
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from research_vault.capabilities.schemas import normalize_tags
from research_vault.errors import (
    ConflictError,
    CycleError,
    DocumentNotFoundError,
    WriteConflictExhausted,
)
from research_vault.knowledge.db import _json_dumps, _json_loads, execute, init_db, transaction
from research_vault.knowledge.graph import would_create_cycle
from research_vault.knowledge.quality import QUALITY_HALF_LIFE_DAYS, compute_quality
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
from research_vault.knowledge.similarity import jaccard, normalize_topic

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = float(os.environ.get("VAULT_SIMILARITY_THRESHOLD", "0.5"))
FRESHNESS_WINDOW_DAYS = float(os.environ.get("VAULT_FRESHNESS_DAYS", "30"))
WRITE_MAX_ATTEMPTS = int(os.environ.get("VAULT_WRITE_ATTEMPTS", "3"))
WRITE_BACKOFF_SECONDS = float(os.environ.get("VAULT_WRITE_BACKOFF_SECONDS", "0.05"))


class _VersionMiss(Exception):
    """Raised inside a transaction to roll it back after a CAS miss."""


def _parse_ts(value) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class KnowledgeStore:
    """The single point through which knowledge documents are read and written."""

    def __init__(
        self,
        similarity_threshold: float = SIMILARITY_THRESHOLD,
        freshness_window: Optional[timedelta] = None,
        write_attempts: int = WRITE_MAX_ATTEMPTS,
        backoff_seconds: float = WRITE_BACKOFF_SECONDS,
        half_life_days: float = QUALITY_HALF_LIFE_DAYS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.similarity_threshold = similarity_threshold
        self.freshness_window = freshness_window or timedelta(days=FRESHNESS_WINDOW_DAYS)
        self.write_attempts = write_attempts
        self.backoff_seconds = backoff_seconds
        self.half_life_days = half_life_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # Serializes supersedes check+insert within this process
        self._graph_lock = threading.Lock()
        init_db()

    def now(self) -> datetime:
        return self._clock()

    # ── Reads ────────────────────────────────────────────────────

    def _load_revisions(self, doc_id: str) -> list[Revision]:
        rows = execute(
            """SELECT version, timestamp, author, diff_summary
               FROM knowledge_revisions WHERE doc_id = %s ORDER BY version""",
            (doc_id,),
            fetch="all",
        )
        return [
            Revision(
                version=r["version"],
                timestamp=_parse_ts(r["timestamp"]),
                author=r["author"],
                diff_summary=r.get("diff_summary") or "",
            )
            for r in rows
        ]

    def _load_links(self, doc_id: str) -> frozenset[str]:
        rows = execute(
            "SELECT DISTINCT to_id FROM knowledge_edges WHERE from_id = %s",
            (doc_id,),
            fetch="all",
        )
        return frozenset(r["to_id"] for r in rows)

    def _hydrate(self, row: dict) -> KnowledgeDocument:
        doc_id = row["doc_id"]
        return KnowledgeDocument(
            id=doc_id,
            topic=row["topic"],
            tags=frozenset(_json_loads(row["tags"])),
            category=DocumentCategory(row["category"]),
            body=row["body"],
            version=row["version"],
            revision_history=self._load_revisions(doc_id),
            created_at=_parse_ts(row["created_at"]),
            modified_at=_parse_ts(row["modified_at"]),
            links=self._load_links(doc_id),
            quality_score=row["quality_score"],
            source_fingerprint=row.get("source_fingerprint"),
        )

    def get(self, doc_id: str) -> Optional[KnowledgeDocument]:
        """Latest committed version of a document, or None."""
        row = execute(
            "SELECT * FROM knowledge_documents WHERE doc_id = %s",
            (doc_id,),
            fetch="one",
        )
        return self._hydrate(row) if row else None

    def get_validated(self, doc_id: str) -> KnowledgeDocument:
        doc = self.get(doc_id)
        if doc is None:
            raise DocumentNotFoundError(doc_id)
        return doc

    def get_revisions(self, doc_id: str) -> list[Revision]:
        self.get_validated(doc_id)
        return self._load_revisions(doc_id)

    def _current_version(self, doc_id: str) -> Optional[int]:
        row = execute(
            "SELECT version FROM knowledge_documents WHERE doc_id = %s",
            (doc_id,),
            fetch="one",
        )
        return row["version"] if row else None

    def get_edges(
        self,
        doc_id: Optional[str] = None,
        kind: Optional[EdgeKind] = None,
    ) -> list[KnowledgeEdge]:
        """Edges touching doc_id (either direction), optionally of one kind."""
        conditions = []
        params: list = []
        if doc_id is not None:
            conditions.append("(from_id = %s OR to_id = %s)")
            params.extend([doc_id, doc_id])
        if kind is not None:
            conditions.append("kind = %s")
            params.append(EdgeKind(kind).value)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = execute(
            f"SELECT from_id, to_id, kind FROM knowledge_edges {where} ORDER BY created_at, from_id, to_id",
            tuple(params),
            fetch="all",
        )
        return [KnowledgeEdge(from_id=r["from_id"], to_id=r["to_id"], kind=EdgeKind(r["kind"])) for r in rows]

    def in_degree(self, doc_id: str) -> int:
        """Number of distinct documents linking to doc_id (any edge kind)."""
        row = execute(
            "SELECT COUNT(DISTINCT from_id) AS n FROM knowledge_edges WHERE to_id = %s",
            (doc_id,),
            fetch="one",
        )
        return int(row["n"]) if row else 0

    def superseded_ids(self) -> set[str]:
        rows = execute(
            "SELECT DISTINCT to_id FROM knowledge_edges WHERE kind = %s",
            (EdgeKind.SUPERSEDES.value,),
            fetch="all",
        )
        return {r["to_id"] for r in rows}

    def list_documents(
        self,
        category: Optional[DocumentCategory] = None,
        include_superseded: bool = True,
    ) -> list[KnowledgeDocument]:
        """All documents, most recently modified first."""
        if category is not None:
            rows = execute(
                "SELECT * FROM knowledge_documents WHERE category = %s ORDER BY modified_at DESC",
                (DocumentCategory(category).value,),
                fetch="all",
            )
        else:
            rows = execute(
                "SELECT * FROM knowledge_documents ORDER BY modified_at DESC",
                fetch="all",
            )
        if not include_superseded:
            superseded = self.superseded_ids()
            rows = [r for r in rows if r["doc_id"] not in superseded]
        return [self._hydrate(r) for r in rows]

    def find_by_fingerprint(self, fingerprint: str) -> Optional[KnowledgeDocument]:
        row = execute(
            "SELECT * FROM knowledge_documents WHERE source_fingerprint = %s",
            (fingerprint,),
            fetch="one",
        )
        return self._hydrate(row) if row else None

    def find(
        self,
        topic: str,
        tags: Iterable[str],
        freshness_window: Optional[timedelta] = None,
    ) -> list[KnowledgeDocument]:
        """Fresh, non-superseded documents on the same subject.

        A document matches when its tag set has Jaccard similarity at or
        above the threshold with the query tags. With no query tags, the
        normalized topic must match instead. An empty result is a genuine
        cache miss.
        """
        query_tags = normalize_tags(tags)
        topic_key = normalize_topic(topic)
        window = freshness_window if freshness_window is not None else self.freshness_window
        cutoff = self.now() - window

        rows = execute(
            """SELECT doc_id, topic, tags, modified_at, quality_score
               FROM knowledge_documents""",
            fetch="all",
        )
        superseded = self.superseded_ids()

        ranked = []
        for row in rows:
            if row["doc_id"] in superseded:
                continue
            modified = _parse_ts(row["modified_at"])
            if modified < cutoff:
                continue
            topic_match = normalize_topic(row["topic"]) == topic_key
            if query_tags:
                similarity = jaccard(query_tags, _json_loads(row["tags"]))
                if similarity < self.similarity_threshold:
                    continue
            elif topic_match:
                similarity = 1.0
            else:
                continue
            ranked.append((
                (not topic_match, -similarity, -row["quality_score"], -modified.timestamp()),
                row["doc_id"],
            ))

        ranked.sort()
        docs = [self.get(doc_id) for _, doc_id in ranked]
        result = [d for d in docs if d is not None]
        logger.debug(
            f"find(topic={topic_key!r}, tags={sorted(query_tags)}) -> "
            f"{[d.id for d in result]}"
        )
        return result

    def query(
        self,
        topic: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> list[DocumentSummary]:
        """Read-only inspection of accumulated findings (no freshness filter)."""
        query_tags = normalize_tags(tags)
        topic_key = normalize_topic(topic) if topic else ""
        summaries = []
        for doc in self.list_documents():
            if query_tags and jaccard(query_tags, doc.tags) < self.similarity_threshold:
                continue
            if topic_key and not query_tags and topic_key not in normalize_topic(doc.topic):
                continue
            summaries.append(DocumentSummary.from_document(doc))
        return summaries

    def status(self) -> VaultStatus:
        """Counts per category and edge kind, plus total revisions."""
        by_category = execute(
            "SELECT category, COUNT(*) AS n FROM knowledge_documents GROUP BY category",
            fetch="all",
        )
        by_kind = execute(
            "SELECT kind, COUNT(*) AS n FROM knowledge_edges GROUP BY kind",
            fetch="all",
        )
        revisions = execute("SELECT COUNT(*) AS n FROM knowledge_revisions", fetch="one")
        documents_by_category = {r["category"]: int(r["n"]) for r in by_category}
        return VaultStatus(
            total_documents=sum(documents_by_category.values()),
            documents_by_category=documents_by_category,
            total_revisions=int(revisions["n"]) if revisions else 0,
            edges_by_kind={r["kind"]: int(r["n"]) for r in by_kind},
            superseded_documents=len(self.superseded_ids()),
        )

    def score_quality(self, doc: KnowledgeDocument, now: Optional[datetime] = None) -> float:
        """Quality from revision count, link in-degree and recency."""
        return compute_quality(
            revision_count=len(doc.revision_history) or doc.version,
            in_degree=self.in_degree(doc.id),
            modified_at=doc.modified_at,
            now=now or self.now(),
            half_life_days=self.half_life_days,
        )

    # ── Writes ───────────────────────────────────────────────────

    def write(
        self,
        doc_id: Optional[str],
        topic: str,
        tags: Iterable[str],
        body: str,
        base_version: int = 0,
        *,
        author: str = "system",
        diff_summary: str = "",
        category: DocumentCategory = DocumentCategory.RESEARCH,
        links: Iterable[str] = (),
        source_fingerprint: Optional[str] = None,
    ) -> KnowledgeDocument:
        """Create (base_version=0) or update (base_version=current) a document.

        Raises:
            ConflictError: stored version differs from base_version
            DocumentNotFoundError: update of an id that does not exist
        """
        tag_set = normalize_tags(tags)
        category = DocumentCategory(category)
        now = self.now()
        now_iso = now.isoformat()

        if doc_id is None:
            doc_id = f"kd-{uuid.uuid4().hex[:12]}"

        if base_version == 0:
            self._create(doc_id, topic, tag_set, body, author, diff_summary, category, source_fingerprint, now)
            logger.info(f"Created document {doc_id} v1: topic={topic!r}, author={author}")
        else:
            new_version = base_version + 1
            quality = compute_quality(
                revision_count=new_version,
                in_degree=self.in_degree(doc_id),
                modified_at=now,
                now=now,
                half_life_days=self.half_life_days,
            )
            try:
                with transaction() as tx:
                    updated = tx.execute(
                        """UPDATE knowledge_documents
                           SET topic = %s, tags = %s, category = %s, body = %s,
                               version = version + 1, quality_score = %s,
                               modified_at = %s,
                               source_fingerprint = COALESCE(%s, source_fingerprint)
                           WHERE doc_id = %s AND version = %s""",
                        (topic, _json_dumps(sorted(tag_set)), category.value, body,
                         quality, now_iso, source_fingerprint, doc_id, base_version),
                        fetch="rowcount",
                    )
                    if updated != 1:
                        raise _VersionMiss()
                    tx.execute(
                        """INSERT INTO knowledge_revisions
                           (doc_id, version, timestamp, author, diff_summary)
                           VALUES (%s, %s, %s, %s, %s)""",
                        (doc_id, new_version, now_iso, author, diff_summary),
                    )
            except _VersionMiss:
                current = self._current_version(doc_id)
                if current is None:
                    raise DocumentNotFoundError(doc_id)
                logger.info(
                    f"Write conflict on {doc_id}: base_version={base_version}, current={current}"
                )
                raise ConflictError(doc_id, current_version=current, base_version=base_version)
            logger.info(f"Updated document {doc_id} v{base_version} -> v{new_version} by {author}")

        for target in links:
            if target == doc_id:
                continue
            try:
                self.link(doc_id, target, EdgeKind.RELATES_TO)
            except DocumentNotFoundError:
                logger.warning(f"Skipping link {doc_id} -> {target}: target does not exist")

        return self.get_validated(doc_id)

    def _create(
        self,
        doc_id: str,
        topic: str,
        tags: frozenset[str],
        body: str,
        author: str,
        diff_summary: str,
        category: DocumentCategory,
        source_fingerprint: Optional[str],
        now: datetime,
    ) -> None:
        now_iso = now.isoformat()
        quality = compute_quality(
            revision_count=1,
            in_degree=0,
            modified_at=now,
            now=now,
            half_life_days=self.half_life_days,
        )
        try:
            with transaction() as tx:
                tx.execute(
                    """INSERT INTO knowledge_documents
                       (doc_id, topic, tags, category, body, version, quality_score,
                        source_fingerprint, created_at, modified_at)
                       VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
                    (doc_id, topic, _json_dumps(sorted(tags)), category.value, body, 1,
                     quality, source_fingerprint, now_iso, now_iso),
                )
                tx.execute(
                    """INSERT INTO knowledge_revisions
                       (doc_id, version, timestamp, author, diff_summary)
                       VALUES (%s, %s, %s, %s, %s)""",
                    (doc_id, 1, now_iso, author, diff_summary or "Initial version"),
                )
        except Exception:
            # Primary-key collision: someone else created this id first
            current = self._current_version(doc_id)
            if current is not None:
                raise ConflictError(doc_id, current_version=current, base_version=0)
            raise

    def write_with_retry(
        self,
        doc_id: Optional[str],
        build: Callable[[Optional[KnowledgeDocument]], Optional[WriteRequest]],
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ) -> KnowledgeDocument:
        """Bounded optimistic write loop.

        `build` receives the latest committed document (None if it does not
        exist yet) and returns the WriteRequest to apply against it, or None
        to abandon the write. Between attempts the loop sleeps
        backoff_seconds * 2 ** (attempt - 1).

        Raises:
            WriteConflictExhausted: attempts ran out or build() gave up
        """
        attempts = max_attempts or self.write_attempts
        backoff = self.backoff_seconds if backoff_seconds is None else backoff_seconds
        last_error: Optional[ConflictError] = None

        for attempt in range(1, attempts + 1):
            current = self.get(doc_id) if doc_id else None
            request = build(current)
            if request is None:
                logger.warning(f"Write to {doc_id} abandoned by rebase on attempt {attempt}")
                raise WriteConflictExhausted(doc_id, attempt, last_error)
            try:
                return self.write(
                    doc_id,
                    request.topic,
                    request.tags,
                    request.body,
                    request.base_version,
                    author=request.author,
                    diff_summary=request.diff_summary,
                    category=request.category,
                    links=request.links,
                    source_fingerprint=request.source_fingerprint,
                )
            except ConflictError as e:
                last_error = e
                if attempt < attempts:
                    delay = backoff * (2 ** (attempt - 1))
                    logger.info(
                        f"Retry {attempt}/{attempts} for {doc_id} after {delay:.3f}s "
                        f"(current_version={e.current_version})"
                    )
                    time.sleep(delay)

        raise WriteConflictExhausted(doc_id, attempts, last_error)

    # ── Graph ────────────────────────────────────────────────────

    def _supersedes_targets(self, doc_id: str) -> list[str]:
        rows = execute(
            "SELECT to_id FROM knowledge_edges WHERE from_id = %s AND kind = %s",
            (doc_id, EdgeKind.SUPERSEDES.value),
            fetch="all",
        )
        return [r["to_id"] for r in rows]

    def _insert_edge(self, from_id: str, to_id: str, kind: EdgeKind) -> None:
        execute(
            """INSERT INTO knowledge_edges (from_id, to_id, kind, created_at)
               VALUES (%s, %s, %s, %s)
               ON CONFLICT (from_id, to_id, kind) DO NOTHING""",
            (from_id, to_id, kind.value, self.now().isoformat()),
        )

    def link(self, from_id: str, to_id: str, kind: EdgeKind) -> KnowledgeEdge:
        """Insert an edge. Supersedes edges that would close a cycle are rejected.

        Raises:
            DocumentNotFoundError: either endpoint is unknown
            CycleError: supersedes edge would create a cycle (graph unchanged)
        """
        kind = EdgeKind(kind)
        for endpoint in (from_id, to_id):
            if self._current_version(endpoint) is None:
                raise DocumentNotFoundError(endpoint)

        if kind == EdgeKind.SUPERSEDES:
            with self._graph_lock:
                if would_create_cycle(from_id, to_id, self._supersedes_targets):
                    logger.warning(f"Rejected supersedes edge {from_id} -> {to_id}: cycle")
                    raise CycleError(from_id, to_id)
                self._insert_edge(from_id, to_id, kind)
        else:
            self._insert_edge(from_id, to_id, kind)

        logger.debug(f"Linked {from_id} -[{kind.value}]-> {to_id}")
        return KnowledgeEdge(from_id=from_id, to_id=to_id, kind=kind)
