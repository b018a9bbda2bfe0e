"""Synthesis engine: turns clusters of related findings into one derived document.

A scan:
1. Clusters the live (non-superseded, non-synthesis) documents by tag
   similarity.
2. Creates a SynthesisJob per cluster over a snapshot of its documents.
   Clusters whose exact (id, version) set was already synthesized are
   skipped.
3. Extracts claims per document. A document whose extraction fails is
   excluded from the job; fewer than two usable documents fails the job
   with insufficient_input.
4. Writes a synthesis document: agreed claims (most recent source first)
   and an "Unresolved Contradictions" section. Contradictions are only
   surfaced, never resolved. The new document supersedes any earlier
   synthesis drawn only from documents in the same cluster.

Scans run on demand or periodically on a daemon thread.
"""

import hashlib
import logging
import os
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Optional

from research_vault.errors import ExtractionError, InsufficientInputError, ResearchVaultError
from research_vault.knowledge.schemas import DocumentCategory, EdgeKind, KnowledgeDocument
from research_vault.knowledge.similarity import normalize_topic
from research_vault.knowledge.store import KnowledgeStore
from research_vault.scheduler.schemas import FailureReason
from research_vault.synthesis.clustering import CLUSTER_THRESHOLD, cluster_documents
from research_vault.synthesis.extractor import ClaimExtractor, MarkdownClaimExtractor
from research_vault.synthesis.schemas import (
    Claim,
    Contradiction,
    ScanResult,
    SynthesisJob,
    SynthesisState,
)

logger = logging.getLogger(__name__)

SYNTHESIS_INTERVAL_SECONDS = float(os.environ.get("VAULT_SYNTHESIS_INTERVAL_SECONDS", "3600"))
JOB_HISTORY_SIZE = 200
SYNTHESIS_AUTHOR = "synthesis-engine"


def input_fingerprint(docs: list[KnowledgeDocument]) -> str:
    """Stable hash of the (id, version) pairs a synthesis is built from."""
    material = "\n".join(f"{d.id}:{d.version}" for d in sorted(docs, key=lambda d: d.id))
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]


def find_contradictions(
    claims_by_doc: dict[str, list[Claim]],
    doc_order: list[str],
) -> tuple[list[Claim], list[Contradiction]]:
    """Split claims into agreed claims and cross-document contradictions.

    Claims with the same (subject, predicate) but different values in two
    documents form a contradiction; such keys are left out of the agreed
    list entirely. Agreed claims are returned once per key, taken from
    the most recent document that makes them.
    """
    # key -> [(doc_id, claim)] in document order; first claim per doc wins
    by_key: dict[tuple[str, str], list[tuple[str, Claim]]] = {}
    for doc_id in doc_order:
        seen = set()
        for claim in claims_by_doc.get(doc_id, []):
            if claim.key in seen:
                continue
            seen.add(claim.key)
            by_key.setdefault(claim.key, []).append((doc_id, claim))

    agreed = []
    contradictions = []
    for key, entries in by_key.items():
        values = {claim.normalized_value for _, claim in entries}
        if len(values) == 1:
            agreed.append(entries[0][1])
            continue
        for i in range(len(entries)):
            for j in range(i + 1, len(entries)):
                (doc_a, claim_a), (doc_b, claim_b) = entries[i], entries[j]
                if claim_a.normalized_value == claim_b.normalized_value:
                    continue
                contradictions.append(Contradiction(
                    doc_a=doc_a,
                    doc_b=doc_b,
                    subject=claim_a.subject,
                    predicate=claim_a.predicate,
                    value_a=claim_a.value,
                    value_b=claim_b.value,
                    description=(
                        f"{doc_a} says {claim_a.subject} {claim_a.predicate} {claim_a.value!r}; "
                        f"{doc_b} says {claim_b.value!r}"
                    ),
                ))
    return agreed, contradictions


def render_synthesis(
    docs: list[KnowledgeDocument],
    agreed: list[Claim],
    contradictions: list[Contradiction],
    sources: dict[tuple[str, str], list[str]],
) -> str:
    lines = [
        f"# Synthesis: {docs[0].topic}",
        "",
        f"Derived from {len(docs)} documents: " + ", ".join(d.id for d in docs),
        "",
        "## Claims",
        "",
    ]
    if agreed:
        for claim in agreed:
            lines.append(f"- {claim.subject} | {claim.predicate} | {claim.value}")
            lines.append(f"  - sources: {', '.join(sources.get(claim.key, [claim.source_doc_id]))}")
    else:
        lines.append("_No uncontested claims._")

    lines.extend(["", "## Unresolved Contradictions", ""])
    if contradictions:
        for c in contradictions:
            lines.append(
                f"- **{c.subject}** / {c.predicate}: "
                f"\"{c.value_a}\" ({c.doc_a}) vs \"{c.value_b}\" ({c.doc_b})"
            )
    else:
        lines.append("_None._")
    return "\n".join(lines) + "\n"


class SynthesisEngine:
    """Batch synthesis over the knowledge graph."""

    def __init__(
        self,
        store: KnowledgeStore,
        extractor: Optional[ClaimExtractor] = None,
        cluster_threshold: Optional[float] = None,
        history_size: int = JOB_HISTORY_SIZE,
    ):
        self.store = store
        self.extractor = extractor or MarkdownClaimExtractor()
        self.cluster_threshold = CLUSTER_THRESHOLD if cluster_threshold is None else cluster_threshold
        self._jobs: deque[SynthesisJob] = deque(maxlen=history_size)
        self._jobs_lock = threading.Lock()
        self._scan_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── Job history ──────────────────────────────────────────────

    def _remember(self, job: SynthesisJob) -> None:
        with self._jobs_lock:
            self._jobs.append(job)

    def list_jobs(self) -> list[SynthesisJob]:
        """Most recent first."""
        with self._jobs_lock:
            return list(reversed(self._jobs))

    def get_job(self, job_id: str) -> Optional[SynthesisJob]:
        with self._jobs_lock:
            for job in self._jobs:
                if job.id == job_id:
                    return job
        return None

    # ── Scanning ─────────────────────────────────────────────────

    def scan(self) -> ScanResult:
        """Run one synthesis pass over the current graph."""
        with self._scan_lock:
            candidates = [
                d for d in self.store.list_documents(include_superseded=False)
                if d.category != DocumentCategory.SYNTHESIS
            ]
            clusters = cluster_documents(candidates, self.cluster_threshold)
            result = ScanResult(clusters_found=len(clusters))
            logger.info(f"Synthesis scan: {len(candidates)} documents, {len(clusters)} clusters")

            for cluster in clusters:
                job = self.create_job(cluster)
                if self.store.find_by_fingerprint(job.fingerprint) is not None:
                    logger.debug(f"Skipping cluster {job.input_doc_ids}: already synthesized")
                    result.skipped_unchanged += 1
                    continue
                result.jobs.append(self.run_job(job, cluster))
            return result

    def create_job(self, docs: list[KnowledgeDocument]) -> SynthesisJob:
        ordered = sorted(docs, key=lambda d: (-d.modified_at.timestamp(), d.id))
        return SynthesisJob(
            input_doc_ids=[d.id for d in ordered],
            input_versions={d.id: d.version for d in ordered},
            fingerprint=input_fingerprint(ordered),
        )

    def run_job(self, job: SynthesisJob, docs: list[KnowledgeDocument]) -> SynthesisJob:
        """Execute a job against the document snapshot it was created from."""
        by_id = {d.id: d for d in docs}
        snapshot = [by_id[doc_id] for doc_id in job.input_doc_ids if doc_id in by_id]
        job.state = SynthesisState.RUNNING
        self._remember(job)

        claims_by_doc: dict[str, list[Claim]] = {}
        for doc in snapshot:
            try:
                claims_by_doc[doc.id] = self.extractor.extract(doc)
            except ExtractionError as e:
                logger.warning(f"Synthesis {job.id}: excluding {doc.id}: {e}")
                job.excluded_doc_ids.append(doc.id)
            except Exception as e:
                logger.error(f"Synthesis {job.id}: extractor crashed on {doc.id}: {e}", exc_info=True)
                job.excluded_doc_ids.append(doc.id)

        usable = [d for d in snapshot if d.id in claims_by_doc]
        try:
            if len(usable) < 2:
                raise InsufficientInputError(
                    f"{len(usable)} usable document(s) out of {len(snapshot)}"
                )
            output = self._commit(job, usable, claims_by_doc)
        except InsufficientInputError as e:
            return self._fail(job, FailureReason.INSUFFICIENT_INPUT, str(e))
        except ResearchVaultError as e:
            logger.error(f"Synthesis {job.id}: commit failed: {e}")
            return self._fail(job, FailureReason.WRITE_CONFLICT, str(e))

        job.output_doc_id = output.id
        job.state = SynthesisState.COMPLETED
        job.completed_at = datetime.now(timezone.utc)
        logger.info(
            f"Synthesis {job.id}: wrote {output.id} from {len(usable)} documents, "
            f"{len(job.contradictions_found)} contradiction(s)"
        )
        return job

    def _fail(self, job: SynthesisJob, reason: FailureReason, detail: str) -> SynthesisJob:
        job.state = SynthesisState.FAILED
        job.failure_reason = reason
        job.failure_detail = detail
        job.completed_at = datetime.now(timezone.utc)
        logger.warning(f"Synthesis {job.id} failed ({reason.value}): {detail}")
        return job

    def _commit(
        self,
        job: SynthesisJob,
        docs: list[KnowledgeDocument],
        claims_by_doc: dict[str, list[Claim]],
    ) -> KnowledgeDocument:
        order = [d.id for d in docs]
        agreed, contradictions = find_contradictions(claims_by_doc, order)
        job.contradictions_found = contradictions

        sources: dict[tuple[str, str], list[str]] = {}
        for doc_id in order:
            for claim in claims_by_doc[doc_id]:
                ids = sources.setdefault(claim.key, [])
                if doc_id not in ids:
                    ids.append(doc_id)

        tags = set()
        for doc in docs:
            tags |= doc.tags
        body = render_synthesis(docs, agreed, contradictions, sources)
        previous = self._previous_syntheses(set(order))

        output = self.store.write(
            None,
            f"synthesis-{normalize_topic(docs[0].topic)}",
            sorted(tags),
            body,
            0,
            author=SYNTHESIS_AUTHOR,
            diff_summary=f"Synthesis of {len(docs)} documents ({job.id})",
            category=DocumentCategory.SYNTHESIS,
            links=order,
            source_fingerprint=job.fingerprint,
        )

        for old in previous:
            try:
                self.store.link(output.id, old.id, EdgeKind.SUPERSEDES)
            except ResearchVaultError as e:
                logger.warning(f"Synthesis {job.id}: could not supersede {old.id}: {e}")

        linked = set()
        for c in contradictions:
            pair = (c.doc_a, c.doc_b)
            if pair in linked:
                continue
            linked.add(pair)
            try:
                self.store.link(c.doc_a, c.doc_b, EdgeKind.CONTRADICTS)
            except ResearchVaultError as e:
                logger.warning(f"Synthesis {job.id}: could not link contradiction {pair}: {e}")
        return output

    def _previous_syntheses(self, input_ids: set[str]) -> list[KnowledgeDocument]:
        """Live synthesis documents whose sources are all among `input_ids`."""
        previous = []
        for doc in self.store.list_documents(category=DocumentCategory.SYNTHESIS, include_superseded=False):
            sources = {
                e.to_id for e in self.store.get_edges(doc.id, EdgeKind.RELATES_TO)
                if e.from_id == doc.id
            }
            if sources and sources <= input_ids:
                previous.append(doc)
        return previous

    # ── Background loop ──────────────────────────────────────────

    def start_periodic(self, interval: Optional[float] = None) -> threading.Thread:
        """Start scanning every `interval` seconds on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        interval = interval or SYNTHESIS_INTERVAL_SECONDS
        self._stop.clear()

        def loop():
            while not self._stop.wait(interval):
                try:
                    self.scan()
                except Exception as e:
                    logger.error(f"Periodic synthesis scan failed: {e}", exc_info=True)

        self._thread = threading.Thread(target=loop, name="vault-synthesis", daemon=True)
        self._thread.start()
        logger.info(f"Periodic synthesis started (every {interval:.0f}s)")
        return self._thread

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
