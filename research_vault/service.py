"""ResearchVault: wires registry, store, classifier, pool, scheduler and synthesis.

Lifecycle:
    vault = ResearchVault()
    vault.boot()        # load profiles, init DB, recover orphaned tasks
    vault.register_worker("react-researcher", my_worker)
    task_id = vault.submit("Research react hooks best practices")
    vault.shutdown()
"""

import logging
import os
from datetime import datetime, timedelta
from typing import Optional

from research_vault.capabilities.registry import CapabilityRegistry, get_capability_registry
from research_vault.classifier.base import TaskClassifier
from research_vault.classifier.keyword import KeywordClassifier
from research_vault.executor.pool import WorkerPool
from research_vault.executor.worker import Worker
from research_vault.knowledge.db import init_db
from research_vault.knowledge.schemas import DocumentSummary
from research_vault.knowledge.store import KnowledgeStore
from research_vault.scheduler import task_store
from research_vault.scheduler.router import Scheduler
from research_vault.scheduler.schemas import Task
from research_vault.synthesis.engine import SynthesisEngine
from research_vault.synthesis.extractor import ClaimExtractor, MarkdownClaimExtractor
from research_vault.synthesis.schemas import ScanResult

logger = logging.getLogger(__name__)

# "markdown" (default) or "llm" (needs ANTHROPIC_API_KEY)
CLAIM_EXTRACTOR = os.environ.get("VAULT_CLAIM_EXTRACTOR", "markdown")
PERIODIC_SYNTHESIS = os.environ.get("VAULT_PERIODIC_SYNTHESIS", "false").lower() in ("1", "true", "yes")


def build_extractor(kind: str = CLAIM_EXTRACTOR) -> ClaimExtractor:
    if kind == "llm":
        from research_vault.synthesis.llm_extractor import LLMClaimExtractor

        return LLMClaimExtractor()
    if kind != "markdown":
        raise ValueError(f"Unknown claim extractor: {kind}")
    return MarkdownClaimExtractor()


class ResearchVault:
    def __init__(
        self,
        registry: Optional[CapabilityRegistry] = None,
        store: Optional[KnowledgeStore] = None,
        classifier: Optional[TaskClassifier] = None,
        pool: Optional[WorkerPool] = None,
        extractor: Optional[ClaimExtractor] = None,
        pool_size: Optional[int] = None,
        queue_bound: Optional[int] = None,
        task_timeout: Optional[float] = None,
    ):
        self.registry = registry or get_capability_registry()
        self.store = store or KnowledgeStore()
        self.pool = pool or WorkerPool(
            pool_size=pool_size,
            queue_bound=queue_bound,
            document_reader=self.store,
        )
        self.scheduler = Scheduler(
            self.store,
            self.registry,
            classifier=classifier or KeywordClassifier(),
            pool=self.pool,
            task_timeout=task_timeout,
        )
        self.synthesis = SynthesisEngine(self.store, extractor=extractor or build_extractor())
        self._booted = False

    def boot(self, recover_orphans: bool = True, periodic_synthesis: Optional[bool] = None) -> None:
        if self._booted:
            return
        init_db()
        self.registry.load()
        logger.info(f"Loaded {self.registry.count()} capability profiles")
        if recover_orphans:
            task_store.recover_orphaned_tasks()
        if periodic_synthesis is None:
            periodic_synthesis = PERIODIC_SYNTHESIS
        if periodic_synthesis:
            self.synthesis.start_periodic()
        self._booted = True
        logger.info("Research vault ready")

    def shutdown(self) -> None:
        self.synthesis.stop()
        self.scheduler.shutdown()
        self._booted = False
        logger.info("Research vault shut down")

    # ── Convenience pass-throughs ────────────────────────────────

    def register_worker(self, profile_id: str, worker: Worker) -> None:
        self.scheduler.register_worker(profile_id, worker)

    def submit(self, request_text: str, priority: int = 0, deadline: Optional[datetime] = None) -> str:
        return self.scheduler.submit(request_text, priority=priority, deadline=deadline)

    def wait(self, task_id: str, timeout: Optional[float] = None) -> Optional[Task]:
        return self.scheduler.wait(task_id, timeout)

    def cancel(self, task_id: str) -> bool:
        return self.scheduler.cancel(task_id)

    def query(self, topic: Optional[str] = None, tags=None) -> list[DocumentSummary]:
        return self.store.query(topic, tags)

    def synthesize(self) -> ScanResult:
        return self.synthesis.scan()

    def archive_expired(self, retention: Optional[timedelta] = None) -> int:
        return self.scheduler.archive_expired(retention)


# Global vault instance
_vault: Optional[ResearchVault] = None


def get_vault() -> ResearchVault:
    """Get the global vault instance (built on first use)."""
    global _vault
    if _vault is None:
        _vault = ResearchVault()
    return _vault


def set_vault(vault: Optional[ResearchVault]) -> None:
    """Replace the global vault (used by the API tests and embedding apps)."""
    global _vault
    _vault = vault
