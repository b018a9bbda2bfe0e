"""Scheduler/router: the task lifecycle from submission to committed document.

submit() classifies the request, answers it from the knowledge store when
a fresh, good-enough document already exists, and otherwise routes it to
the least-privileged capable worker and queues it on the pool. When the
worker finishes, its buffered output is committed through the store's
bounded optimistic retry.

Identical (topic, tag set) submissions arriving while a task for them is
in flight are coalesced onto that task and settle with its completed or
failed outcome, so the same subject is never researched twice
concurrently. Followers keep their own deadline and can be cancelled on
their own. If the leader is cancelled or times out, the oldest follower
takes over and is dispatched itself.

A document that matches the request but scores below the quality
threshold is not served; the task carries it as `revises_doc_id` and the
worker's output is committed as a new version of that document.
"""

import logging
import os
import threading
from concurrent.futures import Future
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from research_vault.capabilities.registry import CapabilityRegistry
from research_vault.capabilities.schemas import CapabilityProfile, Operation
from research_vault.classifier.base import TaskClassifier
from research_vault.classifier.keyword import KeywordClassifier
from research_vault.errors import (
    CapabilityViolation,
    DocumentNotFoundError,
    OverloadedError,
    TaskCancelledError,
    WriteConflictExhausted,
)
from research_vault.executor.pool import WorkerPool
from research_vault.executor.schemas import OutputMode, RebasePolicy, WorkerOutput
from research_vault.executor.worker import ExternalProcessWorker, Worker
from research_vault.knowledge.schemas import KnowledgeDocument, WriteRequest
from research_vault.knowledge.similarity import normalize_topic
from research_vault.knowledge.store import KnowledgeStore
from research_vault.scheduler import task_store
from research_vault.scheduler.schemas import FailureReason, Task, TaskState

logger = logging.getLogger(__name__)

TASK_TIMEOUT_SECONDS = float(os.environ.get("VAULT_TASK_TIMEOUT_SECONDS", "600"))
QUALITY_THRESHOLD = float(os.environ.get("VAULT_QUALITY_THRESHOLD", "0.6"))

TaskListener = Callable[[Task], None]


class Scheduler:
    """Routes research tasks to workers and commits their findings."""

    def __init__(
        self,
        store: KnowledgeStore,
        registry: CapabilityRegistry,
        classifier: Optional[TaskClassifier] = None,
        pool: Optional[WorkerPool] = None,
        task_timeout: Optional[float] = None,
        quality_threshold: Optional[float] = None,
        freshness_window: Optional[timedelta] = None,
    ):
        self.store = store
        self.registry = registry
        self.classifier = classifier or KeywordClassifier()
        self.pool = pool or WorkerPool(document_reader=store)
        self.task_timeout = timedelta(seconds=task_timeout or TASK_TIMEOUT_SECONDS)
        self.quality_threshold = QUALITY_THRESHOLD if quality_threshold is None else quality_threshold
        self.freshness_window = freshness_window or store.freshness_window

        self._workers: dict[str, Worker] = {}
        self._lock = threading.Lock()
        # (topic, tags) -> leader task id, and leader -> coalesced followers
        self._in_flight: dict[tuple[str, frozenset[str]], str] = {}
        self._leader_keys: dict[str, tuple[str, frozenset[str]]] = {}
        self._followers: dict[str, list[Task]] = {}
        self._leader_of: dict[str, str] = {}
        self._follower_timers: dict[str, threading.Timer] = {}
        self._done_events: dict[str, threading.Event] = {}
        self._listeners: list[TaskListener] = []

    # ── Worker binding ───────────────────────────────────────────

    def register_worker(self, profile_id: str, worker: Worker) -> None:
        """Bind a worker implementation to a capability profile."""
        if self.registry.get(profile_id) is None:
            raise KeyError(f"Unknown capability profile: {profile_id}")
        self._workers[profile_id] = worker
        logger.info(f"Registered worker for profile {profile_id}")

    def worker_for(self, profile: CapabilityProfile) -> Optional[Worker]:
        worker = self._workers.get(profile.id)
        if worker is None and profile.command:
            worker = ExternalProcessWorker(profile.command)
        return worker

    def route(self, domain_tags, required_operations) -> Optional[CapabilityProfile]:
        """Least-privileged profile that is allowed the operations and has a worker."""
        for profile in self.registry.lookup(domain_tags):
            if not self.registry.validate(profile, required_operations):
                continue
            if self.worker_for(profile) is None:
                continue
            return profile
        return None

    # ── Listeners ────────────────────────────────────────────────

    def subscribe(self, listener: TaskListener) -> None:
        """Call `listener(task)` whenever a task reaches a terminal state."""
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: TaskListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ── Submission ───────────────────────────────────────────────

    def submit(
        self,
        request_text: str,
        priority: int = 0,
        deadline: Optional[datetime] = None,
    ) -> str:
        """Accept a request and return its task id without waiting for research."""
        now = datetime.now(timezone.utc)
        task = Task(
            request_text=request_text,
            priority=priority,
            deadline=deadline or now + self.task_timeout,
        )
        with self._lock:
            self._done_events[task.id] = threading.Event()
        task_store.create_task(task)

        try:
            classification = self.classifier.classify(request_text)
        except Exception as e:
            logger.error(f"Task {task.id}: classification failed: {e}", exc_info=True)
            self._finish(
                task.id,
                TaskState.FAILED,
                failure_reason=FailureReason.CLASSIFICATION_ERROR,
                failure_detail=str(e),
            )
            return task.id

        task_store.update_task(
            task.id,
            topic=classification.topic,
            domain_tags=classification.domain_tags,
            required_operations=classification.required_operations,
        )
        task = task.model_copy(update={
            "topic": classification.topic,
            "domain_tags": classification.domain_tags,
            "required_operations": classification.required_operations,
        })
        logger.info(
            f"Task {task.id}: topic={task.topic!r} tags={sorted(task.domain_tags)} "
            f"ops={sorted(op.value for op in task.required_operations)}"
        )

        key = (normalize_topic(task.topic), task.domain_tags)
        with self._lock:
            leader_id = self._join(task, key)
        if leader_id is not None:
            logger.info(f"Task {task.id}: coalesced onto in-flight task {leader_id}")
            return task.id

        # The store scan runs unlocked; in-flight state is re-checked below
        cached, stale = self._find_cached(task)
        if cached is not None:
            logger.info(f"Task {task.id}: answered from vault by {cached.id} v{cached.version}")
            self._finish(task.id, TaskState.COMPLETED, result_doc_id=cached.id)
            return task.id

        with self._lock:
            leader_id = self._join(task, key)
            if leader_id is None:
                self._lead(task, key)
        if leader_id is not None:
            logger.info(f"Task {task.id}: coalesced onto in-flight task {leader_id}")
            return task.id

        if stale is not None:
            logger.info(f"Task {task.id}: {stale.id} v{stale.version} is below quality threshold, revising it")
            task_store.update_task(task.id, revises_doc_id=stale.id)
            task = task.model_copy(update={"revises_doc_id": stale.id})

        self._dispatch(task)
        return task.id

    def _find_cached(self, task: Task) -> tuple[Optional[KnowledgeDocument], Optional[KnowledgeDocument]]:
        """Return (document good enough to serve, best weak match to revise)."""
        stale = None
        for doc in self.store.find(task.topic, task.domain_tags, self.freshness_window):
            if self.store.score_quality(doc) >= self.quality_threshold:
                return doc, None
            if stale is None:
                stale = doc
        return None, stale

    # ── Coalescing (call with self._lock held) ───────────────────

    def _lead(self, task: Task, key: tuple[str, frozenset[str]]) -> None:
        self._in_flight[key] = task.id
        self._leader_keys[task.id] = key
        self._followers[task.id] = []

    def _join(self, task: Task, key: tuple[str, frozenset[str]]) -> Optional[str]:
        """Attach `task` to the in-flight leader for `key`, if there is one."""
        leader_id = self._in_flight.get(key)
        if leader_id is None:
            return None
        self._followers[leader_id].append(task)
        self._leader_of[task.id] = leader_id
        if task.deadline is not None:
            remaining = (task.deadline - datetime.now(timezone.utc)).total_seconds()
            timer = threading.Timer(max(0.0, remaining), self._expire_follower, args=(task.id,))
            timer.daemon = True
            self._follower_timers[task.id] = timer
            timer.start()
        return leader_id

    def _detach(self, task_id: str) -> None:
        """Stop tracking a follower: drop its timer and its place in the leader's list."""
        leader_id = self._leader_of.pop(task_id, None)
        timer = self._follower_timers.pop(task_id, None)
        if timer is not None:
            timer.cancel()
        if leader_id is not None and leader_id in self._followers:
            self._followers[leader_id] = [t for t in self._followers[leader_id] if t.id != task_id]

    def _expire_follower(self, task_id: str) -> None:
        with self._lock:
            leader_id = self._leader_of.get(task_id)
            if leader_id is None:
                return
            self._detach(task_id)
        applied = task_store.transition(
            task_id,
            TaskState.CANCELLED,
            failure_reason=FailureReason.DEADLINE_EXCEEDED,
            failure_detail=f"Deadline passed while coalesced onto {leader_id}",
        )
        if applied:
            self._notify(task_id)

    def _dispatch(self, task: Task) -> None:
        profile = self.route(task.domain_tags, task.required_operations)
        if profile is None:
            logger.warning(
                f"Task {task.id}: no capable worker for tags={sorted(task.domain_tags)} "
                f"ops={sorted(op.value for op in task.required_operations)}"
            )
            self._finish(
                task.id,
                TaskState.FAILED,
                failure_reason=FailureReason.NO_CAPABLE_WORKER,
                failure_detail="No bound worker is allowed every required operation",
            )
            return

        if not task_store.transition(task.id, TaskState.ASSIGNED, assigned_worker=profile.id):
            # Cancelled before it could be assigned
            self._finish(task.id, TaskState.CANCELLED)
            return
        task = task.model_copy(update={"state": TaskState.ASSIGNED, "assigned_worker": profile.id})

        try:
            future = self.pool.submit(
                task,
                profile,
                self.worker_for(profile),
                deadline=task.deadline,
                on_start=self._on_start,
            )
        except OverloadedError as e:
            self._finish(
                task.id,
                TaskState.FAILED,
                failure_reason=FailureReason.OVERLOADED,
                failure_detail=str(e),
            )
            return

        logger.info(f"Task {task.id}: dispatched to {profile.id}")
        future.add_done_callback(lambda f: self._on_worker_done(task, profile, f))

    def _on_start(self, task: Task) -> bool:
        return task_store.transition(task.id, TaskState.RUNNING)

    def _on_worker_done(self, task: Task, profile: CapabilityProfile, future: Future) -> None:
        try:
            output = future.result()
        except TaskCancelledError as e:
            reason = (
                FailureReason.DEADLINE_EXCEEDED
                if e.reason == "deadline_exceeded"
                else FailureReason.CANCELLED
            )
            self._finish(task.id, TaskState.CANCELLED, failure_reason=reason, failure_detail=str(e))
            return
        except CapabilityViolation as e:
            logger.warning(f"Task {task.id}: {e}")
            self._finish(
                task.id,
                TaskState.FAILED,
                failure_reason=FailureReason.CAPABILITY_VIOLATION,
                failure_detail=str(e),
            )
            return
        except Exception as e:
            logger.error(f"Task {task.id}: worker {profile.id} failed: {e}")
            self._finish(
                task.id,
                TaskState.FAILED,
                failure_reason=FailureReason.WORKER_ERROR,
                failure_detail=f"{type(e).__name__}: {e}",
            )
            return

        current = task_store.get_task(task.id)
        if current is None or current.state.is_terminal:
            logger.info(f"Task {task.id}: discarding output, task already {current.state.value if current else 'gone'}")
            self._finish(task.id, TaskState.CANCELLED)
            return

        try:
            doc = self._commit(task, profile, output)
        except WriteConflictExhausted as e:
            self._finish(
                task.id,
                TaskState.FAILED,
                failure_reason=FailureReason.WRITE_CONFLICT,
                failure_detail=str(e),
            )
            return
        except CapabilityViolation as e:
            self._finish(
                task.id,
                TaskState.FAILED,
                failure_reason=FailureReason.CAPABILITY_VIOLATION,
                failure_detail=str(e),
            )
            return
        except DocumentNotFoundError as e:
            self._finish(
                task.id,
                TaskState.FAILED,
                failure_reason=FailureReason.WORKER_ERROR,
                failure_detail=str(e),
            )
            return

        self._finish(task.id, TaskState.COMPLETED, result_doc_id=doc.id)

    def _commit(self, task: Task, profile: CapabilityProfile, output: WorkerOutput) -> KnowledgeDocument:
        """Write buffered worker output to the store on the worker's behalf."""
        if Operation.WRITE_DOC not in profile.allowed_operations:
            raise CapabilityViolation(f"Worker '{profile.id}' is not allowed to write documents")

        diff_summary = output.diff_summary or f"Research for task {task.id}"
        target = output.target_doc_id or task.revises_doc_id

        if target is None:
            return self.store.write(
                None,
                output.topic or task.topic,
                output.tags if output.tags is not None else sorted(task.domain_tags),
                output.body,
                0,
                author=profile.id,
                diff_summary=diff_summary,
                category=output.category,
                links=output.links,
            )

        def build(latest: Optional[KnowledgeDocument]) -> Optional[WriteRequest]:
            if latest is None:
                raise DocumentNotFoundError(target)
            moved_on = output.base_version is not None and latest.version != output.base_version
            if moved_on and output.rebase == RebasePolicy.ABORT:
                logger.info(
                    f"Task {task.id}: {target} moved to v{latest.version} "
                    f"(worker read v{output.base_version}), rebase refused"
                )
                return None
            if output.mode == OutputMode.APPEND:
                body = f"{latest.body.rstrip()}\n\n{output.body}" if latest.body.strip() else output.body
            else:
                body = output.body
            # A revision keeps the document's subject unless the worker restates it
            return WriteRequest(
                topic=output.topic or latest.topic,
                tags=output.tags if output.tags is not None else sorted(latest.tags),
                body=body,
                base_version=latest.version,
                author=profile.id,
                diff_summary=diff_summary,
                category=output.category,
                links=output.links,
            )

        return self.store.write_with_retry(target, build)

    # ── Settlement ───────────────────────────────────────────────

    def _finish(self, task_id: str, state: TaskState, **fields) -> None:
        """Move a task to a terminal state, then settle any coalesced followers.

        If the transition is refused (already terminal, e.g. cancelled) the
        stored state wins. Followers mirror a completed or failed leader. A
        cancelled leader hands its followers to the oldest of them, which is
        then dispatched in its place.
        """
        fields = {k: v for k, v in fields.items() if v is not None}
        if task_store.transition(task_id, state, **fields):
            self._notify(task_id)

        leader = task_store.get_task(task_id)
        promoted = None
        with self._lock:
            key = self._leader_keys.pop(task_id, None)
            if key is not None and self._in_flight.get(key) == task_id:
                del self._in_flight[key]
            followers = self._followers.pop(task_id, [])
            if followers and key is not None and leader is not None and leader.state == TaskState.CANCELLED:
                promoted = followers.pop(0)
                self._detach(promoted.id)
                self._lead(promoted, key)
                self._followers[promoted.id] = followers
                for follower in followers:
                    self._leader_of[follower.id] = promoted.id
                followers = []
            else:
                for follower in followers:
                    self._detach(follower.id)

        if promoted is not None:
            logger.info(f"Task {promoted.id}: taking over from cancelled task {task_id}")
            if leader.revises_doc_id and promoted.revises_doc_id is None:
                task_store.update_task(promoted.id, revises_doc_id=leader.revises_doc_id)
                promoted = promoted.model_copy(update={"revises_doc_id": leader.revises_doc_id})
            self._dispatch(promoted)
            return
        if not followers:
            return

        if leader is None or not leader.state.is_terminal:
            logger.warning(f"Task {task_id}: {len(followers)} follower(s) left unsettled")
            return
        mirrored = {
            "result_doc_id": leader.result_doc_id,
            "failure_reason": leader.failure_reason,
            "failure_detail": (
                f"Coalesced onto {task_id}: {leader.failure_detail}" if leader.failure_detail else None
            ),
        }
        mirrored = {k: v for k, v in mirrored.items() if v is not None}
        for follower in followers:
            if task_store.transition(follower.id, leader.state, **mirrored):
                self._notify(follower.id)

    def _notify(self, task_id: str) -> None:
        task = task_store.get_task(task_id)
        with self._lock:
            event = self._done_events.pop(task_id, None)
            listeners = list(self._listeners)
        if task is not None:
            for listener in listeners:
                try:
                    listener(task)
                except Exception as e:
                    logger.error(f"Task listener failed for {task_id}: {e}", exc_info=True)
        # Waiters wake only after listeners have run
        if event is not None:
            event.set()

    # ── Queries & control ────────────────────────────────────────

    def get_task(self, task_id: str) -> Optional[Task]:
        return task_store.get_task(task_id)

    def list_tasks(self, state: Optional[TaskState] = None, limit: int = 50) -> list[Task]:
        return task_store.list_tasks(state=state, limit=limit)

    def task_counts(self) -> dict[str, int]:
        return task_store.count_by_state()

    def wait(self, task_id: str, timeout: Optional[float] = None) -> Optional[Task]:
        """Block until the task is terminal (or timeout); returns its latest record."""
        with self._lock:
            event = self._done_events.get(task_id)
        if event is not None:
            event.wait(timeout)
        return task_store.get_task(task_id)

    def cancel(self, task_id: str) -> bool:
        """Cancel a non-terminal task. Output it produces afterwards is discarded."""
        task = task_store.get_task(task_id)
        if task is None or task.state.is_terminal:
            return False
        applied = task_store.transition(
            task_id,
            TaskState.CANCELLED,
            failure_reason=FailureReason.CANCELLED,
            failure_detail="Cancelled by request",
        )
        if not applied:
            return False
        self._notify(task_id)
        with self._lock:
            self._detach(task_id)
        self.pool.cancel(task_id, "cancelled")
        # A cancelled leader hands its followers over
        self._finish(task_id, TaskState.CANCELLED)
        return True

    def archive_expired(self, retention: Optional[timedelta] = None) -> int:
        return task_store.archive_expired(retention)

    def shutdown(self) -> None:
        with self._lock:
            timers = list(self._follower_timers.values())
            self._follower_timers.clear()
        for timer in timers:
            timer.cancel()
        self.pool.shutdown(wait=True, cancel_pending=True)
