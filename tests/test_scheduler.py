"""Test the scheduler/router: dedup, least privilege, failures, cancellation."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from research_vault.capabilities.schemas import Operation
from research_vault.executor import FunctionWorker, OutputMode, RebasePolicy, WorkerOutput, WorkerPool
from research_vault.knowledge.store import KnowledgeStore
from research_vault.scheduler import task_store
from research_vault.scheduler.router import Scheduler
from research_vault.scheduler.schemas import FailureReason, TaskState

REACT_REQUEST = "Research react hooks best practices"


class RecordingWorker:
    """Counts invocations; optionally blocks until released."""

    def __init__(self, body="findings", block=False, output=None):
        self.calls = []
        self.body = body
        self.output = output
        self.started = threading.Event()
        self.release = threading.Event()
        if not block:
            self.release.set()

    def run(self, task, context):
        self.calls.append(task.id)
        self.started.set()
        self.release.wait(10)
        if self.output is not None:
            return self.output
        return WorkerOutput(body=f"{self.body} for {task.topic}")


@pytest.fixture
def scheduler(store, registry, pool):
    return Scheduler(store, registry, pool=pool)


def test_cache_miss_dispatches_and_commits(scheduler, store):
    worker = RecordingWorker()
    scheduler.register_worker("react-researcher", worker)

    task_id = scheduler.submit(REACT_REQUEST)
    task = scheduler.wait(task_id, timeout=10)

    assert task.state == TaskState.COMPLETED
    assert task.topic == "react-hooks"
    assert task.assigned_worker == "react-researcher"
    doc = store.get(task.result_doc_id)
    assert doc.version == 1
    assert doc.tags == frozenset({"react", "hooks"})
    assert doc.revision_history[0].author == "react-researcher"
    assert doc.body == "findings for react-hooks"


def test_identical_request_is_answered_from_vault(scheduler):
    worker = RecordingWorker()
    scheduler.register_worker("react-researcher", worker)

    first = scheduler.wait(scheduler.submit(REACT_REQUEST), timeout=10)
    second_id = scheduler.submit(REACT_REQUEST)
    second = scheduler.get_task(second_id)

    assert second.state == TaskState.COMPLETED
    assert second.result_doc_id == first.result_doc_id
    assert second.assigned_worker is None
    assert len(worker.calls) == 1


def test_concurrent_identical_requests_coalesce(scheduler):
    worker = RecordingWorker(block=True)
    scheduler.register_worker("react-researcher", worker)

    leader_id = scheduler.submit(REACT_REQUEST)
    assert worker.started.wait(5)
    follower_id = scheduler.submit(REACT_REQUEST)
    assert scheduler.get_task(follower_id).state == TaskState.QUEUED

    worker.release.set()
    leader = scheduler.wait(leader_id, timeout=10)
    follower = scheduler.wait(follower_id, timeout=10)

    assert leader.state == follower.state == TaskState.COMPLETED
    assert follower.result_doc_id == leader.result_doc_id
    assert worker.calls == [leader_id]


def test_least_privilege_routing(scheduler, registry):
    react = RecordingWorker()
    implementer = RecordingWorker()
    scheduler.register_worker("react-researcher", react)
    scheduler.register_worker("implementer", implementer)

    task = scheduler.wait(scheduler.submit("Implement react hooks"), timeout=10)

    assert task.state == TaskState.COMPLETED
    assert Operation.EDIT_SOURCE in task.required_operations
    assert task.assigned_worker == "implementer"
    assert task.required_operations <= registry.get("implementer").allowed_operations
    assert react.calls == []


def test_unbound_profiles_are_skipped(scheduler):
    general = RecordingWorker()
    scheduler.register_worker("general-researcher", general)

    task = scheduler.wait(scheduler.submit(REACT_REQUEST), timeout=10)

    assert task.state == TaskState.COMPLETED
    assert task.assigned_worker == "general-researcher"


def test_no_capable_worker(scheduler):
    for profile_id in ("react-researcher", "implementer", "general-researcher"):
        scheduler.register_worker(profile_id, RecordingWorker())

    # Needs execute_shell and fetch_external together; nobody has both
    task = scheduler.wait(scheduler.submit("Install react and compare the docs"), timeout=10)

    assert task.state == TaskState.FAILED
    assert task.failure_reason == FailureReason.NO_CAPABLE_WORKER
    assert task.assigned_worker is None


def test_register_unknown_profile(scheduler):
    with pytest.raises(KeyError):
        scheduler.register_worker("ghost", RecordingWorker())


def test_rebase_veto_fails_with_write_conflict(scheduler, store):
    store.write("kd-css", "css-notes", ["css"], "v1", 0)
    store.write("kd-css", "css-notes", ["css"], "v2", 1)
    worker = RecordingWorker(output=WorkerOutput(
        body="stale edit",
        target_doc_id="kd-css",
        base_version=1,
        rebase=RebasePolicy.ABORT,
    ))
    scheduler.register_worker("react-researcher", worker)

    task = scheduler.wait(scheduler.submit(REACT_REQUEST), timeout=10)

    assert task.state == TaskState.FAILED
    assert task.failure_reason == FailureReason.WRITE_CONFLICT
    assert store.get("kd-css").version == 2


def test_append_output_rebases_onto_latest(scheduler, store):
    store.write("kd-css", "css-notes", ["css"], "first", 0)
    store.write("kd-css", "css-notes", ["css"], "first\nsecond", 1)
    worker = RecordingWorker(output=WorkerOutput(
        body="appended",
        target_doc_id="kd-css",
        base_version=1,
        mode=OutputMode.APPEND,
        tags=["css"],
    ))
    scheduler.register_worker("react-researcher", worker)

    task = scheduler.wait(scheduler.submit(REACT_REQUEST), timeout=10)

    assert task.state == TaskState.COMPLETED
    doc = store.get("kd-css")
    assert task.result_doc_id == "kd-css"
    assert doc.version == 3
    assert doc.body == "first\nsecond\n\nappended"


def test_cancelled_task_output_is_discarded(scheduler, store):
    worker = RecordingWorker(block=True)
    scheduler.register_worker("react-researcher", worker)

    task_id = scheduler.submit(REACT_REQUEST)
    assert worker.started.wait(5)
    assert scheduler.cancel(task_id)
    worker.release.set()

    task = scheduler.wait(task_id, timeout=10)
    assert task.state == TaskState.CANCELLED
    assert task.failure_reason == FailureReason.CANCELLED
    assert task.result_doc_id is None
    assert store.status().total_documents == 0
    assert not scheduler.cancel(task_id)


def test_deadline_cancels_task(scheduler):
    worker = RecordingWorker(block=True)
    scheduler.register_worker("react-researcher", worker)

    deadline = datetime.now(timezone.utc) + timedelta(seconds=0.3)
    task = scheduler.wait(scheduler.submit(REACT_REQUEST, deadline=deadline), timeout=10)
    worker.release.set()

    assert task.state == TaskState.CANCELLED
    assert task.failure_reason == FailureReason.DEADLINE_EXCEEDED


def test_worker_exception_fails_task(scheduler):
    def broken(task, context):
        raise RuntimeError("boom")

    scheduler.register_worker("react-researcher", FunctionWorker(broken))

    task = scheduler.wait(scheduler.submit(REACT_REQUEST), timeout=10)

    assert task.state == TaskState.FAILED
    assert task.failure_reason == FailureReason.WORKER_ERROR
    assert "boom" in task.failure_detail


def test_overload_fails_task(store, registry):
    pool = WorkerPool(pool_size=1, queue_bound=0, document_reader=store)
    scheduler = Scheduler(store, registry, pool=pool)
    worker = RecordingWorker(block=True)
    scheduler.register_worker("react-researcher", worker)
    scheduler.register_worker("styling-researcher", RecordingWorker())
    try:
        scheduler.submit(REACT_REQUEST)
        assert worker.started.wait(5)

        task = scheduler.get_task(scheduler.submit("Research css styling"))

        assert task.state == TaskState.FAILED
        assert task.failure_reason == FailureReason.OVERLOADED
    finally:
        worker.release.set()
        pool.shutdown(wait=False)


def test_classification_error_fails_task(store, registry, pool):
    class Broken:
        def classify(self, request_text):
            raise ValueError("unparseable")

    scheduler = Scheduler(store, registry, classifier=Broken(), pool=pool)
    task = scheduler.get_task(scheduler.submit("anything"))

    assert task.state == TaskState.FAILED
    assert task.failure_reason == FailureReason.CLASSIFICATION_ERROR


def test_listeners_see_terminal_tasks(scheduler):
    seen = []
    scheduler.subscribe(lambda task: seen.append((task.id, task.state)))
    scheduler.register_worker("react-researcher", RecordingWorker())

    task_id = scheduler.submit(REACT_REQUEST)
    scheduler.wait(task_id, timeout=10)

    assert seen == [(task_id, TaskState.COMPLETED)]


def test_archive_expired(scheduler):
    scheduler.register_worker("react-researcher", RecordingWorker())
    task_id = scheduler.submit(REACT_REQUEST)
    scheduler.wait(task_id, timeout=10)

    assert scheduler.archive_expired(timedelta(days=7)) == 0
    assert scheduler.archive_expired(timedelta(0)) == 1
    assert scheduler.list_tasks() == []
    assert task_store.get_task(task_id).archived


def test_recover_orphaned_tasks(scheduler):
    scheduler.register_worker("react-researcher", RecordingWorker(block=True))
    task_id = scheduler.submit(REACT_REQUEST)

    assert task_store.recover_orphaned_tasks() == 1
    task = task_store.get_task(task_id)
    assert task.state == TaskState.FAILED
    assert task.failure_reason == FailureReason.WORKER_ERROR


class TestCoalescing:
    """Followers share the leader's work but keep their own lifecycle."""

    def test_cancelling_leader_promotes_follower(self, scheduler, store):
        worker = RecordingWorker(block=True)
        scheduler.register_worker("react-researcher", worker)

        leader_id = scheduler.submit(REACT_REQUEST)
        assert worker.started.wait(5)
        follower_id = scheduler.submit(REACT_REQUEST)

        assert scheduler.cancel(leader_id)
        worker.release.set()
        follower = scheduler.wait(follower_id, timeout=10)

        assert follower.state == TaskState.COMPLETED
        assert follower.failure_reason is None
        assert follower.assigned_worker == "react-researcher"
        assert worker.calls == [leader_id, follower_id]
        assert scheduler.get_task(leader_id).state == TaskState.CANCELLED
        assert store.status().total_documents == 1

    def test_cancelling_follower_leaves_leader_running(self, scheduler):
        worker = RecordingWorker(block=True)
        scheduler.register_worker("react-researcher", worker)

        leader_id = scheduler.submit(REACT_REQUEST)
        assert worker.started.wait(5)
        follower_id = scheduler.submit(REACT_REQUEST)

        assert scheduler.cancel(follower_id)
        worker.release.set()
        leader = scheduler.wait(leader_id, timeout=10)
        follower = scheduler.get_task(follower_id)

        assert leader.state == TaskState.COMPLETED
        assert follower.state == TaskState.CANCELLED
        assert follower.result_doc_id is None
        assert worker.calls == [leader_id]

    def test_follower_deadline_is_its_own(self, scheduler):
        worker = RecordingWorker(block=True)
        scheduler.register_worker("react-researcher", worker)

        leader_id = scheduler.submit(REACT_REQUEST)
        assert worker.started.wait(5)
        soon = datetime.now(timezone.utc) + timedelta(seconds=0.3)
        follower = scheduler.wait(scheduler.submit(REACT_REQUEST, deadline=soon), timeout=10)

        assert follower.state == TaskState.CANCELLED
        assert follower.failure_reason == FailureReason.DEADLINE_EXCEEDED
        assert scheduler.get_task(leader_id).state == TaskState.RUNNING

        worker.release.set()
        assert scheduler.wait(leader_id, timeout=10).state == TaskState.COMPLETED

    def test_leader_timeout_does_not_end_follower(self, scheduler):
        worker = RecordingWorker(block=True)
        scheduler.register_worker("react-researcher", worker)

        soon = datetime.now(timezone.utc) + timedelta(seconds=0.3)
        leader_id = scheduler.submit(REACT_REQUEST, deadline=soon)
        assert worker.started.wait(5)
        follower_id = scheduler.submit(REACT_REQUEST, deadline=datetime.now(timezone.utc) + timedelta(hours=1))

        leader = scheduler.wait(leader_id, timeout=10)
        assert leader.failure_reason == FailureReason.DEADLINE_EXCEEDED
        worker.release.set()
        follower = scheduler.wait(follower_id, timeout=10)

        assert follower.state == TaskState.COMPLETED
        assert follower.assigned_worker == "react-researcher"

    def test_failed_leader_outcome_is_shared(self, scheduler):
        release = threading.Event()

        def broken(task, context):
            release.wait(10)
            raise RuntimeError("upstream down")

        scheduler.register_worker("react-researcher", FunctionWorker(broken))
        leader_id = scheduler.submit(REACT_REQUEST)
        follower_id = scheduler.submit(REACT_REQUEST)
        release.set()

        follower = scheduler.wait(follower_id, timeout=10)
        assert scheduler.wait(leader_id, timeout=10).state == TaskState.FAILED
        assert follower.state == TaskState.FAILED
        assert follower.failure_reason == FailureReason.WORKER_ERROR
        assert follower.failure_detail.startswith(f"Coalesced onto {leader_id}")

    def test_store_scan_does_not_hold_scheduler_lock(self, registry, pool):
        class BarrierStore(KnowledgeStore):
            """Both submissions must be inside find() at the same time."""

            def __init__(self):
                super().__init__(backoff_seconds=0.0)
                self.barrier = threading.Barrier(2, timeout=5)

            def find(self, *args, **kwargs):
                self.barrier.wait()
                return super().find(*args, **kwargs)

        scheduler = Scheduler(BarrierStore(), registry, pool=pool)
        worker = RecordingWorker(block=True)
        scheduler.register_worker("react-researcher", worker)

        with ThreadPoolExecutor(max_workers=2) as executor:
            futures = [executor.submit(scheduler.submit, REACT_REQUEST) for _ in range(2)]
            task_ids = [f.result(timeout=10) for f in futures]
        worker.release.set()

        tasks = [scheduler.wait(task_id, timeout=10) for task_id in task_ids]
        assert [t.state for t in tasks] == [TaskState.COMPLETED, TaskState.COMPLETED]
        assert tasks[0].result_doc_id == tasks[1].result_doc_id
        assert len(worker.calls) == 1


def test_weak_match_is_revised_not_duplicated(clocked_store, clock, registry, pool):
    scheduler = Scheduler(clocked_store, registry, pool=pool)
    scheduler.register_worker("react-researcher", RecordingWorker(body="updated findings"))
    existing = clocked_store.write(None, "react-hooks", ["react", "hooks"], "old findings", 0)

    # Still inside the freshness window, but quality has decayed below 0.6
    clock.advance(days=28)
    assert clocked_store.score_quality(existing) < 0.6

    task = scheduler.wait(scheduler.submit(REACT_REQUEST), timeout=10)

    assert task.state == TaskState.COMPLETED
    assert task.revises_doc_id == existing.id
    assert task.result_doc_id == existing.id
    doc = clocked_store.get(existing.id)
    assert doc.version == 2
    assert doc.body == "updated findings for react-hooks"
    assert doc.tags == frozenset({"react", "hooks"})
    assert [r.author for r in doc.revision_history][-1] == "react-researcher"
    assert clocked_store.status().total_documents == 1
