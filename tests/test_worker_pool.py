"""Test the worker pool: ordering, backpressure, cancellation, deadlines, enforcement."""

import sys
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from research_vault.capabilities.schemas import CapabilityProfile, Operation
from research_vault.errors import CapabilityViolation, OverloadedError, TaskCancelledError, WorkerError
from research_vault.executor import (
    CancellationToken,
    ExternalProcessWorker,
    FunctionWorker,
    WorkerOutput,
    WorkerPool,
)
from research_vault.scheduler.schemas import Task

READER = CapabilityProfile(id="reader", allowed_operations=["read_doc", "write_doc"])


def _task(priority=0, ops=(Operation.READ_DOC,)):
    return Task(request_text="r", topic="t", priority=priority, required_operations=frozenset(ops))


def _output(body="done"):
    return WorkerOutput(body=body)


class Gate:
    """Blocks workers until released."""

    def __init__(self):
        self.event = threading.Event()
        self.started = threading.Semaphore(0)

    def worker(self, body="done"):
        def run(task, context):
            self.started.release()
            self.event.wait(10)
            return _output(body)

        return FunctionWorker(run)


def test_runs_worker_and_returns_output(pool):
    future = pool.submit(_task(), READER, FunctionWorker(lambda t, c: _output("hello")))

    assert future.result(timeout=5).body == "hello"
    assert pool.in_flight == 0


def test_backpressure_rejects_beyond_capacity():
    pool = WorkerPool(pool_size=1, queue_bound=1)
    gate = Gate()
    try:
        first = pool.submit(_task(), READER, gate.worker())
        assert gate.started.acquire(timeout=5)
        second = pool.submit(_task(), READER, gate.worker())

        with pytest.raises(OverloadedError):
            pool.submit(_task(), READER, gate.worker())

        gate.event.set()
        assert first.result(timeout=5).body == "done"
        assert second.result(timeout=5).body == "done"
        # Capacity is released once executions settle
        assert pool.submit(_task(), READER, gate.worker()).result(timeout=5).body == "done"
    finally:
        gate.event.set()
        pool.shutdown(wait=False)


def test_higher_priority_runs_first():
    pool = WorkerPool(pool_size=1, queue_bound=10)
    gate = Gate()
    order = []

    def recorder(name):
        return FunctionWorker(lambda t, c: order.append(name) or _output(name))

    try:
        blocker = pool.submit(_task(), READER, gate.worker())
        assert gate.started.acquire(timeout=5)
        futures = [
            pool.submit(_task(priority=0), READER, recorder("low-1")),
            pool.submit(_task(priority=5), READER, recorder("high")),
            pool.submit(_task(priority=0), READER, recorder("low-2")),
        ]
        gate.event.set()
        blocker.result(timeout=5)
        for f in futures:
            f.result(timeout=5)
    finally:
        gate.event.set()
        pool.shutdown(wait=False)

    assert order == ["high", "low-1", "low-2"]


def test_cancel_running_execution(pool):
    observed = threading.Event()
    started = threading.Event()

    def cooperative(task, context):
        started.set()
        while not context.token.is_cancelled:
            time.sleep(0.01)
        observed.set()
        context.check_cancelled()
        return _output()

    task = _task()
    future = pool.submit(task, READER, FunctionWorker(cooperative))
    assert started.wait(5)

    assert pool.cancel(task.id)
    with pytest.raises(TaskCancelledError) as exc_info:
        future.result(timeout=5)
    assert exc_info.value.reason == "cancelled"
    assert observed.wait(5)
    assert not pool.cancel(task.id)


def test_deadline_detaches_unresponsive_worker(pool):
    release = threading.Event()

    def stubborn(task, context):
        release.wait(10)
        return _output("too late")

    deadline = datetime.now(timezone.utc) + timedelta(seconds=0.2)
    future = pool.submit(_task(), READER, FunctionWorker(stubborn), deadline=deadline)

    with pytest.raises(TaskCancelledError) as exc_info:
        future.result(timeout=5)
    assert exc_info.value.reason == "deadline_exceeded"
    release.set()


def test_invocation_time_capability_check(pool):
    ran = threading.Event()

    def worker(task, context):
        ran.set()
        return _output()

    task = _task(ops=(Operation.READ_DOC, Operation.EXECUTE_SHELL))
    future = pool.submit(task, READER, FunctionWorker(worker))

    with pytest.raises(CapabilityViolation):
        future.result(timeout=5)
    assert not ran.is_set()


def test_context_rejects_operations_outside_allowance(pool, store):
    store.write("kd-1", "t", ["x"], "body", 0)
    fetch_only = CapabilityProfile(id="fetcher", allowed_operations=["fetch_external"])
    reader = CapabilityProfile(id="reader", allowed_operations=["read_doc"])

    def reads(task, context):
        return _output(context.read_document("kd-1").body)

    assert pool.submit(_task(ops=()), reader, FunctionWorker(reads)).result(timeout=5).body == "body"
    with pytest.raises(CapabilityViolation):
        pool.submit(_task(ops=()), fetch_only, FunctionWorker(reads)).result(timeout=5)


def test_on_start_false_aborts(pool):
    future = pool.submit(
        _task(),
        READER,
        FunctionWorker(lambda t, c: _output()),
        on_start=lambda task: False,
    )

    with pytest.raises(TaskCancelledError):
        future.result(timeout=5)


def test_cancellation_token():
    token = CancellationToken("t-1")
    assert token.remaining() is None
    token.raise_if_cancelled()

    assert token.cancel("deadline_exceeded")
    assert not token.cancel("cancelled")
    assert token.reason == "deadline_exceeded"
    with pytest.raises(TaskCancelledError):
        token.raise_if_cancelled()


def test_external_process_worker(pool):
    script = (
        "import json, sys\n"
        "payload = json.load(sys.stdin)\n"
        "print(json.dumps({'body': 'external ' + payload['task']['topic'],"
        " 'tags': payload['allowed_operations']}))\n"
    )
    worker = ExternalProcessWorker([sys.executable, "-c", script])

    output = pool.submit(_task(), READER, worker).result(timeout=30)

    assert output.body == "external t"
    assert output.tags == ["read_doc", "write_doc"]


def test_external_process_worker_failure(pool):
    worker = ExternalProcessWorker([sys.executable, "-c", "import sys; sys.exit(3)"])

    with pytest.raises(WorkerError):
        pool.submit(_task(), READER, worker).result(timeout=30)
