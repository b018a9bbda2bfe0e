"""Bounded worker pool with priority queueing, deadlines and backpressure.

- Fixed number of daemon threads pull executions from a priority queue
  (higher priority first, FIFO within a priority).
- At most pool_size + queue_bound executions are in flight; submit()
  beyond that raises OverloadedError immediately instead of queueing.
- Each execution carries a CancellationToken. An explicit cancel() or the
  deadline timer sets the token and resolves the future with
  TaskCancelledError right away, so a worker that ignores cancellation is
  detached from the result path.
- The task's required operations are re-checked against the profile's
  allowance at invocation time.
"""

import itertools
import logging
import os
import queue
import threading
import time
from concurrent.futures import Future
from datetime import datetime, timezone
from typing import Callable, Optional

from research_vault.capabilities.schemas import CapabilityProfile
from research_vault.errors import CapabilityViolation, OverloadedError, TaskCancelledError
from research_vault.executor.cancellation import CancellationToken
from research_vault.executor.worker import Worker, WorkerContext
from research_vault.scheduler.schemas import Task

logger = logging.getLogger(__name__)

POOL_SIZE = int(os.environ.get("VAULT_POOL_SIZE", "0")) or (os.cpu_count() or 4)
QUEUE_BOUND = int(os.environ.get("VAULT_QUEUE_BOUND", "32"))

_STOP_PRIORITY = float("inf")


class _Execution:
    def __init__(
        self,
        task: Task,
        profile: CapabilityProfile,
        worker: Worker,
        token: CancellationToken,
        on_start: Optional[Callable[[Task], bool]],
    ):
        self.task = task
        self.profile = profile
        self.worker = worker
        self.token = token
        self.on_start = on_start
        self.future: Future = Future()
        self.timer: Optional[threading.Timer] = None
        self.settled = False
        self.lock = threading.Lock()


class WorkerPool:
    """Runs workers on a fixed set of threads."""

    def __init__(
        self,
        pool_size: Optional[int] = None,
        queue_bound: Optional[int] = None,
        document_reader=None,
    ):
        self.pool_size = pool_size or POOL_SIZE
        self.queue_bound = QUEUE_BOUND if queue_bound is None else queue_bound
        self.document_reader = document_reader
        self._queue: queue.PriorityQueue = queue.PriorityQueue()
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._executions: dict[str, _Execution] = {}
        self._in_flight = 0
        self._shutdown = False
        self._threads = []
        for i in range(self.pool_size):
            thread = threading.Thread(
                target=self._worker_loop,
                name=f"vault-worker-{i}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info(f"Worker pool started: {self.pool_size} threads, queue bound {self.queue_bound}")

    @property
    def capacity(self) -> int:
        return self.pool_size + self.queue_bound

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def submit(
        self,
        task: Task,
        profile: CapabilityProfile,
        worker: Worker,
        deadline: Optional[datetime] = None,
        on_start: Optional[Callable[[Task], bool]] = None,
    ) -> Future:
        """Queue a worker execution for a task.

        `on_start` is called on the pool thread right before the worker
        runs; returning False aborts the execution as cancelled.

        Raises:
            OverloadedError: pool_size + queue_bound executions already in flight
        """
        with self._lock:
            if self._shutdown:
                raise RuntimeError("Worker pool is shut down")
            if self._in_flight >= self.capacity:
                logger.warning(f"Rejecting task {task.id}: pool overloaded ({self._in_flight} in flight)")
                raise OverloadedError(self.capacity)
            if task.id in self._executions:
                raise ValueError(f"Task {task.id} is already in the pool")
            self._in_flight += 1

            remaining = None
            if deadline is not None:
                remaining = (deadline - datetime.now(timezone.utc)).total_seconds()
            token = CancellationToken(
                task.id,
                deadline=time.monotonic() + remaining if remaining is not None else None,
            )
            execution = _Execution(task, profile, worker, token, on_start)
            self._executions[task.id] = execution

        if remaining is not None:
            execution.timer = threading.Timer(max(0.0, remaining), self._expire, args=(execution,))
            execution.timer.daemon = True
            execution.timer.start()

        self._queue.put((-task.priority, next(self._seq), execution))
        logger.debug(f"Queued task {task.id} for {profile.id} (priority={task.priority})")
        return execution.future

    def cancel(self, task_id: str, reason: str = "cancelled") -> bool:
        """Cancel a queued or running execution. Returns False if unknown/finished."""
        with self._lock:
            execution = self._executions.get(task_id)
        if execution is None:
            return False
        execution.token.cancel(reason)
        settled = self._settle(execution, error=TaskCancelledError(task_id, reason))
        if settled:
            logger.info(f"Cancelled task {task_id} ({reason})")
        return settled

    def shutdown(self, wait: bool = True, cancel_pending: bool = True) -> None:
        with self._lock:
            if self._shutdown:
                return
            self._shutdown = True
            pending = list(self._executions.values())
        if cancel_pending:
            for execution in pending:
                execution.token.cancel("shutdown")
                self._settle(execution, error=TaskCancelledError(execution.task.id, "shutdown"))
        for _ in self._threads:
            self._queue.put((_STOP_PRIORITY, next(self._seq), None))
        if wait:
            for thread in self._threads:
                thread.join(timeout=5)
        logger.info("Worker pool shut down")

    # ── Internals ────────────────────────────────────────────────

    def _expire(self, execution: _Execution) -> None:
        if execution.token.cancel("deadline_exceeded"):
            logger.warning(f"Task {execution.task.id} exceeded its deadline")
        self._settle(
            execution,
            error=TaskCancelledError(execution.task.id, "deadline_exceeded"),
        )

    def _settle(self, execution: _Execution, result=None, error: Optional[BaseException] = None) -> bool:
        """Resolve the execution's future exactly once and release its slot."""
        with execution.lock:
            if execution.settled:
                return False
            execution.settled = True
        if execution.timer is not None:
            execution.timer.cancel()
        with self._lock:
            self._executions.pop(execution.task.id, None)
            self._in_flight -= 1
        if error is not None:
            execution.future.set_exception(error)
        else:
            execution.future.set_result(result)
        return True

    def _worker_loop(self) -> None:
        while True:
            _, _, execution = self._queue.get()
            if execution is None:
                return
            try:
                self._run(execution)
            except Exception as e:
                logger.error(f"Unexpected pool error on task {execution.task.id}: {e}", exc_info=True)
                self._settle(execution, error=e)

    def _run(self, execution: _Execution) -> None:
        task = execution.task
        token = execution.token
        if token.is_cancelled or execution.settled:
            return

        missing = task.required_operations - execution.profile.allowed_operations
        if missing:
            self._settle(execution, error=CapabilityViolation(
                f"Worker '{execution.profile.id}' lacks {sorted(op.value for op in missing)} "
                f"required by task {task.id}"
            ))
            return

        if execution.on_start is not None and execution.on_start(task) is False:
            token.cancel("cancelled")
            self._settle(execution, error=TaskCancelledError(task.id, "cancelled"))
            return

        context = WorkerContext(task, execution.profile, token, self.document_reader)
        started = time.time()
        try:
            output = execution.worker.run(task, context)
        except Exception as e:
            if isinstance(e, TaskCancelledError) or not token.is_cancelled:
                self._settle(execution, error=e)
            else:
                self._settle(execution, error=TaskCancelledError(task.id, token.reason or "cancelled"))
            logger.info(f"Task {task.id} worker raised {type(e).__name__} after {time.time() - started:.1f}s")
            return

        if token.is_cancelled:
            # Late result of a cancelled/expired execution is dropped
            self._settle(execution, error=TaskCancelledError(task.id, token.reason or "cancelled"))
            return
        self._settle(execution, result=output)
        logger.info(f"Task {task.id} worker finished in {time.time() - started:.1f}s")
