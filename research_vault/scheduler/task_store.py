"""Task record persistence.

Handles:
- Task creation and DB persistence
- Guarded state transitions (conditional UPDATE on the current state)
- Task queries for polling
- Archival of terminal tasks after the retention window

A transition only applies if the task is still in one of the allowed
source states, so a task that was cancelled cannot later be completed by
a late worker result.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from research_vault.capabilities.schemas import Operation
from research_vault.knowledge.db import _json_dumps, _json_loads, execute, init_db
from research_vault.scheduler.schemas import (
    TERMINAL_STATES,
    TRANSITIONS,
    FailureReason,
    Task,
    TaskState,
)

logger = logging.getLogger(__name__)

TASK_RETENTION_DAYS = float(os.environ.get("VAULT_TASK_RETENTION_DAYS", "7"))

_UPDATABLE_FIELDS = (
    "topic",
    "domain_tags",
    "required_operations",
    "assigned_worker",
    "revises_doc_id",
    "result_doc_id",
    "failure_reason",
    "failure_detail",
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _encode(field: str, value):
    if field == "domain_tags":
        return _json_dumps(sorted(value))
    if field == "required_operations":
        return _json_dumps(sorted(Operation(op).value for op in value))
    if field == "failure_reason" and value is not None:
        return FailureReason(value).value
    return value


def _row_to_task(row: dict) -> Task:
    return Task(
        id=row["task_id"],
        request_text=row["request_text"],
        topic=row.get("topic") or "",
        domain_tags=frozenset(_json_loads(row.get("domain_tags"))),
        required_operations=frozenset(Operation(op) for op in _json_loads(row.get("required_operations"))),
        priority=row.get("priority") or 0,
        state=TaskState(row["state"]),
        deadline=_parse(row.get("deadline")),
        assigned_worker=row.get("assigned_worker"),
        revises_doc_id=row.get("revises_doc_id"),
        result_doc_id=row.get("result_doc_id"),
        failure_reason=FailureReason(row["failure_reason"]) if row.get("failure_reason") else None,
        failure_detail=row.get("failure_detail"),
        archived=bool(row.get("archived")),
        created_at=_parse(row["created_at"]),
        updated_at=_parse(row["updated_at"]),
        completed_at=_parse(row.get("completed_at")),
    )


def create_task(task: Task) -> Task:
    """Persist a new task record (normally in state queued)."""
    init_db()
    execute(
        """INSERT INTO research_tasks
           (task_id, request_text, topic, domain_tags, required_operations,
            priority, state, deadline, assigned_worker, revises_doc_id,
            result_doc_id, failure_reason, failure_detail, archived,
            created_at, updated_at, completed_at)
           VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
        (
            task.id, task.request_text, task.topic,
            _encode("domain_tags", task.domain_tags),
            _encode("required_operations", task.required_operations),
            task.priority, task.state.value, _iso(task.deadline),
            task.assigned_worker, task.revises_doc_id, task.result_doc_id,
            _encode("failure_reason", task.failure_reason), task.failure_detail,
            int(task.archived), _iso(task.created_at), _iso(task.updated_at),
            _iso(task.completed_at),
        ),
    )
    logger.info(f"Created task {task.id} (priority={task.priority})")
    return task


def get_task(task_id: str) -> Optional[Task]:
    row = execute(
        "SELECT * FROM research_tasks WHERE task_id = %s",
        (task_id,),
        fetch="one",
    )
    return _row_to_task(row) if row else None


def update_task(task_id: str, **fields) -> None:
    """Update non-state fields (classification results, worker assignment)."""
    unknown = set(fields) - set(_UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Cannot update task fields: {sorted(unknown)}")
    if not fields:
        return
    assignments = ", ".join(f"{name} = %s" for name in fields)
    params = [_encode(name, value) for name, value in fields.items()]
    params.extend([datetime.now(timezone.utc).isoformat(), task_id])
    execute(
        f"UPDATE research_tasks SET {assignments}, updated_at = %s WHERE task_id = %s",
        tuple(params),
    )


def transition(task_id: str, to_state: TaskState, **fields) -> bool:
    """Move a task to `to_state` if its current state allows it.

    Returns True if the transition was applied, False if the task was
    already in a state the transition is not allowed from (e.g. cancelled).
    """
    to_state = TaskState(to_state)
    allowed_from = TRANSITIONS[to_state]
    unknown = set(fields) - set(_UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Cannot update task fields: {sorted(unknown)}")

    now = datetime.now(timezone.utc).isoformat()
    assignments = ["state = %s", "updated_at = %s"]
    params: list = [to_state.value, now]
    if to_state in TERMINAL_STATES:
        assignments.append("completed_at = %s")
        params.append(now)
    for name, value in fields.items():
        assignments.append(f"{name} = %s")
        params.append(_encode(name, value))

    placeholders = ", ".join(["%s"] * len(allowed_from))
    params.append(task_id)
    params.extend(sorted(s.value for s in allowed_from))

    updated = execute(
        f"""UPDATE research_tasks SET {', '.join(assignments)}
            WHERE task_id = %s AND state IN ({placeholders})""",
        tuple(params),
        fetch="rowcount",
    )
    if updated != 1:
        logger.debug(f"Task {task_id}: transition to {to_state.value} not applied")
        return False

    detail = ""
    if fields.get("failure_reason"):
        detail = f" ({FailureReason(fields['failure_reason']).value})"
    logger.info(f"Task {task_id} state -> {to_state.value}{detail}")
    return True


def list_tasks(
    state: Optional[TaskState] = None,
    limit: int = 50,
    include_archived: bool = False,
) -> list[Task]:
    """List tasks, newest first, optionally filtered by state."""
    conditions = []
    params: list = []
    if state is not None:
        conditions.append("state = %s")
        params.append(TaskState(state).value)
    if not include_archived:
        conditions.append("archived = 0")
    where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    params.append(limit)
    rows = execute(
        f"SELECT * FROM research_tasks {where} ORDER BY created_at DESC LIMIT %s",
        tuple(params),
        fetch="all",
    )
    return [_row_to_task(r) for r in rows]


def count_by_state() -> dict[str, int]:
    rows = execute(
        "SELECT state, COUNT(*) AS n FROM research_tasks WHERE archived = 0 GROUP BY state",
        fetch="all",
    )
    return {r["state"]: int(r["n"]) for r in rows}


def archive_expired(
    retention: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> int:
    """Archive terminal tasks whose completion is older than the retention window.

    Returns the number of tasks archived.
    """
    retention = retention if retention is not None else timedelta(days=TASK_RETENTION_DAYS)
    now = now or datetime.now(timezone.utc)
    cutoff = (now - retention).isoformat()
    terminal = sorted(s.value for s in TERMINAL_STATES)
    placeholders = ", ".join(["%s"] * len(terminal))
    archived = execute(
        f"""UPDATE research_tasks SET archived = 1
            WHERE archived = 0 AND state IN ({placeholders})
              AND completed_at IS NOT NULL AND completed_at < %s""",
        (*terminal, cutoff),
        fetch="rowcount",
    )
    if archived:
        logger.info(f"Archived {archived} terminal task(s) older than {retention}")
    return archived or 0


def recover_orphaned_tasks() -> int:
    """Fail tasks left non-terminal by a previous process.

    Pool threads are daemons, so a restart silently kills any execution in
    progress while the table still shows it queued/assigned/running.
    Returns the number of tasks marked failed.
    """
    live = sorted(s.value for s in TaskState if s not in TERMINAL_STATES)
    placeholders = ", ".join(["%s"] * len(live))
    now = datetime.now(timezone.utc).isoformat()
    recovered = execute(
        f"""UPDATE research_tasks
            SET state = %s, failure_reason = %s, failure_detail = %s,
                updated_at = %s, completed_at = %s
            WHERE archived = 0 AND state IN ({placeholders})""",
        (
            TaskState.FAILED.value, FailureReason.WORKER_ERROR.value,
            "Interrupted by restart", now, now, *live,
        ),
        fetch="rowcount",
    )
    if recovered:
        logger.warning(f"Marked {recovered} orphaned task(s) as failed")
    return recovered or 0
