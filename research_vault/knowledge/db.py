"""Database layer for the knowledge store and task records.

Supports two backends:
- PostgreSQL (production, set VAULT_DATABASE_URL=postgres://...)
- SQLite (local development and tests, default)

Uses raw SQL via psycopg2 (Postgres) or sqlite3 (SQLite). No ORM.

Thread-safety: Postgres uses a ThreadedConnectionPool. SQLite uses per-call
connections with check_same_thread=False and a busy timeout, so concurrent
writers queue on the database lock instead of failing immediately.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

logger = logging.getLogger(__name__)

# Database URL: postgres://... for Postgres, or empty for SQLite
DATABASE_URL = os.environ.get("VAULT_DATABASE_URL", "")

# SQLite default path
SQLITE_PATH = Path(os.environ.get("VAULT_SQLITE_PATH", str(Path.cwd() / "research_vault.db")))

SQLITE_BUSY_TIMEOUT_SECONDS = 30.0

_initialized = False
_pg_pool = None


def _is_postgres() -> bool:
    return DATABASE_URL.startswith("postgres")


def _get_pg_pool():
    """Get or create the Postgres connection pool (lazy singleton)."""
    global _pg_pool
    if _pg_pool is None:
        import psycopg2.pool
        _pg_pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=1,
            maxconn=10,
            dsn=DATABASE_URL,
        )
        logger.info("PostgreSQL connection pool initialized (1-10 connections)")
    return _pg_pool


def configure(sqlite_path: Path | str | None = None, database_url: str | None = None) -> None:
    """Point the database layer at a different backend and re-run init on next use."""
    global SQLITE_PATH, DATABASE_URL, _initialized
    if sqlite_path is not None:
        SQLITE_PATH = Path(sqlite_path)
    if database_url is not None:
        DATABASE_URL = database_url
    _initialized = False


@contextmanager
def get_connection():
    """Get a database connection (Postgres or SQLite).

    Usage:
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(...)
            conn.commit()
    """
    if _is_postgres():
        pool = _get_pg_pool()
        conn = pool.getconn()
        try:
            yield conn
        finally:
            pool.putconn(conn)
    else:
        conn = sqlite3.connect(
            str(SQLITE_PATH),
            check_same_thread=False,
            timeout=SQLITE_BUSY_TIMEOUT_SECONDS,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()


def _json_dumps(data: Any) -> str:
    """Serialize data to JSON string for storage."""
    if data is None:
        return "[]"
    return json.dumps(data, ensure_ascii=False, default=str)


def _json_loads(text: Any) -> Any:
    """Deserialize JSON string from storage."""
    if not text:
        return []
    if isinstance(text, (dict, list)):
        return text  # Already parsed (Postgres JSONB)
    return json.loads(text)


def _adapt(sql: str) -> str:
    # SQLite uses ? placeholders, Postgres uses %s
    return sql if _is_postgres() else sql.replace("%s", "?")


def _rows(cursor, rows) -> list[dict]:
    if _is_postgres():
        columns = [desc[0] for desc in cursor.description]
        return [dict(zip(columns, row)) for row in rows]
    return [dict(row) for row in rows]


def _run(conn, sql: str, params: tuple, fetch: str) -> Any:
    cursor = conn.cursor()
    cursor.execute(_adapt(sql), params)

    if fetch == "one":
        row = cursor.fetchone()
        if row is None:
            return None
        return _rows(cursor, [row])[0]
    if fetch == "all":
        return _rows(cursor, cursor.fetchall())
    if fetch == "rowcount":
        return cursor.rowcount
    return None


def execute(sql: str, params: tuple = (), fetch: str = "none") -> Any:
    """Execute a single SQL statement in its own transaction.

    Args:
        sql: SQL statement (use %s placeholders for both backends)
        params: Parameters tuple
        fetch: "none", "one", "all" or "rowcount"

    Returns:
        None for "none", dict for "one", list[dict] for "all",
        affected row count for "rowcount"
    """
    with get_connection() as conn:
        result = _run(conn, sql, params, fetch)
        if fetch in ("none", "rowcount"):
            conn.commit()
        return result


class Transaction:
    """Several statements committed (or rolled back) together."""

    def __init__(self, conn):
        self._conn = conn

    def execute(self, sql: str, params: tuple = (), fetch: str = "none") -> Any:
        return _run(self._conn, sql, params, fetch)


@contextmanager
def transaction() -> Iterator[Transaction]:
    """Run several statements atomically.

    Commits when the block exits normally, rolls back on any exception.
    On SQLite the first write statement takes the database write lock, so
    put the conditional UPDATE first when doing compare-and-swap.
    """
    with get_connection() as conn:
        try:
            yield Transaction(conn)
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def init_db() -> None:
    """Create tables if they don't exist."""
    global _initialized
    if _initialized:
        return

    if _is_postgres():
        _init_postgres()
    else:
        SQLITE_PATH.parent.mkdir(parents=True, exist_ok=True)
        _init_sqlite()

    _initialized = True
    backend = "PostgreSQL" if _is_postgres() else f"SQLite ({SQLITE_PATH})"
    logger.info(f"Knowledge database initialized: {backend}")


def _init_postgres():
    """Create Postgres tables."""
    ddl = """
    CREATE TABLE IF NOT EXISTS knowledge_documents (
        doc_id VARCHAR(100) PRIMARY KEY,
        topic VARCHAR(300) NOT NULL,
        tags JSONB NOT NULL DEFAULT '[]',
        category VARCHAR(30) NOT NULL DEFAULT 'research',
        body TEXT NOT NULL,
        version INTEGER NOT NULL,
        quality_score REAL NOT NULL DEFAULT 0,
        source_fingerprint VARCHAR(64),
        created_at VARCHAR(40) NOT NULL,
        modified_at VARCHAR(40) NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_knowledge_documents_topic
        ON knowledge_documents(topic);
    CREATE INDEX IF NOT EXISTS idx_knowledge_documents_fingerprint
        ON knowledge_documents(source_fingerprint);

    CREATE TABLE IF NOT EXISTS knowledge_revisions (
        doc_id VARCHAR(100) NOT NULL REFERENCES knowledge_documents(doc_id),
        version INTEGER NOT NULL,
        timestamp VARCHAR(40) NOT NULL,
        author VARCHAR(100) NOT NULL,
        diff_summary TEXT DEFAULT '',
        PRIMARY KEY (doc_id, version)
    );

    CREATE TABLE IF NOT EXISTS knowledge_edges (
        from_id VARCHAR(100) NOT NULL REFERENCES knowledge_documents(doc_id),
        to_id VARCHAR(100) NOT NULL REFERENCES knowledge_documents(doc_id),
        kind VARCHAR(20) NOT NULL,
        created_at VARCHAR(40) NOT NULL,
        PRIMARY KEY (from_id, to_id, kind)
    );

    CREATE INDEX IF NOT EXISTS idx_knowledge_edges_to
        ON knowledge_edges(to_id, kind);

    CREATE TABLE IF NOT EXISTS research_tasks (
        task_id VARCHAR(100) PRIMARY KEY,
        request_text TEXT NOT NULL,
        topic VARCHAR(300) DEFAULT '',
        domain_tags JSONB DEFAULT '[]',
        required_operations JSONB DEFAULT '[]',
        priority INTEGER NOT NULL DEFAULT 0,
        state VARCHAR(20) NOT NULL DEFAULT 'queued',
        deadline VARCHAR(40),
        assigned_worker VARCHAR(100),
        revises_doc_id VARCHAR(100),
        result_doc_id VARCHAR(100),
        failure_reason VARCHAR(40),
        failure_detail TEXT,
        archived INTEGER NOT NULL DEFAULT 0,
        created_at VARCHAR(40) NOT NULL,
        updated_at VARCHAR(40) NOT NULL,
        completed_at VARCHAR(40)
    );

    CREATE INDEX IF NOT EXISTS idx_research_tasks_state
        ON research_tasks(state, archived);
    """
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(ddl)
        conn.commit()


def _init_sqlite():
    """Create SQLite tables."""
    ddl = """
    CREATE TABLE IF NOT EXISTS knowledge_documents (
        doc_id TEXT PRIMARY KEY,
        topic TEXT NOT NULL,
        tags TEXT NOT NULL DEFAULT '[]',
        category TEXT NOT NULL DEFAULT 'research',
        body TEXT NOT NULL,
        version INTEGER NOT NULL,
        quality_score REAL NOT NULL DEFAULT 0,
        source_fingerprint TEXT,
        created_at TEXT NOT NULL,
        modified_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_knowledge_documents_topic
        ON knowledge_documents(topic);
    CREATE INDEX IF NOT EXISTS idx_knowledge_documents_fingerprint
        ON knowledge_documents(source_fingerprint);

    CREATE TABLE IF NOT EXISTS knowledge_revisions (
        doc_id TEXT NOT NULL REFERENCES knowledge_documents(doc_id),
        version INTEGER NOT NULL,
        timestamp TEXT NOT NULL,
        author TEXT NOT NULL,
        diff_summary TEXT DEFAULT '',
        PRIMARY KEY (doc_id, version)
    );

    CREATE TABLE IF NOT EXISTS knowledge_edges (
        from_id TEXT NOT NULL REFERENCES knowledge_documents(doc_id),
        to_id TEXT NOT NULL REFERENCES knowledge_documents(doc_id),
        kind TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (from_id, to_id, kind)
    );

    CREATE INDEX IF NOT EXISTS idx_knowledge_edges_to
        ON knowledge_edges(to_id, kind);

    CREATE TABLE IF NOT EXISTS research_tasks (
        task_id TEXT PRIMARY KEY,
        request_text TEXT NOT NULL,
        topic TEXT DEFAULT '',
        domain_tags TEXT DEFAULT '[]',
        required_operations TEXT DEFAULT '[]',
        priority INTEGER NOT NULL DEFAULT 0,
        state TEXT NOT NULL DEFAULT 'queued',
        deadline TEXT,
        assigned_worker TEXT,
        revises_doc_id TEXT,
        result_doc_id TEXT,
        failure_reason TEXT,
        failure_detail TEXT,
        archived INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        completed_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_research_tasks_state
        ON research_tasks(state, archived);
    """
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.executescript(ddl)
        conn.commit()
