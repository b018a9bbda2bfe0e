"""Pytest configuration and shared fixtures.

Every test gets its own SQLite database under tmp_path.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure project root is in PYTHONPATH for imports to work
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from research_vault.capabilities.registry import CapabilityRegistry  # noqa: E402
from research_vault.capabilities.schemas import CapabilityProfile  # noqa: E402
from research_vault.executor.pool import WorkerPool  # noqa: E402
from research_vault.knowledge import db  # noqa: E402
from research_vault.knowledge.store import KnowledgeStore  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = None):
        self.current = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def vault_db(tmp_path):
    """Point the database layer at a fresh SQLite file."""
    db_path = tmp_path / "vault.db"
    db.configure(sqlite_path=db_path, database_url="")
    db.init_db()
    yield db_path
    db.configure(sqlite_path=db_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return KnowledgeStore(backoff_seconds=0.0)


@pytest.fixture
def clocked_store(clock):
    return KnowledgeStore(backoff_seconds=0.0, clock=clock)


@pytest.fixture
def profiles():
    return [
        CapabilityProfile(
            id="react-researcher",
            description="React patterns",
            allowed_operations=["Read", "Grep", "Write", "WebFetch", "WebSearch"],
            domain_tags=["react", "hooks", "jsx", "components"],
            cost_tier="mid",
        ),
        CapabilityProfile(
            id="styling-researcher",
            allowed_operations=["Read", "Write"],
            domain_tags=["styling", "css"],
            cost_tier="low",
        ),
        CapabilityProfile(
            id="implementer",
            allowed_operations=["read_doc", "write_doc", "edit_source", "execute_shell"],
            domain_tags=["react", "implementation"],
            cost_tier="high",
        ),
        CapabilityProfile(
            id="general-researcher",
            allowed_operations=["Read", "Write", "WebFetch"],
            domain_tags=["*"],
            cost_tier="high",
        ),
    ]


@pytest.fixture
def registry(profiles):
    return CapabilityRegistry(profiles=profiles)


@pytest.fixture
def pool(store):
    pool = WorkerPool(pool_size=2, queue_bound=4, document_reader=store)
    yield pool
    pool.shutdown(wait=False)
