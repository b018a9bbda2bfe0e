"""Capability profile schemas.

A profile declares WHAT a worker type may do (its operation allowance) and
WHICH domains it serves. Profiles carry no execution logic; the scheduler
and worker pool enforce them.
"""

import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Operation(str, Enum):
    """Closed set of operations a worker may be granted."""

    READ_DOC = "read_doc"
    WRITE_DOC = "write_doc"
    EDIT_SOURCE = "edit_source"
    EXECUTE_SHELL = "execute_shell"
    FETCH_EXTERNAL = "fetch_external"

    @classmethod
    def parse(cls, value: str) -> "Operation":
        """Parse an operation name or an agent tool name (e.g. 'WebFetch')."""
        if isinstance(value, Operation):
            return value
        key = str(value).strip()
        alias = TOOL_ALIASES.get(key)
        if alias is not None:
            return alias
        if "_" in key or key.isupper() or key.islower():
            return cls(key.lower().replace("-", "_"))
        # ReadDoc -> read_doc
        return cls(re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower())


# Informal tool names used in agent front-matter ("tools: Read, Write, ...")
TOOL_ALIASES: dict[str, Operation] = {
    "Read": Operation.READ_DOC,
    "Grep": Operation.READ_DOC,
    "Glob": Operation.READ_DOC,
    "LS": Operation.READ_DOC,
    "Write": Operation.WRITE_DOC,
    "Edit": Operation.EDIT_SOURCE,
    "MultiEdit": Operation.EDIT_SOURCE,
    "Bash": Operation.EXECUTE_SHELL,
    "WebFetch": Operation.FETCH_EXTERNAL,
    "WebSearch": Operation.FETCH_EXTERNAL,
}


class CostTier(str, Enum):
    """Relative cost of running a worker type. Ordered LOW < MID < HIGH."""

    LOW = "low"
    MID = "mid"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _COST_RANK[self]


_COST_RANK = {CostTier.LOW: 0, CostTier.MID: 1, CostTier.HIGH: 2}

GENERALIST_TAG = "*"


def normalize_tags(tags) -> frozenset[str]:
    """Lowercase, strip and de-duplicate a tag collection."""
    if not tags:
        return frozenset()
    if isinstance(tags, str):
        tags = [t for t in tags.split(",")]
    return frozenset(t.strip().lower() for t in tags if t and t.strip())


class CapabilityProfile(BaseModel):
    """Immutable capability declaration for one worker type."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(
        ...,
        description="Worker type name (unique across the registry)",
        examples=["react-researcher", "security-researcher"],
    )
    description: str = Field(default="", description="What this worker type researches")
    allowed_operations: frozenset[Operation] = Field(
        default_factory=frozenset,
        description="Operations this worker type may perform",
    )
    domain_tags: frozenset[str] = Field(
        default_factory=frozenset,
        description="Domain tags served; '*' marks a generalist",
    )
    cost_tier: CostTier = Field(default=CostTier.MID)
    command: Optional[tuple[str, ...]] = Field(
        default=None,
        description="External worker process (argv). None = in-process worker must be bound.",
    )

    @field_validator("allowed_operations", mode="before")
    @classmethod
    def _parse_operations(cls, value):
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = value.split(",")
        return frozenset(Operation.parse(v) for v in value if str(v).strip())

    @field_validator("domain_tags", mode="before")
    @classmethod
    def _parse_tags(cls, value):
        return normalize_tags(value)

    @field_validator("command", mode="before")
    @classmethod
    def _parse_command(cls, value):
        if value is None or value == "":
            return None
        if isinstance(value, str):
            return tuple(value.split())
        return tuple(value)

    @property
    def is_generalist(self) -> bool:
        return GENERALIST_TAG in self.domain_tags

    def matching_tags(self, tags: frozenset[str]) -> int:
        return len(self.domain_tags & tags)


class CapabilitySummary(BaseModel):
    """Lightweight profile view for listings."""

    id: str
    description: str
    allowed_operations: list[Operation]
    domain_tags: list[str]
    cost_tier: CostTier
    external: bool
