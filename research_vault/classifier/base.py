"""Classifier boundary: request text -> topic, domain tags, required operations."""

from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from research_vault.capabilities.schemas import Operation


class Classification(BaseModel):
    model_config = ConfigDict(frozen=True)

    topic: str = Field(description="Normalized topic slug, e.g. 'react-hooks'")
    domain_tags: frozenset[str] = Field(default_factory=frozenset)
    required_operations: frozenset[Operation] = Field(default_factory=frozenset)


@runtime_checkable
class TaskClassifier(Protocol):
    """Pure function of the request text. Called exactly once per task."""

    def classify(self, request_text: str) -> Classification:
        ...
