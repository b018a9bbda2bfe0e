"""Keyword-rule classifier loaded from YAML.

A deliberately simple default for the classifier boundary: no model, no
state, same text always yields the same classification.
"""

import logging
import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from research_vault.capabilities.schemas import Operation
from research_vault.classifier.base import Classification
from research_vault.knowledge.similarity import normalize_topic

logger = logging.getLogger(__name__)

DEFAULT_RULES_PATH = Path(__file__).parent / "rules.yaml"

# Topic fallback when no tag matched: first N words of the request
FALLBACK_TOPIC_WORDS = 4


class ClassifierRules(BaseModel):
    base_operations: list[Operation] = Field(
        default_factory=lambda: [Operation.READ_DOC, Operation.WRITE_DOC]
    )
    tags: dict[str, list[str]] = Field(default_factory=dict)
    operations: dict[Operation, list[str]] = Field(default_factory=dict)


def _compile(keyword: str) -> re.Pattern:
    return re.compile(rf"(?<![\w]){re.escape(keyword.lower())}(?![\w])")


class KeywordClassifier:
    """Maps keywords in the request text to tags and required operations."""

    def __init__(self, rules: Optional[ClassifierRules] = None, rules_path: Optional[Path] = None):
        if rules is None:
            rules = self.load_rules(rules_path or DEFAULT_RULES_PATH)
        self.rules = rules
        self._tag_patterns = {
            tag.lower(): [_compile(k) for k in keywords]
            for tag, keywords in rules.tags.items()
        }
        self._op_patterns = {
            op: [_compile(k) for k in keywords]
            for op, keywords in rules.operations.items()
        }

    @staticmethod
    def load_rules(path: Path) -> ClassifierRules:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        rules = ClassifierRules.model_validate(data)
        logger.info(
            f"Loaded classifier rules from {path.name}: "
            f"{len(rules.tags)} tags, {len(rules.operations)} operation rules"
        )
        return rules

    @staticmethod
    def _first_hit(text: str, patterns: list[re.Pattern]) -> Optional[int]:
        positions = []
        for pattern in patterns:
            match = pattern.search(text)
            if match:
                positions.append(match.start())
        return min(positions) if positions else None

    def classify(self, request_text: str) -> Classification:
        text = (request_text or "").lower()

        hits = []
        for tag, patterns in self._tag_patterns.items():
            pos = self._first_hit(text, patterns)
            if pos is not None:
                hits.append((pos, tag))
        hits.sort()
        ordered_tags = [tag for _, tag in hits]

        operations = set(self.rules.base_operations)
        for op, patterns in self._op_patterns.items():
            if self._first_hit(text, patterns) is not None:
                operations.add(op)

        if ordered_tags:
            topic = normalize_topic("-".join(ordered_tags))
        else:
            words = re.findall(r"[a-z0-9]+", text)[:FALLBACK_TOPIC_WORDS]
            topic = normalize_topic("-".join(words)) or "general"

        return Classification(
            topic=topic,
            domain_tags=frozenset(ordered_tags),
            required_operations=frozenset(operations),
        )
