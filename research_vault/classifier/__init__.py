"""Request classification (pluggable)."""

from research_vault.classifier.base import Classification, TaskClassifier
from research_vault.classifier.keyword import ClassifierRules, KeywordClassifier

__all__ = ["Classification", "ClassifierRules", "KeywordClassifier", "TaskClassifier"]
