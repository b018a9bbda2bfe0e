"""Synthesis of clustered findings, with contradiction surfacing."""

from research_vault.synthesis.engine import SynthesisEngine, find_contradictions
from research_vault.synthesis.extractor import ClaimExtractor, MarkdownClaimExtractor
from research_vault.synthesis.schemas import (
    Claim,
    Contradiction,
    ScanResult,
    SynthesisJob,
    SynthesisState,
)

__all__ = [
    "Claim",
    "ClaimExtractor",
    "Contradiction",
    "MarkdownClaimExtractor",
    "ScanResult",
    "SynthesisEngine",
    "SynthesisJob",
    "SynthesisState",
    "find_contradictions",
]
