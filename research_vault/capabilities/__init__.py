"""Worker capability profiles and the least-privilege lookup over them."""

from research_vault.capabilities.registry import CapabilityRegistry, get_capability_registry
from research_vault.capabilities.schemas import (
    CapabilityProfile,
    CapabilitySummary,
    CostTier,
    Operation,
    normalize_tags,
)

__all__ = [
    "CapabilityProfile",
    "CapabilityRegistry",
    "CapabilitySummary",
    "CostTier",
    "Operation",
    "get_capability_registry",
    "normalize_tags",
]
