"""Capability registry - loads worker capability profiles from YAML files.

Profiles are loaded once at boot from research_vault/capabilities/definitions/*.yaml
(or a custom directory). After loading, the registry is read-only: there is
no runtime mutation, so concurrent readers need no locking.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional

import yaml

from research_vault.capabilities.schemas import (
    CapabilityProfile,
    CapabilitySummary,
    Operation,
    normalize_tags,
)
from research_vault.errors import DuplicateProfileError

logger = logging.getLogger(__name__)


class CapabilityRegistry:
    """Registry of capability profiles loaded from YAML files.

    A YAML file holds either one profile mapping or a mapping with a
    `profiles:` list. Duplicate ids across (or within) files raise
    DuplicateProfileError, which is deliberately not swallowed.
    """

    def __init__(
        self,
        definitions_dir: Optional[Path] = None,
        profiles: Optional[Iterable[CapabilityProfile]] = None,
    ):
        if definitions_dir is None and profiles is None:
            definitions_dir = Path(__file__).parent / "definitions"
        self.definitions_dir = definitions_dir
        self._profiles: dict[str, CapabilityProfile] = {}
        self._sources: dict[str, str] = {}
        self._loaded = False

        if profiles is not None:
            for profile in profiles:
                self._register(profile, source="<inline>")
            if definitions_dir is None:
                self._loaded = True

    def _register(self, profile: CapabilityProfile, source: str) -> None:
        if profile.id in self._profiles:
            raise DuplicateProfileError(profile.id, self._sources[profile.id], source)
        self._profiles[profile.id] = profile
        self._sources[profile.id] = source
        logger.debug(f"Loaded capability profile: {profile.id} ({source})")

    def load(self) -> None:
        """Load all profile definitions from YAML files."""
        if self._loaded:
            return

        if self.definitions_dir is None or not self.definitions_dir.exists():
            logger.warning(f"Capability definitions directory not found: {self.definitions_dir}")
            self._loaded = True
            return

        yaml_files = sorted(
            list(self.definitions_dir.glob("*.yaml")) + list(self.definitions_dir.glob("*.yml"))
        )
        for yaml_file in yaml_files:
            try:
                with open(yaml_file, "r") as f:
                    data = yaml.safe_load(f)
                entries = data.get("profiles", [data]) if isinstance(data, dict) else data or []
                parsed = [CapabilityProfile.model_validate(entry) for entry in entries]
            except Exception as e:
                logger.error(f"Failed to load capability profiles from {yaml_file}: {e}")
                continue

            for profile in parsed:
                self._register(profile, source=yaml_file.name)

        self._loaded = True
        logger.info(f"Loaded {len(self._profiles)} capability profiles")

    def get(self, profile_id: str) -> Optional[CapabilityProfile]:
        """Get a profile by id."""
        self.load()
        return self._profiles.get(profile_id)

    def list_all(self) -> list[CapabilityProfile]:
        """List all profiles, ordered by id."""
        self.load()
        return [self._profiles[k] for k in sorted(self._profiles)]

    def list_summaries(self) -> list[CapabilitySummary]:
        return [
            CapabilitySummary(
                id=p.id,
                description=p.description,
                allowed_operations=sorted(p.allowed_operations, key=lambda o: o.value),
                domain_tags=sorted(p.domain_tags),
                cost_tier=p.cost_tier,
                external=p.command is not None,
            )
            for p in self.list_all()
        ]

    def count(self) -> int:
        self.load()
        return len(self._profiles)

    def lookup(self, domain_tags) -> list[CapabilityProfile]:
        """Profiles serving the given tags, best match first.

        Ordered by matching tag count (desc), cost tier (asc), then id.
        Profiles with no matching tag are included only if they are
        generalists, so they always sort after every specialist match.
        """
        self.load()
        tags = normalize_tags(domain_tags)
        candidates = []
        for profile in self._profiles.values():
            matches = profile.matching_tags(tags)
            if matches == 0 and not profile.is_generalist:
                continue
            candidates.append((-matches, profile.cost_tier.rank, profile.id, profile))
        candidates.sort(key=lambda c: c[:3])
        return [c[3] for c in candidates]

    @staticmethod
    def validate(profile: CapabilityProfile, required_operations) -> bool:
        """True iff every required operation is in the profile's allowance."""
        required = frozenset(Operation.parse(op) for op in required_operations)
        return required <= profile.allowed_operations


# Global registry instance
_registry: Optional[CapabilityRegistry] = None


def get_capability_registry() -> CapabilityRegistry:
    """Get the global capability registry instance (loaded on first use)."""
    global _registry
    if _registry is None:
        _registry = CapabilityRegistry()
        _registry.load()
    return _registry
