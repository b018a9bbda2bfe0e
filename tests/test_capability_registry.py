"""Test capability profile loading, lookup ordering and validation."""

import pytest
from pydantic import ValidationError

from research_vault.capabilities.registry import CapabilityRegistry
from research_vault.capabilities.schemas import CapabilityProfile, CostTier, Operation
from research_vault.errors import DuplicateProfileError


def test_operation_parse_accepts_tool_aliases():
    assert Operation.parse("Read") == Operation.READ_DOC
    assert Operation.parse("Grep") == Operation.READ_DOC
    assert Operation.parse("Write") == Operation.WRITE_DOC
    assert Operation.parse("MultiEdit") == Operation.EDIT_SOURCE
    assert Operation.parse("Bash") == Operation.EXECUTE_SHELL
    assert Operation.parse("WebSearch") == Operation.FETCH_EXTERNAL
    assert Operation.parse("fetch_external") == Operation.FETCH_EXTERNAL
    assert Operation.parse("EXECUTE_SHELL") == Operation.EXECUTE_SHELL
    assert Operation.parse("ReadDoc") == Operation.READ_DOC


def test_operation_parse_rejects_unknown():
    with pytest.raises(ValueError):
        Operation.parse("launch_missiles")


def test_profile_is_immutable():
    profile = CapabilityProfile(id="x", allowed_operations=["Read"], domain_tags="a, B")
    assert profile.domain_tags == frozenset({"a", "b"})
    with pytest.raises(ValidationError):
        profile.id = "y"


def test_default_definitions_load():
    registry = CapabilityRegistry()
    registry.load()

    assert registry.count() == 20
    react = registry.get("react-researcher")
    assert react is not None
    assert react.cost_tier == CostTier.MID
    assert Operation.FETCH_EXTERNAL in react.allowed_operations
    assert Operation.EDIT_SOURCE not in react.allowed_operations
    assert registry.get("general-researcher").is_generalist


def test_lookup_orders_by_matches_then_cost_then_id(registry):
    ids = [p.id for p in registry.lookup({"react", "hooks"})]

    # react-researcher matches 2 tags, implementer matches 1, generalist matches none
    assert ids == ["react-researcher", "implementer", "general-researcher"]


def test_lookup_prefers_cheaper_tier_on_equal_matches():
    registry = CapabilityRegistry(profiles=[
        CapabilityProfile(id="b-expensive", domain_tags=["css"], cost_tier="high"),
        CapabilityProfile(id="a-cheap", domain_tags=["css"], cost_tier="low"),
        CapabilityProfile(id="c-cheap", domain_tags=["css"], cost_tier="low"),
    ])

    assert [p.id for p in registry.lookup(["css"])] == ["a-cheap", "c-cheap", "b-expensive"]


def test_lookup_unmatched_tags_returns_only_generalists(registry):
    assert [p.id for p in registry.lookup({"kubernetes"})] == ["general-researcher"]


def test_validate_checks_subset(registry):
    react = registry.get("react-researcher")

    assert CapabilityRegistry.validate(react, {Operation.READ_DOC, Operation.FETCH_EXTERNAL})
    assert not CapabilityRegistry.validate(react, {Operation.READ_DOC, Operation.EDIT_SOURCE})
    assert CapabilityRegistry.validate(react, set())


def test_duplicate_ids_are_fatal(tmp_path):
    (tmp_path / "a.yaml").write_text("id: dup\nallowed_operations: [Read]\n")
    (tmp_path / "b.yaml").write_text("id: dup\nallowed_operations: [Write]\n")

    registry = CapabilityRegistry(definitions_dir=tmp_path)
    with pytest.raises(DuplicateProfileError) as exc_info:
        registry.load()
    assert exc_info.value.profile_id == "dup"


def test_invalid_file_is_skipped(tmp_path):
    (tmp_path / "good.yaml").write_text(
        "profiles:\n"
        "  - id: one\n"
        "    allowed_operations: [Read]\n"
        "  - id: two\n"
        "    allowed_operations: [Write]\n"
        "    command: python worker.py\n"
    )
    (tmp_path / "bad.yaml").write_text("id: broken\nallowed_operations: [Teleport]\n")

    registry = CapabilityRegistry(definitions_dir=tmp_path)
    registry.load()

    assert [p.id for p in registry.list_all()] == ["one", "two"]
    assert registry.get("two").command == ("python", "worker.py")
    assert registry.get("broken") is None
