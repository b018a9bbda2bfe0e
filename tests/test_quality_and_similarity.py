"""Test quality scoring, tag similarity and reachability helpers."""

from datetime import datetime, timedelta, timezone

import pytest

from research_vault.knowledge.graph import reaches, would_create_cycle
from research_vault.knowledge.quality import compute_quality
from research_vault.knowledge.similarity import jaccard, normalize_topic

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def test_fresh_first_version_clears_default_threshold():
    score = compute_quality(revision_count=1, in_degree=0, modified_at=NOW, now=NOW)
    assert score == pytest.approx(0.70)
    assert score >= 0.6


def test_quality_decays_with_age():
    fresh = compute_quality(1, 0, NOW, now=NOW)
    month_old = compute_quality(1, 0, NOW - timedelta(days=30), now=NOW)
    half_life = compute_quality(1, 0, NOW - timedelta(days=90), now=NOW)

    assert fresh > month_old > half_life
    assert half_life == pytest.approx(0.55 * 0.5 + 0.15)
    assert month_old < 0.6


def test_quality_rewards_revisions_and_links():
    base = compute_quality(1, 0, NOW, now=NOW)

    assert compute_quality(3, 0, NOW, now=NOW) > base
    assert compute_quality(1, 2, NOW, now=NOW) > base
    assert compute_quality(50, 50, NOW, now=NOW) <= 1.0


def test_quality_is_deterministic():
    args = dict(revision_count=4, in_degree=1, modified_at=NOW - timedelta(days=3), now=NOW)
    assert compute_quality(**args) == compute_quality(**args)


def test_jaccard():
    assert jaccard({"react", "hooks"}, {"react", "hooks"}) == 1.0
    assert jaccard({"react", "hooks"}, {"react"}) == 0.5
    assert jaccard({"a"}, {"b"}) == 0.0
    assert jaccard(set(), set()) == 0.0


def test_normalize_topic():
    assert normalize_topic("React Hooks") == "react-hooks"
    assert normalize_topic("  react--hooks!  ") == "react-hooks"
    assert normalize_topic("") == ""


def test_reaches_and_cycle_check():
    graph = {"a": ["b"], "b": ["c"], "c": []}

    def neighbors(node):
        return graph.get(node, [])

    assert reaches("a", "c", neighbors)
    assert not reaches("c", "a", neighbors)
    assert would_create_cycle("c", "a", neighbors)
    assert not would_create_cycle("a", "c", neighbors)


def test_reaches_gives_up_conservatively():
    def neighbors(node):
        # Unbounded chain: n0 -> n1 -> n2 -> ...
        return [f"n{int(node[1:]) + 1}"]

    assert reaches("n0", "unreachable", neighbors, max_nodes=100)
