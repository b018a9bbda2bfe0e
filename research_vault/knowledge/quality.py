"""Deterministic quality score for knowledge documents.

score = 0.55 * recency + 0.30 * depth + 0.15 * connectedness, where

- recency       = 0.5 ** (age_days / half_life_days)
- depth         = 1 - 0.5 ** revision_count
- connectedness = 1 - 0.5 ** link_in_degree

A fresh first version with no inbound links scores 0.70, which clears the
default reuse threshold of 0.6. With the default 90-day half-life the same
document drops below the threshold after about 26 days unless it is revised
or linked.
"""

import os
from datetime import datetime, timezone
from typing import Optional

QUALITY_HALF_LIFE_DAYS = float(os.environ.get("VAULT_QUALITY_HALF_LIFE_DAYS", "90"))

RECENCY_WEIGHT = 0.55
DEPTH_WEIGHT = 0.30
CONNECTEDNESS_WEIGHT = 0.15


def compute_quality(
    revision_count: int,
    in_degree: int,
    modified_at: datetime,
    now: Optional[datetime] = None,
    half_life_days: float = QUALITY_HALF_LIFE_DAYS,
) -> float:
    """Score in [0, 1]. Same inputs always give the same score."""
    if now is None:
        now = datetime.now(timezone.utc)
    age_days = max(0.0, (now - modified_at).total_seconds() / 86400.0)
    recency = 0.5 ** (age_days / half_life_days) if half_life_days > 0 else 0.0
    depth = 1.0 - 0.5 ** max(0, revision_count)
    connectedness = 1.0 - 0.5 ** max(0, in_degree)

    score = (
        RECENCY_WEIGHT * recency
        + DEPTH_WEIGHT * depth
        + CONNECTEDNESS_WEIGHT * connectedness
    )
    return round(min(1.0, max(0.0, score)), 6)
