"""Tag-set similarity and topic normalization."""

import re

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def jaccard(a, b) -> float:
    """Jaccard similarity: |a & b| / |a | b|. Two empty sets score 0."""
    a = set(a)
    b = set(b)
    union = len(a | b)
    if union == 0:
        return 0.0
    return len(a & b) / union


def normalize_topic(topic: str) -> str:
    """'React Hooks' and 'react-hooks' normalize to the same slug."""
    return _SLUG_RE.sub("-", (topic or "").lower()).strip("-")
