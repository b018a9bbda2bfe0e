"""Reachability checks over the supersedes subgraph."""

import logging
from collections import deque
from typing import Callable, Iterable

logger = logging.getLogger(__name__)

# Upper bound on nodes visited by one reachability search
MAX_REACHABILITY_NODES = 10_000


def reaches(
    start: str,
    target: str,
    neighbors: Callable[[str], Iterable[str]],
    max_nodes: int = MAX_REACHABILITY_NODES,
) -> bool:
    """Breadth-first search: can `target` be reached from `start`?

    If the search visits more than `max_nodes` nodes without an answer it
    returns True, so callers guarding acyclicity reject the edge rather than
    risk admitting a cycle.
    """
    if start == target:
        return True

    seen = {start}
    frontier = deque([start])
    while frontier:
        node = frontier.popleft()
        for nxt in neighbors(node):
            if nxt == target:
                return True
            if nxt in seen:
                continue
            seen.add(nxt)
            if len(seen) > max_nodes:
                logger.warning(
                    f"Reachability search {start} -> {target} exceeded {max_nodes} nodes; "
                    f"treating as reachable"
                )
                return True
            frontier.append(nxt)
    return False


def would_create_cycle(
    from_id: str,
    to_id: str,
    neighbors: Callable[[str], Iterable[str]],
    max_nodes: int = MAX_REACHABILITY_NODES,
) -> bool:
    """Adding from_id -> to_id closes a cycle iff to_id already reaches from_id."""
    return reaches(to_id, from_id, neighbors, max_nodes)
