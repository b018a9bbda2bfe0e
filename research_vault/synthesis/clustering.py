"""Single-link clustering of documents by tag similarity."""

import os
from typing import Iterable

from research_vault.knowledge.schemas import KnowledgeDocument
from research_vault.knowledge.similarity import jaccard

CLUSTER_THRESHOLD = float(os.environ.get("VAULT_CLUSTER_THRESHOLD", "0.4"))
MIN_CLUSTER_SIZE = 2


def cluster_documents(
    docs: Iterable[KnowledgeDocument],
    threshold: float = CLUSTER_THRESHOLD,
    min_size: int = MIN_CLUSTER_SIZE,
) -> list[list[KnowledgeDocument]]:
    """Connected components of the graph "tag Jaccard >= threshold".

    Each cluster is ordered by modified_at descending (ties by id);
    clusters are ordered by their first member.
    """
    docs = list(docs)
    parent = list(range(len(docs)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for i in range(len(docs)):
        for j in range(i + 1, len(docs)):
            if jaccard(docs[i].tags, docs[j].tags) >= threshold:
                root_i, root_j = find(i), find(j)
                if root_i != root_j:
                    parent[root_j] = root_i

    groups: dict[int, list[KnowledgeDocument]] = {}
    for i, doc in enumerate(docs):
        groups.setdefault(find(i), []).append(doc)

    clusters = []
    for members in groups.values():
        if len(members) < min_size:
            continue
        members.sort(key=lambda d: (-d.modified_at.timestamp(), d.id))
        clusters.append(members)
    clusters.sort(key=lambda c: (-c[0].modified_at.timestamp(), c[0].id))
    return clusters
