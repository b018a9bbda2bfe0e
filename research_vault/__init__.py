"""Research Vault - deduplicating research dispatch over a versioned knowledge store.

This package provides:
- Capability profiles for research workers (least-privilege routing)
- A versioned, append-only knowledge store with a cross-link graph
- A scheduler that reuses fresh findings before dispatching new work
- A bounded worker pool with deadlines and cooperative cancellation
- A synthesis engine that merges findings and surfaces contradictions
"""

__version__ = "0.1.0"
