# src/actionflow/runtime/strategies/__init__.py
"""Per-kind action strategies.

Each module implements apply / compensate (and the matching broadcasts) for a
family of action kinds. Strategies only touch domain tables through the
transactional scope the orchestrator hands them.

NOTE: Keep this package import-safe (no imports of the orchestrator).
"""

from __future__ import annotations

__all__ = [
    "base",
    "staking",
    "commit",
]
