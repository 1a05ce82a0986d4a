# src/stakeweight/runtime/apply/__init__.py
"""Domain-specific apply modules.

Each module implements the deterministic record transitions for a subset
of instructions and returns None for instructions it does not own.

NOTE: Keep this package import-safe (no imports of domain_dispatch).
"""

from __future__ import annotations

__all__ = [
    "pool",
    "stake",
    "recovery",
]
