from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

Json = Dict[str, Any]


@dataclass
class ApplyError(Exception):
    """Canonical error type for instruction apply and dispatch failures.

    code groups the failure (math, policy, invalid_state, bounds, forbidden,
    not_found, invalid_payload); reason names the exact condition so callers
    can decide whether to remediate and retry.
    """

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"

    def to_json(self) -> Json:
        return {"code": self.code, "reason": self.reason, "details": self.details}


@dataclass
class MathError(ApplyError):
    """Fixed-point arithmetic failure (overflow, underflow, invalid time constant)."""

    code: str
    reason: str
    details: Optional[Json] = None


@dataclass
class StakingApplyError(ApplyError):
    """
    Staking domain rejections. Raised before any record mutation is persisted,
    so a rejected instruction leaves pool and stake records untouched.
    """

    code: str
    reason: str
    details: Optional[Json] = None


def math_overflow(op: str) -> MathError:
    return MathError("math", "math_overflow", {"op": op})


def math_underflow(op: str) -> MathError:
    return MathError("math", "math_underflow", {"op": op})
