"""stakeweight.ledger.types

Pool and stake records.

Both records are plain mutable dataclasses with a stable JSON shape. Raw
persisted dicts go through ledger.migrations before from_dict(), so
from_dict() is strict: a missing or non-integer field is a schema error.
"""

from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict

from stakeweight.ledger.constants import WAD
from stakeweight.ledger.migrations import CURRENT_POOL_VERSION, CURRENT_STAKE_VERSION

Json = Dict[str, Any]


def _coerce_int(v: Any, *, field: str, record: str) -> int:
    try:
        # bool is an int subclass; disallow it explicitly
        if isinstance(v, bool):
            raise ValueError("bool is not a valid int")
        return int(v)
    except Exception as e:
        raise ValueError(f"{record} schema error: field '{field}' must be int-coercible (got {type(v).__name__})") from e


def _coerce_str(v: Any, *, field: str, record: str) -> str:
    if v is None:
        return ""
    if not isinstance(v, (str, int)) or isinstance(v, bool):
        raise ValueError(f"{record} schema error: field '{field}' must be a string (got {type(v).__name__})")
    return str(v)


def _from_dict(cls: Any, d: Any, record: str) -> Any:
    if not isinstance(d, dict):
        raise ValueError(f"{record} schema error: expected dict (got {type(d).__name__})")
    kwargs: Json = {}
    for f in fields(cls):
        if f.name not in d:
            raise ValueError(f"{record} schema error: missing field '{f.name}'")
        if f.type in ("str", str):
            kwargs[f.name] = _coerce_str(d[f.name], field=f.name, record=record)
        else:
            kwargs[f.name] = _coerce_int(d[f.name], field=f.name, record=record)
    return cls(**kwargs)


@dataclass
class PoolRecord:
    pool_id: str
    # Empty string means the authority was renounced.
    authority: str

    total_staked: int
    # Sum of amount_i * maturity_factor_i relative to base_time (WAD-scaled, U256 range).
    sum_stake_exp: int
    tau_seconds: int
    base_time: int
    initial_base_time: int

    acc_reward_per_weighted_share: int
    last_update_time: int
    # Reward-currency balance already accounted for by the accumulator.
    last_synced_balance: int
    total_reward_debt: int
    total_residual_unpaid: int

    min_stake_amount: int = 0
    lock_duration_seconds: int = 0
    unstake_cooldown_seconds: int = 0

    record_version: int = CURRENT_POOL_VERSION

    @classmethod
    def new(cls, *, pool_id: str, authority: str, tau_seconds: int, now: int) -> "PoolRecord":
        return cls(
            pool_id=pool_id,
            authority=authority,
            total_staked=0,
            sum_stake_exp=0,
            tau_seconds=int(tau_seconds),
            base_time=int(now),
            initial_base_time=int(now),
            acc_reward_per_weighted_share=0,
            last_update_time=int(now),
            last_synced_balance=0,
            total_reward_debt=0,
            total_residual_unpaid=0,
        )

    @property
    def renounced(self) -> bool:
        return not self.authority

    def to_dict(self) -> Json:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Any) -> "PoolRecord":
        return _from_dict(cls, d, "PoolRecord")

    def copy(self) -> "PoolRecord":
        return copy.copy(self)


@dataclass
class StakeRecord:
    pool_id: str
    owner: str

    amount: int
    # e^((start - base)/tau), WAD-scaled, calibrated to base_time_snapshot.
    maturity_factor: int
    # Pool base_time the maturity factor is relative to. 0 on legacy records:
    # relative to the pool's initial_base_time.
    base_time_snapshot: int
    # WAD-scaled. While amount == 0 this is the residual still owed.
    reward_debt: int

    stake_time: int
    last_stake_time: int
    unstake_request_amount: int = 0
    unstake_request_time: int = 0
    total_rewards_claimed: int = 0
    # WAD-scaled reward owed to an active position beyond what reward_debt can
    # express (a partial exit that the vault could not pay out).
    carried_reward: int = 0

    record_version: int = CURRENT_STAKE_VERSION

    @classmethod
    def new(cls, *, pool_id: str, owner: str, now: int, base_time: int) -> "StakeRecord":
        return cls(
            pool_id=pool_id,
            owner=owner,
            amount=0,
            maturity_factor=WAD,
            base_time_snapshot=int(base_time),
            reward_debt=0,
            stake_time=int(now),
            last_stake_time=int(now),
        )

    @property
    def has_pending_unstake_request(self) -> bool:
        return self.unstake_request_amount > 0

    @property
    def residual_units(self) -> int:
        """Whole reward-currency units owed outside the accumulator."""
        if self.amount > 0:
            return self.carried_reward // WAD
        return self.reward_debt // WAD

    def to_dict(self) -> Json:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Any) -> "StakeRecord":
        return _from_dict(cls, d, "StakeRecord")

    def copy(self) -> "StakeRecord":
        return copy.copy(self)
