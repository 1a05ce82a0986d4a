# src/stakeweight/runtime/state_invariants.py
from __future__ import annotations

"""Record invariants checked after every applied instruction.

The executor runs these on the working copies before anything is written.
A violation means a transition produced a record the accounting cannot
represent; the instruction is rejected and nothing is persisted.
"""

from typing import Any, Dict, Optional

from stakeweight.ledger.constants import U64_MAX, U128_MAX, U256_MAX
from stakeweight.ledger.types import PoolRecord, StakeRecord
from stakeweight.runtime.errors import ApplyError

Json = Dict[str, Any]

_POOL_BOUNDS = {
    "total_staked": U128_MAX,
    "sum_stake_exp": U256_MAX,
    "acc_reward_per_weighted_share": U128_MAX,
    "last_synced_balance": U64_MAX,
    "total_reward_debt": U128_MAX,
    "total_residual_unpaid": U64_MAX,
    "min_stake_amount": U64_MAX,
    "lock_duration_seconds": U64_MAX,
    "unstake_cooldown_seconds": U64_MAX,
}

_STAKE_BOUNDS = {
    "amount": U64_MAX,
    "maturity_factor": U128_MAX,
    "reward_debt": U128_MAX,
    "unstake_request_amount": U64_MAX,
    "total_rewards_claimed": U64_MAX,
    "carried_reward": U128_MAX,
}


def _violation(record: str, field: str, value: Any) -> ApplyError:
    return ApplyError("invalid_state", "invariant_violation", {"record": record, "field": field, "value": value})


def _check_bounds(record: str, obj: Any, bounds: Dict[str, int]) -> None:
    for field, upper in bounds.items():
        v = getattr(obj, field)
        if not isinstance(v, int) or isinstance(v, bool) or v < 0 or v > upper:
            raise _violation(record, field, v)


def check_pool(pool: PoolRecord, previous: Optional[PoolRecord] = None) -> None:
    _check_bounds("pool", pool, _POOL_BOUNDS)
    if pool.tau_seconds <= 0:
        raise _violation("pool", "tau_seconds", pool.tau_seconds)
    if previous is not None:
        if pool.acc_reward_per_weighted_share < previous.acc_reward_per_weighted_share:
            raise _violation("pool", "acc_reward_per_weighted_share", pool.acc_reward_per_weighted_share)
        if pool.base_time < previous.base_time:
            raise _violation("pool", "base_time", pool.base_time)


def check_stake(stake: StakeRecord, pool: Optional[PoolRecord] = None) -> None:
    _check_bounds("stake", stake, _STAKE_BOUNDS)
    if stake.unstake_request_amount > stake.amount:
        raise _violation("stake", "unstake_request_amount", stake.unstake_request_amount)
    if pool is not None:
        if stake.pool_id != pool.pool_id:
            raise _violation("stake", "pool_id", stake.pool_id)
        if stake.amount > pool.total_staked:
            raise _violation("stake", "amount", stake.amount)


__all__ = ["check_pool", "check_stake"]
