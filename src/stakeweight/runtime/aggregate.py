# src/stakeweight/runtime/aggregate.py
from __future__ import annotations

from typing import Any, Dict

from stakeweight.ledger.constants import MIN_WEIGHT_THRESHOLD, U64_MAX, WAD
from stakeweight.ledger.fixed_point import checked_u128, checked_u256, wad_div, wad_mul_u256
from stakeweight.ledger.types import PoolRecord
from stakeweight.ledger.weight import total_weighted_stake
from stakeweight.runtime.errors import math_overflow, math_underflow

Json = Dict[str, Any]


def stake_contribution(amount: int, maturity_factor: int) -> int:
    """amount * maturity_factor, WAD-scaled, on the wide type."""
    return wad_mul_u256(int(amount) * WAD, int(maturity_factor))


def add_contribution(pool: PoolRecord, amount: int, maturity_factor: int) -> int:
    c = stake_contribution(amount, maturity_factor)
    pool.sum_stake_exp = checked_u256(pool.sum_stake_exp + c, "sum_stake_exp")
    pool.total_staked = checked_u128(pool.total_staked + int(amount), "total_staked")
    return c


def remove_contribution(pool: PoolRecord, amount: int, maturity_factor: int) -> int:
    """Saturates sum_stake_exp at 0 to absorb rounding drift; total_staked must not underflow."""
    c = stake_contribution(amount, maturity_factor)
    pool.sum_stake_exp = max(0, pool.sum_stake_exp - c)
    if int(amount) > pool.total_staked:
        raise math_underflow("total_staked")
    pool.total_staked -= int(amount)
    return c


def pool_total_weight(pool: PoolRecord, now: int) -> int:
    return total_weighted_stake(
        pool.total_staked,
        pool.sum_stake_exp,
        now,
        pool.base_time,
        pool.tau_seconds,
    )


def distribute_rewards(pool: PoolRecord, units: int, now: int) -> Json:
    """Fold `units` of reward currency into the accumulator, or defer.

    Below MIN_WEIGHT_THRESHOLD nothing is distributed and the caller must
    leave last_synced_balance alone, so a later deposit or sync picks the
    amount up again.
    """
    units = int(units)
    if units > U64_MAX:
        raise math_overflow("reward_units")

    total_weight = pool_total_weight(pool, now)
    if units <= 0 or total_weight < MIN_WEIGHT_THRESHOLD:
        return {"distributed": 0, "deferred": max(0, units), "total_weight": total_weight, "acc_delta": 0}

    delta = wad_div(units * WAD, total_weight)
    pool.acc_reward_per_weighted_share = checked_u128(
        pool.acc_reward_per_weighted_share + delta, "acc_reward_per_weighted_share"
    )
    pool.last_update_time = int(now)
    return {"distributed": units, "deferred": 0, "total_weight": total_weight, "acc_delta": delta}
