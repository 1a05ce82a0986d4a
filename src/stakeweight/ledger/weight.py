# src/stakeweight/ledger/weight.py
from __future__ import annotations

"""Maturity-weighted stake.

A position of `amount` that started `age` seconds ago weighs

    amount * (1 - e^(-age/tau))

Positions are stored relative to the pool's base_time through a maturity
factor m = e^((start - base)/tau), which lets the pool track the sum of all
weights with a single aggregate (sum of amount * m).
"""

from stakeweight.ledger.constants import U128_MAX, WAD
from stakeweight.ledger.fixed_point import (
    checked_u128,
    exp_neg_time_ratio,
    wad_mul,
    wad_mul_u256,
)
from stakeweight.runtime.errors import math_overflow


def user_weighted_stake(
    amount: int,
    maturity_factor: int,
    current_time: int,
    base_time: int,
    tau_seconds: int,
) -> int:
    """WAD-scaled weight of a single position.

    Non-positive elapsed time is treated as age 0 (decay factor WAD). A decay
    above WAD (rounding in the first seconds of a position) clamps to 0.
    """
    if amount <= 0:
        return 0

    age = max(0, int(current_time) - int(base_time))
    decay = wad_mul(exp_neg_time_ratio(age, tau_seconds), maturity_factor)
    if decay >= WAD:
        return 0
    return wad_mul(checked_u128(amount * WAD, "weight"), WAD - decay)


def weight_for_age(amount: int, age_seconds: int, tau_seconds: int) -> int:
    """amount * (1 - e^(-age/tau)) for a position that started at the origin."""
    return user_weighted_stake(amount, WAD, age_seconds, 0, tau_seconds)


def total_weighted_stake(
    total_staked: int,
    sum_stake_exp: int,
    current_time: int,
    base_time: int,
    tau_seconds: int,
) -> int:
    """Pool-level weight: total_staked * WAD - e^(-age/tau) * sum_stake_exp / WAD.

    Computed on the wide type. Negative results from rounding drift clamp to 0.
    """
    if total_staked <= 0:
        return 0

    age = max(0, int(current_time) - int(base_time))
    decay_term = wad_mul_u256(sum_stake_exp, exp_neg_time_ratio(age, tau_seconds))
    weighted = total_staked * WAD - decay_term
    if weighted <= 0:
        return 0
    if weighted > U128_MAX:
        raise math_overflow("total_weighted_stake")
    return weighted
