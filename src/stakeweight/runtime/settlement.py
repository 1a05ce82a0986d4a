# src/stakeweight/runtime/settlement.py
from __future__ import annotations

"""Reward settlement for a single position.

reward_debt is stored as the WAD-scaled entitlement already accounted for,
expressed at full (matured) weight. The per-share snapshot it implies is

    snapshot = reward_debt / (amount * WAD)

and the pending reward since then is weight_now * (acc - snapshot). Whatever
the reward vault cannot cover right now is carried forward (unpaid) so the
total paid does not depend on how often a participant settles.
"""

from dataclasses import dataclass

from stakeweight.ledger.constants import U64_MAX, WAD
from stakeweight.ledger.fixed_point import checked_u128, wad_div, wad_mul
from stakeweight.ledger.types import PoolRecord, StakeRecord
from stakeweight.ledger.weight import user_weighted_stake
from stakeweight.runtime.errors import math_overflow
from stakeweight.runtime.tx_admission_types import REWARD, ApplyContext, reward_vault


@dataclass(frozen=True)
class Settlement:
    pending: int  # WAD-scaled entitlement at current weight
    paid: int  # whole reward-currency units transferred
    unpaid: int  # WAD-scaled remainder carried forward, sub-unit dust included


def max_entitlement(amount: int, acc: int) -> int:
    """Entitlement of `amount` at full weight: amount * WAD * acc / WAD."""
    return wad_mul(checked_u128(int(amount) * WAD, "amount_wad"), acc)


def stake_weight(pool: PoolRecord, stake: StakeRecord, now: int) -> int:
    return user_weighted_stake(
        stake.amount,
        stake.maturity_factor,
        now,
        pool.base_time,
        pool.tau_seconds,
    )


def pending_rewards(pool: PoolRecord, stake: StakeRecord, now: int) -> int:
    """WAD-scaled reward pending for an active position (0 when amount == 0)."""
    if stake.amount <= 0:
        return 0
    weight = stake_weight(pool, stake, now)
    if weight == 0:
        return 0
    snapshot = wad_div(stake.reward_debt, checked_u128(stake.amount * WAD, "amount_wad"))
    delta = max(0, pool.acc_reward_per_weighted_share - snapshot)
    return wad_mul(weight, delta)


def pay_reward(ctx: ApplyContext, pool: PoolRecord, stake: StakeRecord, units: int) -> int:
    """Queue a reward payout to the stake owner, capped by what the vault holds."""
    units = min(int(units), ctx.available_rewards())
    if units <= 0:
        return 0
    ctx.transfer(REWARD, reward_vault(pool.pool_id), stake.owner, units)
    pool.last_synced_balance = max(0, pool.last_synced_balance - units)
    stake.total_rewards_claimed += units
    return units


def settle_position(ctx: ApplyContext, pool: PoolRecord, stake: StakeRecord) -> Settlement:
    """Pay the pending reward of an active position and compute the carry."""
    pending = pending_rewards(pool, stake, ctx.now)
    paid = pay_reward(ctx, pool, stake, pending // WAD)
    return Settlement(pending=pending, paid=paid, unpaid=pending - paid * WAD)


def stranded_rewards(pool: PoolRecord, stake: StakeRecord, pending: int) -> int:
    """Reward allocated to the position at full weight but not earned at its actual weight."""
    max_pending = max(0, max_entitlement(stake.amount, pool.acc_reward_per_weighted_share) - stake.reward_debt)
    return max(0, max_pending - pending)


def track_residual(pool: PoolRecord, before: int, after: int) -> None:
    """Move pool.total_residual_unpaid by the whole units between two WAD-scaled owed amounts."""
    units = after // WAD - before // WAD
    if pool.total_residual_unpaid + units > U64_MAX:
        raise math_overflow("total_residual_unpaid")
    pool.total_residual_unpaid = max(0, pool.total_residual_unpaid + units)


def reset_reward_debt(pool: PoolRecord, stake: StakeRecord, unpaid: int) -> int:
    """Re-anchor an active position at the current accumulator, keeping `unpaid` claimable.

    reward_debt cannot go below zero, so after a partial exit the smaller
    position may not be able to express all of `unpaid`. The excess moves to
    carried_reward (and the pool's residual total) and is returned.
    """
    old_debt = stake.reward_debt
    ceiling = max_entitlement(stake.amount, pool.acc_reward_per_weighted_share)
    excess = max(0, int(unpaid) - ceiling)
    stake.reward_debt = ceiling - (int(unpaid) - excess)
    pool.total_reward_debt = checked_u128(
        max(0, pool.total_reward_debt - old_debt) + stake.reward_debt, "total_reward_debt"
    )
    if excess > 0:
        carried = checked_u128(stake.carried_reward + excess, "carried_reward")
        track_residual(pool, stake.carried_reward, carried)
        stake.carried_reward = carried
    return excess
