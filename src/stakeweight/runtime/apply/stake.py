# src/stakeweight/runtime/apply/stake.py
from __future__ import annotations

"""Participant lifecycle: stake, top-up, withdraw, cooldown, claim, close.

States per participant record:

    Unstaked -> Active -> CooldownPending -> Active | Unstaked

Every path that changes `amount` settles pending rewards first, so the
reward debt can be re-anchored at the current accumulator.
"""

from typing import Any, Dict, Optional, Set, Tuple

from stakeweight.ledger.constants import MAX_STAKE_AGE_RATIO, U64_MAX, WAD
from stakeweight.ledger.fixed_point import checked_u128, exp_time_ratio, time_ratio_wad
from stakeweight.ledger.types import PoolRecord, StakeRecord
from stakeweight.runtime.aggregate import add_contribution, remove_contribution, stake_contribution
from stakeweight.runtime.errors import StakingApplyError, math_overflow
from stakeweight.runtime.rebase import needs_rebase, sync_stake_to_pool
from stakeweight.runtime.settlement import (
    max_entitlement,
    pay_reward,
    pending_rewards,
    reset_reward_debt,
    settle_position,
    stranded_rewards,
    track_residual,
)
from stakeweight.runtime.tx_admission_types import (
    ASSET,
    ApplyContext,
    InstructionEnvelope,
    asset_vault,
)
from stakeweight.runtime.tx_schema import parse_payload

Json = Dict[str, Any]


def _as_str(v: Any) -> str:
    return str(v).strip() if isinstance(v, (str, int)) else ""


def _require_pool(ctx: ApplyContext, env: InstructionEnvelope) -> PoolRecord:
    if ctx.pool is None:
        raise StakingApplyError("invalid_state", "not_initialized", {"pool_id": env.pool_id})
    return ctx.pool


def _check_record(pool: PoolRecord, stake: StakeRecord, owner: str) -> None:
    if stake.owner != owner:
        raise StakingApplyError("invalid_state", "invalid_owner", {"owner": stake.owner, "expected": owner})
    if stake.pool_id != pool.pool_id:
        raise StakingApplyError("invalid_state", "invalid_pool", {"pool_id": stake.pool_id, "expected": pool.pool_id})


def _load_position(ctx: ApplyContext, env: InstructionEnvelope) -> Tuple[PoolRecord, StakeRecord]:
    """Existing pool + stake record for the signer, rescaled to the pool's current origin."""
    pool = _require_pool(ctx, env)
    owner = _as_str(env.stake_owner)
    stake = ctx.stake
    if stake is None:
        raise StakingApplyError("invalid_state", "not_initialized", {"pool_id": pool.pool_id, "owner": owner})
    _check_record(pool, stake, owner)
    sync_stake_to_pool(stake, pool)
    return pool, stake


def _require_no_rebase(pool: PoolRecord) -> None:
    if needs_rebase(pool):
        raise StakingApplyError("invalid_state", "pool_requires_sync", {"pool_id": pool.pool_id})


def _require_amount(env: InstructionEnvelope) -> int:
    p = parse_payload(env.instruction, env.payload)
    amount = int(getattr(p, "amount", 0))
    if amount <= 0:
        raise StakingApplyError("policy", "zero_amount", {"instruction": env.instruction})
    return amount


def _check_lock(pool: PoolRecord, stake: StakeRecord, now: int) -> None:
    if pool.lock_duration_seconds <= 0:
        return
    unlock_time = stake.last_stake_time + pool.lock_duration_seconds
    if now < unlock_time:
        raise StakingApplyError("policy", "stake_locked", {"unlock_time": unlock_time, "now": now})


# ---------------------------------------------------------------------------
# Stake / top-up
# ---------------------------------------------------------------------------


def _stake(ctx: ApplyContext, env: InstructionEnvelope, *, owner: str, payer: str) -> Json:
    pool = _require_pool(ctx, env)
    amount = _require_amount(env)
    if not owner:
        raise StakingApplyError("invalid_payload", "missing_owner", {"instruction": env.instruction})
    _require_no_rebase(pool)

    elapsed = max(0, ctx.now - pool.base_time)
    if time_ratio_wad(elapsed, pool.tau_seconds) > MAX_STAKE_AGE_RATIO:
        # e^-(elapsed/tau) is too coarse to cancel the new maturity factor; rebase first.
        raise StakingApplyError("invalid_state", "pool_requires_sync", {"pool_id": pool.pool_id, "elapsed": elapsed})
    new_factor = exp_time_ratio(elapsed, pool.tau_seconds)

    stake = ctx.stake
    if stake is not None:
        _check_record(pool, stake, owner)
        if stake.has_pending_unstake_request:
            raise StakingApplyError("policy", "pending_unstake_request_exists", {"owner": owner})
        sync_stake_to_pool(stake, pool)

    # Asset moves first so a failing deposit never follows a reward payout.
    ctx.transfer(ASSET, payer, asset_vault(pool.pool_id), amount)

    if stake is None or stake.amount == 0:
        return _open_position(ctx, pool, stake, owner=owner, amount=amount, factor=new_factor)
    return _top_up_position(ctx, pool, stake, amount=amount, factor=new_factor)


def _open_position(
    ctx: ApplyContext,
    pool: PoolRecord,
    stake: Optional[StakeRecord],
    *,
    owner: str,
    amount: int,
    factor: int,
) -> Json:
    if pool.min_stake_amount > 0 and amount < pool.min_stake_amount:
        raise StakingApplyError("policy", "below_minimum_stake", {"amount": amount, "min": pool.min_stake_amount})

    residual_paid = 0
    if stake is None:
        stake = StakeRecord.new(pool_id=pool.pool_id, owner=owner, now=ctx.now, base_time=pool.base_time)
        ctx.stake = stake
    else:
        if stake.reward_debt > 0:
            # Re-entry over a residual: it must be paid out before reward_debt
            # goes back to meaning "entitlement already accounted for".
            owed = stake.reward_debt // WAD
            residual_paid = pay_reward(ctx, pool, stake, owed)
            if residual_paid < owed:
                raise StakingApplyError(
                    "policy",
                    "residual_rewards_unclaimed",
                    {"owed": owed, "available": residual_paid},
                )
            pool.total_residual_unpaid = max(0, pool.total_residual_unpaid - owed)
            stake.reward_debt = 0
        stake.stake_time = ctx.now

    stake.amount = amount
    stake.maturity_factor = factor
    stake.base_time_snapshot = pool.base_time
    stake.last_stake_time = ctx.now
    stake.unstake_request_amount = 0
    stake.unstake_request_time = 0

    # Full entitlement up to now counts as already accounted for: no
    # retroactive share of earlier rewards.
    stake.reward_debt = max_entitlement(amount, pool.acc_reward_per_weighted_share)
    pool.total_reward_debt = checked_u128(pool.total_reward_debt + stake.reward_debt, "total_reward_debt")
    add_contribution(pool, amount, factor)

    return {
        "owner": stake.owner,
        "amount": stake.amount,
        "staked": amount,
        "maturity_factor": stake.maturity_factor,
        "rewards_paid": residual_paid,
        "carried_forward": 0,
        "stranded_returned": 0,
    }


def _top_up_position(ctx: ApplyContext, pool: PoolRecord, stake: StakeRecord, *, amount: int, factor: int) -> Json:
    new_total = stake.amount + amount
    if new_total > U64_MAX:
        raise math_overflow("stake_amount")
    if pool.min_stake_amount > 0 and new_total < pool.min_stake_amount:
        raise StakingApplyError("policy", "below_minimum_stake", {"amount": new_total, "min": pool.min_stake_amount})

    s = settle_position(ctx, pool, stake)

    stranded_units = stranded_rewards(pool, stake, s.pending) // WAD
    if stranded_units > 0:
        pool.last_synced_balance = max(0, pool.last_synced_balance - stranded_units)

    old_contribution = stake_contribution(stake.amount, stake.maturity_factor)
    new_contribution = add_contribution(pool, amount, factor)

    stake.maturity_factor = checked_u128((old_contribution + new_contribution) // new_total, "maturity_factor")
    stake.amount = new_total
    stake.last_stake_time = ctx.now
    reset_reward_debt(pool, stake, s.unpaid)

    return {
        "owner": stake.owner,
        "amount": stake.amount,
        "staked": amount,
        "maturity_factor": stake.maturity_factor,
        "rewards_paid": s.paid,
        "carried_forward": s.unpaid,
        "stranded_returned": stranded_units,
    }


def _apply_stake(ctx: ApplyContext, env: InstructionEnvelope) -> Json:
    signer = _as_str(env.signer)
    return _stake(ctx, env, owner=signer, payer=signer)


def _apply_stake_on_behalf(ctx: ApplyContext, env: InstructionEnvelope) -> Json:
    """The signer pays; the beneficiary owns the position and receives its rewards."""
    return _stake(ctx, env, owner=_as_str(env.stake_owner), payer=_as_str(env.signer))


# ---------------------------------------------------------------------------
# Withdrawal
# ---------------------------------------------------------------------------


def _withdraw(ctx: ApplyContext, pool: PoolRecord, stake: StakeRecord, amount: int) -> Json:
    s = settle_position(ctx, pool, stake)

    remove_contribution(pool, amount, stake.maturity_factor)
    old_debt = stake.reward_debt
    stake.amount -= amount

    if stake.amount > 0:
        reset_reward_debt(pool, stake, s.unpaid)
    else:
        # reward_debt now holds everything still owed to the emptied position.
        carried = stake.carried_reward
        stake.reward_debt = checked_u128(s.unpaid + carried, "reward_debt")
        stake.carried_reward = 0
        pool.total_reward_debt = max(0, pool.total_reward_debt - old_debt)
        track_residual(pool, carried, stake.reward_debt)

    ctx.transfer(ASSET, asset_vault(pool.pool_id), stake.owner, amount)

    return {
        "owner": stake.owner,
        "unstaked": amount,
        "amount": stake.amount,
        "rewards_paid": s.paid,
        "carried_forward": s.unpaid,
    }


def _apply_unstake(ctx: ApplyContext, env: InstructionEnvelope) -> Json:
    pool, stake = _load_position(ctx, env)
    amount = _require_amount(env)
    if amount > stake.amount:
        raise StakingApplyError("policy", "insufficient_stake_balance", {"amount": amount, "staked": stake.amount})
    _require_no_rebase(pool)
    if pool.unstake_cooldown_seconds > 0:
        raise StakingApplyError(
            "policy",
            "cooldown_required",
            {"unstake_cooldown_seconds": pool.unstake_cooldown_seconds},
        )
    if stake.has_pending_unstake_request:
        raise StakingApplyError("policy", "pending_unstake_request_exists", {"owner": stake.owner})
    _check_lock(pool, stake, ctx.now)

    return _withdraw(ctx, pool, stake, amount)


def _apply_request_unstake(ctx: ApplyContext, env: InstructionEnvelope) -> Json:
    pool, stake = _load_position(ctx, env)
    amount = _require_amount(env)
    if pool.unstake_cooldown_seconds <= 0:
        raise StakingApplyError("policy", "cooldown_not_configured", {"pool_id": pool.pool_id})
    if amount > stake.amount:
        raise StakingApplyError("policy", "insufficient_stake_balance", {"amount": amount, "staked": stake.amount})
    if stake.has_pending_unstake_request:
        raise StakingApplyError("policy", "pending_unstake_request_exists", {"owner": stake.owner})
    _check_lock(pool, stake, ctx.now)

    stake.unstake_request_amount = amount
    stake.unstake_request_time = ctx.now
    return {
        "owner": stake.owner,
        "requested": amount,
        "available_at": ctx.now + pool.unstake_cooldown_seconds,
    }


def _apply_complete_unstake(ctx: ApplyContext, env: InstructionEnvelope) -> Json:
    pool, stake = _load_position(ctx, env)
    if not stake.has_pending_unstake_request:
        raise StakingApplyError("policy", "no_pending_unstake_request", {"owner": stake.owner})
    available_at = stake.unstake_request_time + pool.unstake_cooldown_seconds
    if ctx.now < available_at:
        raise StakingApplyError("policy", "cooldown_not_elapsed", {"available_at": available_at, "now": ctx.now})
    _require_no_rebase(pool)

    amount = min(stake.unstake_request_amount, stake.amount)
    stake.unstake_request_amount = 0
    stake.unstake_request_time = 0
    if amount <= 0:
        raise StakingApplyError("policy", "insufficient_stake_balance", {"amount": amount, "staked": stake.amount})
    return _withdraw(ctx, pool, stake, amount)


def _apply_cancel_unstake_request(ctx: ApplyContext, env: InstructionEnvelope) -> Json:
    _pool, stake = _load_position(ctx, env)
    if not stake.has_pending_unstake_request:
        raise StakingApplyError("policy", "no_pending_unstake_request", {"owner": stake.owner})
    cancelled = stake.unstake_request_amount
    stake.unstake_request_amount = 0
    stake.unstake_request_time = 0
    return {"owner": stake.owner, "cancelled": cancelled}


# ---------------------------------------------------------------------------
# Claim / close
# ---------------------------------------------------------------------------


def _apply_claim_rewards(ctx: ApplyContext, env: InstructionEnvelope) -> Json:
    """
    Active positions are paid their carried reward, then floor(pending)
    (capped by the vault); reward_debt advances by exactly the pending part
    paid, so immature reward stays claimable. Emptied positions pay down
    their residual.
    """
    pool, stake = _load_position(ctx, env)

    if stake.amount == 0:
        # Residual payouts touch neither the aggregate nor the accumulator.
        owed = stake.reward_debt // WAD
        paid = pay_reward(ctx, pool, stake, owed)
        stake.reward_debt -= paid * WAD
        pool.total_residual_unpaid = max(0, pool.total_residual_unpaid - paid)
        return {"owner": stake.owner, "residual": True, "rewards_paid": paid, "remaining": stake.reward_debt}

    _require_no_rebase(pool)

    carried_units = stake.carried_reward // WAD
    pending = pending_rewards(pool, stake, ctx.now)
    paid = pay_reward(ctx, pool, stake, carried_units + pending // WAD)

    from_carried = min(paid, carried_units)
    if from_carried > 0:
        stake.carried_reward -= from_carried * WAD
        pool.total_residual_unpaid = max(0, pool.total_residual_unpaid - from_carried)

    from_pending = paid - from_carried
    if from_pending > 0:
        stake.reward_debt = checked_u128(stake.reward_debt + from_pending * WAD, "reward_debt")
        pool.total_reward_debt = checked_u128(pool.total_reward_debt + from_pending * WAD, "total_reward_debt")
    return {
        "owner": stake.owner,
        "residual": False,
        "rewards_paid": paid,
        "remaining": pending - from_pending * WAD + stake.carried_reward,
    }


def _apply_close_stake_account(ctx: ApplyContext, env: InstructionEnvelope) -> Json:
    _pool, stake = _load_position(ctx, env)
    if stake.amount > 0:
        raise StakingApplyError("invalid_state", "account_not_empty", {"amount": stake.amount})
    if stake.has_pending_unstake_request:
        raise StakingApplyError("policy", "pending_unstake_request_exists", {"owner": stake.owner})
    if stake.reward_debt >= WAD:
        raise StakingApplyError("invalid_state", "account_not_empty", {"residual_units": stake.reward_debt // WAD})

    # Sub-unit dust is forgiven.
    ctx.delete_stake = True
    return {"owner": stake.owner, "closed": True, "dust_forgiven": stake.reward_debt}


STAKE_TX_TYPES: Set[str] = {
    "STAKE",
    "STAKE_ON_BEHALF",
    "UNSTAKE",
    "REQUEST_UNSTAKE",
    "COMPLETE_UNSTAKE",
    "CANCEL_UNSTAKE_REQUEST",
    "CLAIM_REWARDS",
    "CLOSE_STAKE_ACCOUNT",
}


def apply_stake(ctx: ApplyContext, env: InstructionEnvelope) -> Optional[Json]:
    """
    Returns:
      - dict: applied result
      - None: instruction not in the participant domain
    """
    t = _as_str(env.instruction).upper()
    if t not in STAKE_TX_TYPES:
        return None

    if t == "STAKE":
        return _apply_stake(ctx, env)

    if t == "STAKE_ON_BEHALF":
        return _apply_stake_on_behalf(ctx, env)

    if t == "UNSTAKE":
        return _apply_unstake(ctx, env)

    if t == "REQUEST_UNSTAKE":
        return _apply_request_unstake(ctx, env)

    if t == "COMPLETE_UNSTAKE":
        return _apply_complete_unstake(ctx, env)

    if t == "CANCEL_UNSTAKE_REQUEST":
        return _apply_cancel_unstake_request(ctx, env)

    if t == "CLAIM_REWARDS":
        return _apply_claim_rewards(ctx, env)

    if t == "CLOSE_STAKE_ACCOUNT":
        return _apply_close_stake_account(ctx, env)

    return None


__all__ = ["STAKE_TX_TYPES", "apply_stake"]
