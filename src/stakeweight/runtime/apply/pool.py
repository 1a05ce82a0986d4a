# src/stakeweight/runtime/apply/pool.py
from __future__ import annotations

from typing import Any, Dict, Optional, Set

from stakeweight.ledger.constants import MAX_LOCK_DURATION_SECONDS, MAX_UNSTAKE_COOLDOWN_SECONDS
from stakeweight.ledger.types import PoolRecord
from stakeweight.runtime.aggregate import distribute_rewards, pool_total_weight
from stakeweight.runtime.errors import StakingApplyError
from stakeweight.runtime.rebase import needs_rebase, rebase_pool
from stakeweight.runtime.tx_admission_types import REWARD, ApplyContext, InstructionEnvelope, reward_vault
from stakeweight.runtime.tx_schema import (
    DepositRewardsPayload,
    InitializePoolPayload,
    UpdatePoolSettingsPayload,
    parse_payload,
)

Json = Dict[str, Any]


def _as_str(v: Any) -> str:
    return str(v).strip() if isinstance(v, (str, int)) else ""


def _require_pool(ctx: ApplyContext, env: InstructionEnvelope) -> PoolRecord:
    if ctx.pool is None:
        raise StakingApplyError("invalid_state", "not_initialized", {"pool_id": env.pool_id})
    return ctx.pool


def require_authority(pool: PoolRecord, env: InstructionEnvelope) -> None:
    """Authority-gated instructions: the signer must be the pool's (unrenounced) authority."""
    if pool.renounced:
        raise StakingApplyError("forbidden", "authority_renounced", {"pool_id": pool.pool_id})
    if _as_str(env.signer) != pool.authority:
        raise StakingApplyError(
            "forbidden",
            "invalid_authority",
            {"pool_id": pool.pool_id, "signer": env.signer},
        )


def _apply_initialize_pool(ctx: ApplyContext, env: InstructionEnvelope) -> Json:
    if ctx.pool is not None:
        raise StakingApplyError("invalid_state", "already_initialized", {"pool_id": env.pool_id})
    if not _as_str(env.pool_id):
        raise StakingApplyError("invalid_payload", "missing_pool_id", None)
    if not _as_str(env.signer):
        raise StakingApplyError("invalid_payload", "missing_signer", None)

    p: InitializePoolPayload = parse_payload(env.instruction, env.payload)  # type: ignore[assignment]
    if p.tau_seconds <= 0:
        raise StakingApplyError("policy", "invalid_tau", {"tau_seconds": p.tau_seconds})

    ctx.pool = PoolRecord.new(pool_id=env.pool_id, authority=env.signer, tau_seconds=p.tau_seconds, now=ctx.now)
    return {"pool_id": env.pool_id, "authority": env.signer, "tau_seconds": p.tau_seconds, "base_time": ctx.now}


def _apply_update_pool_settings(ctx: ApplyContext, env: InstructionEnvelope) -> Json:
    pool = _require_pool(ctx, env)
    require_authority(pool, env)

    p: UpdatePoolSettingsPayload = parse_payload(env.instruction, env.payload)  # type: ignore[assignment]

    if p.lock_duration_seconds is not None and p.lock_duration_seconds > MAX_LOCK_DURATION_SECONDS:
        raise StakingApplyError(
            "policy",
            "setting_exceeds_maximum",
            {"field": "lock_duration_seconds", "max": MAX_LOCK_DURATION_SECONDS},
        )
    if p.unstake_cooldown_seconds is not None and p.unstake_cooldown_seconds > MAX_UNSTAKE_COOLDOWN_SECONDS:
        raise StakingApplyError(
            "policy",
            "setting_exceeds_maximum",
            {"field": "unstake_cooldown_seconds", "max": MAX_UNSTAKE_COOLDOWN_SECONDS},
        )

    changed: Json = {}
    if p.min_stake_amount is not None:
        pool.min_stake_amount = p.min_stake_amount
        changed["min_stake_amount"] = p.min_stake_amount
    if p.lock_duration_seconds is not None:
        pool.lock_duration_seconds = p.lock_duration_seconds
        changed["lock_duration_seconds"] = p.lock_duration_seconds
    if p.unstake_cooldown_seconds is not None:
        pool.unstake_cooldown_seconds = p.unstake_cooldown_seconds
        changed["unstake_cooldown_seconds"] = p.unstake_cooldown_seconds

    return {"pool_id": pool.pool_id, "updated": changed}


def _apply_deposit_rewards(ctx: ApplyContext, env: InstructionEnvelope) -> Json:
    """
    Deposit R into the reward vault and distribute it, together with any
    reward currency that reached the vault by other means since the last sync.
    Below the weight threshold the deposit is only transferred.
    """
    pool = _require_pool(ctx, env)
    p: DepositRewardsPayload = parse_payload(env.instruction, env.payload)  # type: ignore[assignment]

    if p.amount <= 0:
        raise StakingApplyError("policy", "zero_amount", {"instruction": env.instruction})
    if needs_rebase(pool):
        raise StakingApplyError("invalid_state", "pool_requires_sync", {"pool_id": pool.pool_id})

    balance_before = int(ctx.reward_balance)
    ctx.transfer(REWARD, env.signer, reward_vault(pool.pool_id), p.amount)

    unsynced = max(0, balance_before - pool.last_synced_balance)
    dist = distribute_rewards(pool, p.amount + unsynced, ctx.now)
    if dist["distributed"]:
        pool.last_synced_balance = balance_before + p.amount

    return {"pool_id": pool.pool_id, "deposited": p.amount, **dist}


def _apply_sync_rewards(ctx: ApplyContext, env: InstructionEnvelope) -> Json:
    pool = _require_pool(ctx, env)
    if needs_rebase(pool):
        raise StakingApplyError("invalid_state", "pool_requires_sync", {"pool_id": pool.pool_id})

    balance = int(ctx.reward_balance)
    new_rewards = balance - pool.last_synced_balance
    if new_rewards <= 0:
        return {"pool_id": pool.pool_id, "distributed": 0, "deferred": 0, "acc_delta": 0}

    dist = distribute_rewards(pool, new_rewards, ctx.now)
    if dist["distributed"]:
        pool.last_synced_balance = balance
    return {"pool_id": pool.pool_id, **dist}


def _apply_sync_pool(ctx: ApplyContext, env: InstructionEnvelope) -> Json:
    """Permissionless rebase of the pool's time origin to now."""
    pool = _require_pool(ctx, env)
    weight_before = pool_total_weight(pool, ctx.now)
    rebased = rebase_pool(pool, ctx.now)
    return {
        "pool_id": pool.pool_id,
        "rebased": rebased,
        "base_time": pool.base_time,
        "total_weight_before": weight_before,
        "total_weight_after": pool_total_weight(pool, ctx.now),
    }


POOL_TX_TYPES: Set[str] = {
    "INITIALIZE_POOL",
    "UPDATE_POOL_SETTINGS",
    "DEPOSIT_REWARDS",
    "SYNC_REWARDS",
    "SYNC_POOL",
}


def apply_pool(ctx: ApplyContext, env: InstructionEnvelope) -> Optional[Json]:
    """
    Returns:
      - dict: applied result
      - None: instruction not in the pool domain
    """
    t = _as_str(env.instruction).upper()
    if t not in POOL_TX_TYPES:
        return None

    if t == "INITIALIZE_POOL":
        return _apply_initialize_pool(ctx, env)

    if t == "UPDATE_POOL_SETTINGS":
        return _apply_update_pool_settings(ctx, env)

    if t == "DEPOSIT_REWARDS":
        return _apply_deposit_rewards(ctx, env)

    if t == "SYNC_REWARDS":
        return _apply_sync_rewards(ctx, env)

    if t == "SYNC_POOL":
        return _apply_sync_pool(ctx, env)

    return None


__all__ = ["POOL_TX_TYPES", "apply_pool", "require_authority"]
