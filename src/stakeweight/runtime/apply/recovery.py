# src/stakeweight/runtime/apply/recovery.py
from __future__ import annotations

from typing import Any, Dict, Optional, Set

from stakeweight.ledger.constants import WAD
from stakeweight.ledger.types import PoolRecord
from stakeweight.runtime.apply.pool import require_authority
from stakeweight.runtime.errors import StakingApplyError
from stakeweight.runtime.settlement import max_entitlement
from stakeweight.runtime.tx_admission_types import ApplyContext, InstructionEnvelope
from stakeweight.runtime.tx_schema import FixTotalRewardDebtPayload, parse_payload

Json = Dict[str, Any]


def _as_str(v: Any) -> str:
    return str(v).strip() if isinstance(v, (str, int)) else ""


def _require_pool(ctx: ApplyContext, env: InstructionEnvelope) -> PoolRecord:
    if ctx.pool is None:
        raise StakingApplyError("invalid_state", "not_initialized", {"pool_id": env.pool_id})
    return ctx.pool


def max_reward_debt(pool: PoolRecord) -> int:
    """Largest total_reward_debt consistent with the pool: everyone fully matured, nothing claimed."""
    return max_entitlement(pool.total_staked, pool.acc_reward_per_weighted_share)


def max_owed_units(pool: PoolRecord) -> int:
    """Upper bound of reward currency the pool can still owe its participants."""
    active = max(0, max_reward_debt(pool) - pool.total_reward_debt) // WAD
    return active + pool.total_residual_unpaid


def recover_stranded(pool: PoolRecord) -> int:
    """Release tracked balance above max_owed_units() back to the next reward sync."""
    stranded = max(0, pool.last_synced_balance - max_owed_units(pool))
    if stranded > 0:
        pool.last_synced_balance -= stranded
    return stranded


def _apply_recover_stranded_rewards(ctx: ApplyContext, env: InstructionEnvelope) -> Json:
    pool = _require_pool(ctx, env)
    stranded = recover_stranded(pool)
    return {
        "pool_id": pool.pool_id,
        "recovered": stranded,
        "max_owed": max_owed_units(pool),
        "last_synced_balance": pool.last_synced_balance,
    }


def _apply_fix_total_reward_debt(ctx: ApplyContext, env: InstructionEnvelope) -> Json:
    """
    Bounded repair of total_reward_debt. The bound keeps an authority from
    inflating the recoverable amount and draining the reward vault.
    """
    pool = _require_pool(ctx, env)
    require_authority(pool, env)

    p: FixTotalRewardDebtPayload = parse_payload(env.instruction, env.payload)  # type: ignore[assignment]
    bound = max_reward_debt(pool)
    if p.new_total_reward_debt > bound:
        raise StakingApplyError(
            "bounds",
            "reward_debt_exceeds_bound",
            {"value": p.new_total_reward_debt, "max": bound},
        )

    previous = pool.total_reward_debt
    pool.total_reward_debt = p.new_total_reward_debt
    stranded = recover_stranded(pool)
    return {
        "pool_id": pool.pool_id,
        "previous_total_reward_debt": previous,
        "total_reward_debt": pool.total_reward_debt,
        "recovered": stranded,
    }


RECOVERY_TX_TYPES: Set[str] = {
    "RECOVER_STRANDED_REWARDS",
    "FIX_TOTAL_REWARD_DEBT",
}


def apply_recovery(ctx: ApplyContext, env: InstructionEnvelope) -> Optional[Json]:
    t = _as_str(env.instruction).upper()
    if t not in RECOVERY_TX_TYPES:
        return None

    if t == "RECOVER_STRANDED_REWARDS":
        return _apply_recover_stranded_rewards(ctx, env)

    if t == "FIX_TOTAL_REWARD_DEBT":
        return _apply_fix_total_reward_debt(ctx, env)

    return None


__all__ = ["RECOVERY_TX_TYPES", "apply_recovery", "max_owed_units", "max_reward_debt", "recover_stranded"]
