# src/stakeweight/ledger/migrations.py
from __future__ import annotations

"""Lazy, per-record migrations.

Records are upgraded the moment they are loaded, never in bulk: a stake
record may only become reachable again when its owner next interacts.

Pool record history:
  v0: no record_version, no residual/debt totals, no initial_base_time.
  v1: current shape.

Stake record history:
  v0: no record_version, no base_time_snapshot, no unstake request fields.
      Its maturity factor is relative to the pool's initial base time, which
      v1 expresses as base_time_snapshot == 0.
  v1: no carried_reward.
  v2: current shape.
"""

from typing import Any, Callable, Dict

Json = Dict[str, Any]

# Increment these when you add a new migration step.
CURRENT_POOL_VERSION = 1
CURRENT_STAKE_VERSION = 2


def _as_int(v: Any, default: int = 0) -> int:
    try:
        if isinstance(v, bool):
            return default
        return int(v)
    except Exception:
        return default


def _as_str(v: Any) -> str:
    try:
        return str(v) if v is not None else ""
    except Exception:
        return ""


def _ensure_int(root: Json, key: str, default: int = 0) -> int:
    if key not in root:
        root[key] = int(default)
        return int(default)
    x = _as_int(root.get(key), default)
    root[key] = int(x)
    return int(x)


def _ensure_str(root: Json, key: str, default: str = "") -> str:
    if key not in root:
        root[key] = str(default)
        return str(default)
    s = _as_str(root.get(key))
    root[key] = s
    return s


def _migrate_pool_v0_to_v1(rec: Json) -> Json:
    _ensure_str(rec, "pool_id", "")
    _ensure_str(rec, "authority", "")
    _ensure_int(rec, "total_staked", 0)
    _ensure_int(rec, "sum_stake_exp", 0)
    _ensure_int(rec, "tau_seconds", 0)
    base = _ensure_int(rec, "base_time", 0)
    _ensure_int(rec, "initial_base_time", base)
    _ensure_int(rec, "acc_reward_per_weighted_share", 0)
    _ensure_int(rec, "last_update_time", base)
    _ensure_int(rec, "last_synced_balance", 0)
    # Unknown on legacy pools; FIX_TOTAL_REWARD_DEBT repairs it within bounds.
    _ensure_int(rec, "total_reward_debt", 0)
    _ensure_int(rec, "total_residual_unpaid", 0)
    _ensure_int(rec, "min_stake_amount", 0)
    _ensure_int(rec, "lock_duration_seconds", 0)
    _ensure_int(rec, "unstake_cooldown_seconds", 0)
    rec["record_version"] = 1
    return rec


def _migrate_stake_v0_to_v1(rec: Json) -> Json:
    _ensure_str(rec, "pool_id", "")
    _ensure_str(rec, "owner", "")
    _ensure_int(rec, "amount", 0)
    _ensure_int(rec, "maturity_factor", 0)
    _ensure_int(rec, "reward_debt", 0)
    stake_time = _ensure_int(rec, "stake_time", 0)
    _ensure_int(rec, "last_stake_time", stake_time)
    # Legacy factors are relative to the pool's first base time.
    _ensure_int(rec, "base_time_snapshot", 0)
    _ensure_int(rec, "unstake_request_amount", 0)
    _ensure_int(rec, "unstake_request_time", 0)
    _ensure_int(rec, "total_rewards_claimed", 0)
    rec["record_version"] = 1
    return rec


def _migrate_stake_v1_to_v2(rec: Json) -> Json:
    _ensure_int(rec, "carried_reward", 0)
    rec["record_version"] = 2
    return rec


_POOL_MIGRATIONS: Dict[int, Callable[[Json], Json]] = {
    0: _migrate_pool_v0_to_v1,
}

_STAKE_MIGRATIONS: Dict[int, Callable[[Json], Json]] = {
    0: _migrate_stake_v0_to_v1,
    1: _migrate_stake_v1_to_v2,
}


def _migrate(raw: Any, *, kind: str, current: int, steps: Dict[int, Callable[[Json], Json]]) -> Json:
    rec: Json = dict(raw) if isinstance(raw, dict) else {}

    v = _as_int(rec.get("record_version"), 0)
    if v > current:
        # Written by a newer binary; refuse to downgrade silently.
        raise ValueError(f"{kind} record version {v} is newer than this binary supports (max {current}).")

    while v < current:
        step = steps.get(v)
        if step is None:
            raise ValueError(f"No migration path from {kind} record_version={v} to {current}.")
        rec = step(rec)
        v = _as_int(rec.get("record_version"), v + 1)

    rec["record_version"] = current
    return rec


def migrate_pool_dict(raw: Any) -> Json:
    """Upgrade a raw persisted pool dict to CURRENT_POOL_VERSION."""
    return _migrate(raw, kind="pool", current=CURRENT_POOL_VERSION, steps=_POOL_MIGRATIONS)


def migrate_stake_dict(raw: Any) -> Json:
    """Upgrade a raw persisted stake dict to CURRENT_STAKE_VERSION."""
    return _migrate(raw, kind="stake", current=CURRENT_STAKE_VERSION, steps=_STAKE_MIGRATIONS)
