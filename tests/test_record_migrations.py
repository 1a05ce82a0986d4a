from __future__ import annotations

import pytest

from stakeweight.ledger.constants import WAD
from stakeweight.ledger.fixed_point import exp_neg_time_ratio, wad_mul, wad_mul_u256
from stakeweight.ledger.migrations import (
    CURRENT_POOL_VERSION,
    CURRENT_STAKE_VERSION,
    migrate_pool_dict,
    migrate_stake_dict,
)
from stakeweight.ledger.types import PoolRecord, StakeRecord
from stakeweight.runtime.executor import StakingExecutor
from stakeweight.runtime.host import MemoryHost

TAU = 3_600
T0 = 1_700_000_000


def test_migrate_non_dict_input_yields_current_pool_shape() -> None:
    rec = migrate_pool_dict(None)
    assert rec["record_version"] == CURRENT_POOL_VERSION
    pool = PoolRecord.from_dict(rec)
    assert pool.total_staked == 0
    assert pool.authority == ""


def test_migrate_pool_v0_backfills_and_normalizes() -> None:
    v0 = {"pool_id": "p", "authority": "admin", "tau_seconds": "3600", "base_time": 42, "total_staked": "7"}
    rec = migrate_pool_dict(v0)
    pool = PoolRecord.from_dict(rec)

    assert pool.tau_seconds == 3_600
    assert pool.total_staked == 7
    assert pool.initial_base_time == 42
    assert pool.last_update_time == 42
    assert pool.total_residual_unpaid == 0
    assert pool.min_stake_amount == 0
    # Input is not mutated.
    assert "record_version" not in v0


def test_migrate_stake_v0_marks_factor_as_relative_to_initial_base() -> None:
    rec = migrate_stake_dict({"pool_id": "p", "owner": "alice", "amount": 5, "maturity_factor": WAD, "stake_time": 9})
    stake = StakeRecord.from_dict(rec)

    assert rec["record_version"] == CURRENT_STAKE_VERSION
    assert stake.base_time_snapshot == 0
    assert stake.last_stake_time == 9
    assert stake.unstake_request_amount == 0


def test_current_records_pass_through_unchanged() -> None:
    pool = PoolRecord.new(pool_id="p", authority="admin", tau_seconds=TAU, now=T0)
    assert migrate_pool_dict(pool.to_dict()) == pool.to_dict()


def test_records_from_a_newer_binary_are_refused() -> None:
    with pytest.raises(ValueError):
        migrate_pool_dict({"record_version": CURRENT_POOL_VERSION + 1})
    with pytest.raises(ValueError):
        migrate_stake_dict({"record_version": CURRENT_STAKE_VERSION + 1})


def test_strict_from_dict_rejects_bad_fields() -> None:
    rec = PoolRecord.new(pool_id="p", authority="admin", tau_seconds=TAU, now=T0).to_dict()
    rec["total_staked"] = True
    with pytest.raises(ValueError):
        PoolRecord.from_dict(rec)

    rec.pop("total_staked")
    with pytest.raises(ValueError):
        PoolRecord.from_dict(rec)


def test_legacy_stake_is_rescaled_on_first_touch() -> None:
    host = MemoryHost(now=T0 + 5 * TAU)
    ex = StakingExecutor.in_memory(host=host)
    decay = exp_neg_time_ratio(5 * TAU, TAU)

    with ex.store.transaction() as session:
        session.save_pool(
            {
                "pool_id": "p",
                "authority": "admin",
                "total_staked": 1_000,
                "sum_stake_exp": wad_mul_u256(1_000 * WAD, decay),
                "tau_seconds": TAU,
                "base_time": T0 + 5 * TAU,
                "initial_base_time": T0,
                "acc_reward_per_weighted_share": 0,
                "last_synced_balance": 0,
            }
        )
        session.save_stake(
            {"pool_id": "p", "owner": "alice", "amount": 1_000, "maturity_factor": WAD, "reward_debt": 0, "stake_time": T0}
        )

    view = ex.stake_view("p", "alice")
    assert view is not None
    assert view["stake"]["maturity_factor"] == wad_mul(WAD, decay)
    assert view["stake"]["base_time_snapshot"] == T0 + 5 * TAU

    out = ex.submit({"instruction": "CLAIM_REWARDS", "signer": "alice", "pool_id": "p", "payload": {}})
    assert out.ok, out.to_json()

    stake = ex.read_stake("p", "alice")
    assert stake is not None
    assert stake.record_version == CURRENT_STAKE_VERSION
    assert stake.maturity_factor == wad_mul(WAD, decay)

    pool = ex.read_pool("p")
    assert pool is not None
    assert pool.record_version == CURRENT_POOL_VERSION


def test_unreadable_records_reject_the_instruction() -> None:
    ex = StakingExecutor.in_memory(host=MemoryHost(now=T0))
    assert ex.submit({"instruction": "INITIALIZE_POOL", "signer": "admin", "pool_id": "p", "payload": {"tau_seconds": TAU}}).ok

    with ex.store.transaction() as session:
        session.save_stake({"pool_id": "p", "owner": "alice", "record_version": CURRENT_STAKE_VERSION + 1})

    out = ex.submit({"instruction": "CLAIM_REWARDS", "signer": "alice", "pool_id": "p", "payload": {}})
    assert not out.ok
    assert (out.code, out.reason) == ("invalid_state", "record_schema_error")
    assert out.details is not None
    assert out.details["record"] == "stake"
    assert out.details["owner"] == "alice"

    with ex.store.transaction() as session:
        raw = session.load_pool("p")
        raw["total_staked"] = "many"
        session.save_pool(raw)

    out = ex.submit({"instruction": "SYNC_POOL", "signer": "anyone", "pool_id": "p", "payload": {}})
    assert (out.code, out.reason) == ("invalid_state", "record_schema_error")
    assert out.details is not None and out.details["record"] == "pool"


def test_stake_v1_gains_an_empty_carry() -> None:
    v1 = StakeRecord.new(pool_id="p", owner="alice", now=T0, base_time=T0).to_dict()
    v1.pop("carried_reward")
    v1["record_version"] = 1

    stake = StakeRecord.from_dict(migrate_stake_dict(v1))
    assert stake.carried_reward == 0
    assert stake.record_version == CURRENT_STAKE_VERSION
