from __future__ import annotations

from typing import Any, Dict, Tuple

import pytest

from stakeweight.ledger.constants import MAX_LOCK_DURATION_SECONDS, MAX_STAKE_AGE_RATIO, REBASE_THRESHOLD, WAD
from stakeweight.ledger.fixed_point import exp_time_ratio
from stakeweight.runtime.executor import StakingExecutor
from stakeweight.runtime.host import MemoryHost
from stakeweight.runtime.tx_admission_types import ASSET, REWARD, asset_vault

Json = Dict[str, Any]

TAU = 86_400
T0 = 1_700_000_000
POOL = "pool-1"


def _ix(instruction: str, signer: str, **payload: Any) -> Json:
    return {"instruction": instruction, "signer": signer, "pool_id": POOL, "payload": payload}


def _ok(ex: StakingExecutor, env: Json) -> Json:
    out = ex.submit(env)
    assert out.ok, out.to_json()
    return out.result or {}


def _rejected(ex: StakingExecutor, env: Json, code: str, reason: str) -> None:
    out = ex.submit(env)
    assert not out.ok, out.to_json()
    assert (out.code, out.reason) == (code, reason), out.to_json()


@pytest.fixture()
def world() -> Tuple[StakingExecutor, MemoryHost]:
    host = MemoryHost(now=T0)
    host.credit(ASSET, "alice", 10_000)
    host.credit(ASSET, "bob", 10_000)
    host.credit(REWARD, "treasury", 10**12)
    ex = StakingExecutor.in_memory(host=host)
    _ok(ex, _ix("INITIALIZE_POOL", "admin", tau_seconds=TAU))
    return ex, host


def test_initialize_pool_twice_is_rejected(world) -> None:
    ex, _host = world
    _rejected(ex, _ix("INITIALIZE_POOL", "admin", tau_seconds=TAU), "invalid_state", "already_initialized")


def test_initialize_pool_requires_positive_tau() -> None:
    ex = StakingExecutor.in_memory(host=MemoryHost(now=T0))
    _rejected(ex, _ix("INITIALIZE_POOL", "admin", tau_seconds=0), "policy", "invalid_tau")
    assert ex.read_pool(POOL) is None


def test_first_stake_creates_record_and_moves_asset(world) -> None:
    ex, host = world
    res = _ok(ex, _ix("STAKE", "alice", amount=1_000))
    assert res["amount"] == 1_000
    assert res["maturity_factor"] == WAD

    stake = ex.read_stake(POOL, "alice")
    assert stake is not None
    assert stake.amount == 1_000
    assert stake.reward_debt == 0
    assert stake.stake_time == T0

    pool = ex.read_pool(POOL)
    assert pool is not None
    assert pool.total_staked == 1_000
    assert pool.sum_stake_exp == 1_000 * WAD

    assert host.balance(ASSET, "alice") == 9_000
    assert host.balance(ASSET, asset_vault(POOL)) == 1_000


def test_stake_rejections(world) -> None:
    ex, _host = world
    _rejected(ex, _ix("STAKE", "alice", amount=0), "policy", "zero_amount")
    _rejected(ex, _ix("CLAIM_REWARDS", "carol"), "invalid_state", "not_initialized")

    _ok(ex, _ix("UPDATE_POOL_SETTINGS", "admin", min_stake_amount=100))
    _rejected(ex, _ix("STAKE", "alice", amount=50), "policy", "below_minimum_stake")
    _ok(ex, _ix("STAKE", "alice", amount=100))
    # Top-ups are checked against the resulting total.
    _ok(ex, _ix("STAKE", "alice", amount=1))


def test_stake_into_unknown_pool_is_rejected() -> None:
    ex = StakingExecutor.in_memory(host=MemoryHost(now=T0))
    _rejected(ex, _ix("STAKE", "alice", amount=10), "invalid_state", "not_initialized")


def test_failed_asset_transfer_leaves_records_untouched(world) -> None:
    ex, host = world
    _rejected(ex, _ix("STAKE", "alice", amount=50_000), "transfer_failed", "insufficient_balance")

    pool = ex.read_pool(POOL)
    assert pool is not None and pool.total_staked == 0
    assert ex.read_stake(POOL, "alice") is None
    assert host.balance(ASSET, "alice") == 10_000


def test_top_up_averages_maturity(world) -> None:
    ex, host = world
    _ok(ex, _ix("STAKE", "alice", amount=1_000))
    host.advance(2 * TAU)
    res = _ok(ex, _ix("STAKE", "alice", amount=1_000))

    stake = ex.read_stake(POOL, "alice")
    assert stake is not None
    assert stake.amount == 2_000
    assert stake.last_stake_time == T0 + 2 * TAU
    assert stake.stake_time == T0
    assert stake.maturity_factor == res["maturity_factor"]
    assert stake.maturity_factor == (1_000 * WAD + 1_000 * exp_time_ratio(2 * TAU, TAU)) // 2_000

    pool = ex.read_pool(POOL)
    assert pool is not None
    assert pool.total_staked == 2_000
    # Aggregate stays the sum of per-record contributions.
    assert abs(pool.sum_stake_exp - 2_000 * stake.maturity_factor) <= 2_000


def test_unstake_partial_then_full(world) -> None:
    ex, host = world
    _ok(ex, _ix("STAKE", "alice", amount=1_000))
    _rejected(ex, _ix("UNSTAKE", "alice", amount=1_001), "policy", "insufficient_stake_balance")

    res = _ok(ex, _ix("UNSTAKE", "alice", amount=400))
    assert res["amount"] == 600
    assert host.balance(ASSET, "alice") == 9_400

    res = _ok(ex, _ix("UNSTAKE", "alice", amount=600))
    assert res["amount"] == 0
    assert host.balance(ASSET, "alice") == 10_000

    pool = ex.read_pool(POOL)
    assert pool is not None
    assert pool.total_staked == 0
    assert pool.sum_stake_exp == 0


def test_lock_duration_blocks_early_withdrawal(world) -> None:
    ex, host = world
    _ok(ex, _ix("UPDATE_POOL_SETTINGS", "admin", lock_duration_seconds=3_600))
    _ok(ex, _ix("STAKE", "alice", amount=1_000))

    _rejected(ex, _ix("UNSTAKE", "alice", amount=10), "policy", "stake_locked")
    host.advance(3_600)
    _ok(ex, _ix("UNSTAKE", "alice", amount=10))


def test_cooldown_flow(world) -> None:
    ex, host = world
    _ok(ex, _ix("UPDATE_POOL_SETTINGS", "admin", unstake_cooldown_seconds=600))
    _ok(ex, _ix("STAKE", "alice", amount=1_000))

    _rejected(ex, _ix("UNSTAKE", "alice", amount=100), "policy", "cooldown_required")
    _rejected(ex, _ix("COMPLETE_UNSTAKE", "alice"), "policy", "no_pending_unstake_request")

    res = _ok(ex, _ix("REQUEST_UNSTAKE", "alice", amount=400))
    assert res["available_at"] == T0 + 600
    _rejected(ex, _ix("REQUEST_UNSTAKE", "alice", amount=1), "policy", "pending_unstake_request_exists")
    _rejected(ex, _ix("STAKE", "alice", amount=1), "policy", "pending_unstake_request_exists")
    _rejected(ex, _ix("COMPLETE_UNSTAKE", "alice"), "policy", "cooldown_not_elapsed")

    host.advance(600)
    res = _ok(ex, _ix("COMPLETE_UNSTAKE", "alice"))
    assert res["unstaked"] == 400
    assert res["amount"] == 600
    assert host.balance(ASSET, "alice") == 9_400

    stake = ex.read_stake(POOL, "alice")
    assert stake is not None
    assert not stake.has_pending_unstake_request


def test_cancel_unstake_request(world) -> None:
    ex, _host = world
    _ok(ex, _ix("UPDATE_POOL_SETTINGS", "admin", unstake_cooldown_seconds=600))
    _ok(ex, _ix("STAKE", "alice", amount=1_000))
    _ok(ex, _ix("REQUEST_UNSTAKE", "alice", amount=1_000))

    res = _ok(ex, _ix("CANCEL_UNSTAKE_REQUEST", "alice"))
    assert res["cancelled"] == 1_000
    _rejected(ex, _ix("CANCEL_UNSTAKE_REQUEST", "alice"), "policy", "no_pending_unstake_request")
    _ok(ex, _ix("STAKE", "alice", amount=5))


def test_request_unstake_needs_configured_cooldown(world) -> None:
    ex, _host = world
    _ok(ex, _ix("STAKE", "alice", amount=1_000))
    _rejected(ex, _ix("REQUEST_UNSTAKE", "alice", amount=10), "policy", "cooldown_not_configured")


def test_settings_are_authority_gated_and_capped(world) -> None:
    ex, _host = world
    _rejected(ex, _ix("UPDATE_POOL_SETTINGS", "alice", min_stake_amount=1), "forbidden", "invalid_authority")
    _rejected(
        ex,
        _ix("UPDATE_POOL_SETTINGS", "admin", lock_duration_seconds=MAX_LOCK_DURATION_SECONDS + 1),
        "policy",
        "setting_exceeds_maximum",
    )
    res = _ok(ex, _ix("UPDATE_POOL_SETTINGS", "admin", lock_duration_seconds=MAX_LOCK_DURATION_SECONDS))
    assert res["updated"] == {"lock_duration_seconds": MAX_LOCK_DURATION_SECONDS}


def test_stake_on_behalf(world) -> None:
    ex, host = world
    host.credit(ASSET, "sponsor", 500)
    res = _ok(ex, _ix("STAKE_ON_BEHALF", "sponsor", amount=500, beneficiary="carol"))
    assert res["owner"] == "carol"

    assert host.balance(ASSET, "sponsor") == 0
    assert ex.read_stake(POOL, "sponsor") is None
    stake = ex.read_stake(POOL, "carol")
    assert stake is not None and stake.amount == 500

    # The beneficiary owns the position.
    host.advance(100 * TAU)
    _ok(ex, _ix("DEPOSIT_REWARDS", "treasury", amount=1_000))
    res = _ok(ex, _ix("CLAIM_REWARDS", "carol"))
    assert res["rewards_paid"] == 1_000
    assert host.balance(REWARD, "carol") == 1_000


def test_new_stake_after_long_idle_requires_sync(world) -> None:
    ex, host = world
    _ok(ex, _ix("STAKE", "alice", amount=1_000))
    host.advance(48 * TAU)

    _rejected(ex, _ix("STAKE", "bob", amount=1_000), "invalid_state", "pool_requires_sync")

    res = _ok(ex, _ix("SYNC_POOL", "anyone"))
    assert res["rebased"] is True
    assert res["base_time"] == T0 + 48 * TAU

    res = _ok(ex, _ix("STAKE", "bob", amount=1_000))
    assert res["maturity_factor"] == WAD

    # Alice's record is rescaled the next time she touches it.
    _ok(ex, _ix("CLAIM_REWARDS", "alice"))
    alice = ex.read_stake(POOL, "alice")
    assert alice is not None
    assert alice.base_time_snapshot == T0 + 48 * TAU
    assert alice.maturity_factor == 0


def test_stake_on_an_aged_pool_starts_at_zero_weight(world) -> None:
    ex, host = world
    _ok(ex, _ix("STAKE", "alice", amount=1_000))
    host.advance(42 * TAU + 10)

    _rejected(ex, _ix("STAKE", "bob", amount=1_000), "invalid_state", "pool_requires_sync")
    _ok(ex, _ix("SYNC_POOL", "anyone"))
    _ok(ex, _ix("STAKE", "bob", amount=1_000))

    view = ex.stake_view(POOL, "bob")
    assert view is not None
    assert view["weight"] == 0

    # A deposit in the same second belongs entirely to the matured position.
    _ok(ex, _ix("DEPOSIT_REWARDS", "treasury", amount=1_000_000))
    assert _ok(ex, _ix("CLAIM_REWARDS", "bob"))["rewards_paid"] == 0
    assert _ok(ex, _ix("CLAIM_REWARDS", "alice"))["rewards_paid"] == 1_000_000


def test_stake_age_limit_boundary(world) -> None:
    ex, host = world
    _ok(ex, _ix("STAKE", "alice", amount=1_000))
    host.advance(MAX_STAKE_AGE_RATIO // WAD * TAU)

    res = _ok(ex, _ix("STAKE", "bob", amount=1_000))
    assert res["maturity_factor"] == exp_time_ratio(MAX_STAKE_AGE_RATIO // WAD * TAU, TAU)
    view = ex.stake_view(POOL, "bob")
    assert view is not None
    assert view["weight"] < WAD // 1000

    host.advance(1)
    _rejected(ex, _ix("STAKE", "bob", amount=1_000), "invalid_state", "pool_requires_sync")


def test_pool_over_rebase_threshold_blocks_aggregate_operations(world) -> None:
    ex, host = world
    _ok(ex, _ix("UPDATE_POOL_SETTINGS", "admin", unstake_cooldown_seconds=600))
    _ok(ex, _ix("STAKE", "alice", amount=1_000))
    _ok(ex, _ix("REQUEST_UNSTAKE", "alice", amount=100))
    host.advance(600)

    with ex.store.transaction() as session:
        raw = session.load_pool(POOL)
        raw["sum_stake_exp"] = REBASE_THRESHOLD + 1
        session.save_pool(raw)

    for env in (
        _ix("STAKE", "bob", amount=1_000),
        _ix("UNSTAKE", "alice", amount=10),
        _ix("COMPLETE_UNSTAKE", "alice"),
        _ix("CLAIM_REWARDS", "alice"),
        _ix("DEPOSIT_REWARDS", "treasury", amount=1_000),
        _ix("SYNC_REWARDS", "anyone"),
    ):
        _rejected(ex, env, "invalid_state", "pool_requires_sync")

    host.advance(2 * TAU)
    _ok(ex, _ix("SYNC_POOL", "anyone"))
    pool = ex.read_pool(POOL)
    assert pool is not None
    assert pool.sum_stake_exp <= REBASE_THRESHOLD

    _ok(ex, _ix("STAKE", "bob", amount=1_000))
    assert _ok(ex, _ix("COMPLETE_UNSTAKE", "alice"))["unstaked"] == 100
    _ok(ex, _ix("CLAIM_REWARDS", "alice"))
    _ok(ex, _ix("DEPOSIT_REWARDS", "treasury", amount=1_000))
    # Past the rebase guard, the pool's own policy applies again.
    _rejected(ex, _ix("UNSTAKE", "alice", amount=10), "policy", "cooldown_required")


def test_close_requires_empty_position(world) -> None:
    ex, _host = world
    _ok(ex, _ix("STAKE", "alice", amount=1_000))
    _rejected(ex, _ix("CLOSE_STAKE_ACCOUNT", "alice"), "invalid_state", "account_not_empty")

    _ok(ex, _ix("UNSTAKE", "alice", amount=1_000))
    res = _ok(ex, _ix("CLOSE_STAKE_ACCOUNT", "alice"))
    assert res["closed"] is True
    assert ex.read_stake(POOL, "alice") is None


def test_reentry_after_full_exit_starts_fresh(world) -> None:
    ex, host = world
    _ok(ex, _ix("STAKE", "alice", amount=1_000))
    _ok(ex, _ix("UNSTAKE", "alice", amount=1_000))
    host.advance(TAU)

    res = _ok(ex, _ix("STAKE", "alice", amount=200))
    assert res["amount"] == 200
    stake = ex.read_stake(POOL, "alice")
    assert stake is not None
    assert stake.last_stake_time == T0 + TAU
    assert stake.maturity_factor == res["maturity_factor"]

    assert stake.stake_time == T0 + TAU
    pool = ex.read_pool(POOL)
    assert pool is not None and pool.total_staked == 200
