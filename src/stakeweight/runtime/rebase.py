# src/stakeweight/runtime/rebase.py
from __future__ import annotations

"""Pool time-origin rebasing.

sum_stake_exp only grows while base_time stays fixed, because late stakers
carry larger maturity factors. Rebasing re-expresses the aggregate relative
to a newer origin:

    sum_stake_exp := sum_stake_exp * e^(-(now - base)/tau)
    base_time     := now

which leaves total_weighted_stake unchanged up to rounding. Stake records
are rescaled by the same factor lazily, the next time they are touched.
"""

from stakeweight.ledger.constants import REBASE_THRESHOLD
from stakeweight.ledger.fixed_point import exp_neg_time_ratio, wad_mul, wad_mul_u256
from stakeweight.ledger.types import PoolRecord, StakeRecord


def needs_rebase(pool: PoolRecord) -> bool:
    return int(pool.sum_stake_exp) > REBASE_THRESHOLD


def rebase_pool(pool: PoolRecord, now: int) -> bool:
    """Move the pool origin to `now`. Returns False when no time has passed."""
    elapsed = int(now) - int(pool.base_time)
    if elapsed <= 0:
        return False

    if pool.initial_base_time == 0:
        pool.initial_base_time = pool.base_time

    decay = exp_neg_time_ratio(elapsed, pool.tau_seconds)
    pool.sum_stake_exp = wad_mul_u256(pool.sum_stake_exp, decay)
    pool.base_time = int(now)
    return True


def sync_stake_to_pool(stake: StakeRecord, pool: PoolRecord) -> bool:
    """Rescale a stake's maturity factor to the pool's current base_time.

    A zero base_time_snapshot (legacy record) means the factor is relative
    to the pool's initial base time. Returns True when the factor changed.
    """
    snapshot = int(stake.base_time_snapshot) or int(pool.initial_base_time)
    elapsed = int(pool.base_time) - snapshot

    if elapsed <= 0 or stake.amount == 0:
        stake.base_time_snapshot = int(pool.base_time)
        return False

    decay = exp_neg_time_ratio(elapsed, pool.tau_seconds)
    stake.maturity_factor = wad_mul(stake.maturity_factor, decay)
    stake.base_time_snapshot = int(pool.base_time)
    return True
