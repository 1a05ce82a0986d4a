# src/stakeweight/ledger/constants.py
from __future__ import annotations

"""Fixed-point and pool constants.

All WAD values are integers scaled by 1e18. Integer widths mirror the
fixed-width types the accounting is defined over:

- amounts and reward-currency units: u64
- WAD-scaled per-record values (maturity factor, reward debt, accumulator): u128
- the pool aggregate sum_stake_exp: U256
"""

WAD: int = 10**18

U64_MAX: int = (1 << 64) - 1
U128_MAX: int = (1 << 128) - 1
U256_MAX: int = (1 << 256) - 1

# Reference constants (18-digit WAD precision)
E_WAD: int = 2_718_281_828_459_045_235
LN2_WAD: int = 693_147_180_559_945_309
INV_LN2_WAD: int = 1_442_695_040_888_963_407

# 1/k! for k = 0..6, used by the Taylor expansion of 2^f
INV_FACTORIALS_WAD = (
    WAD,
    WAD,
    500_000_000_000_000_000,
    166_666_666_666_666_667,
    41_666_666_666_666_667,
    8_333_333_333_333_333,
    1_388_888_888_888_889,
)

# Hard ceiling for exp_wad input. e^47 * WAD ~ 2.58e38 fits u128, e^48 does not.
MAX_EXP_INPUT: int = 47 * WAD

# WAD * e^-42 < 1, so exp_neg_wad returns 0 from here on.
EXP_NEG_ZERO_THRESHOLD: int = 42 * WAD

# Largest (now - base_time)/tau at which a position may start without a pool
# rebase. exp_neg_wad(20 * WAD) ~ 2.06e9 keeps ~9 significant digits, and
# every maturity factor stays <= e^20 * WAD, so decay and aggregate terms
# carry a relative error below 1e-9.
MAX_STAKE_AGE_RATIO: int = 20 * WAD

# sum_stake_exp above this must be rebased before further stake-side operations.
# Leaves room for sum * exp_neg (<= WAD) in U256 with a 16x margin.
REBASE_THRESHOLD: int = U256_MAX // (WAD * 16)

# Total weighted stake (1 fully matured unit) required before rewards are distributed.
MIN_WEIGHT_THRESHOLD: int = WAD

SECONDS_PER_DAY: int = 86_400
MAX_LOCK_DURATION_SECONDS: int = 365 * SECONDS_PER_DAY
MAX_UNSTAKE_COOLDOWN_SECONDS: int = 30 * SECONDS_PER_DAY
