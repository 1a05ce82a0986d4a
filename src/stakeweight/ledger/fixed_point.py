# src/stakeweight/ledger/fixed_point.py
from __future__ import annotations

"""WAD fixed-point arithmetic.

Python integers never overflow, so every operation checks its intermediate
and final values against the widths the accounting is defined over (u128
working width, U256 wide width) and raises MathError exactly where a
fixed-width implementation would fail. Results are therefore bit-identical
across implementations; they feed irreversible balance transfers.

Division is floor division on non-negative integers (truncation).
"""

from stakeweight.ledger.constants import (
    EXP_NEG_ZERO_THRESHOLD,
    INV_FACTORIALS_WAD,
    INV_LN2_WAD,
    LN2_WAD,
    MAX_EXP_INPUT,
    U128_MAX,
    U256_MAX,
    WAD,
)
from stakeweight.runtime.errors import MathError, math_overflow, math_underflow


def _require_non_negative(op: str, *values: int) -> None:
    for v in values:
        if v < 0:
            raise math_underflow(op)


def checked_u128(v: int, op: str = "u128") -> int:
    if v < 0:
        raise math_underflow(op)
    if v > U128_MAX:
        raise math_overflow(op)
    return v


def checked_u256(v: int, op: str = "u256") -> int:
    if v < 0:
        raise math_underflow(op)
    if v > U256_MAX:
        raise math_overflow(op)
    return v


def wad_mul(a: int, b: int) -> int:
    """a * b / WAD through a U256 intermediate; result must fit u128."""
    _require_non_negative("wad_mul", a, b)
    prod = a * b
    if prod > U256_MAX:
        raise math_overflow("wad_mul")
    return checked_u128(prod // WAD, "wad_mul")


def wad_div(a: int, b: int) -> int:
    """a * WAD / b through a U256 intermediate; result must fit u128."""
    _require_non_negative("wad_div", a, b)
    if b == 0:
        raise math_overflow("wad_div")
    num = a * WAD
    if num > U256_MAX:
        raise math_overflow("wad_div")
    return checked_u128(num // b, "wad_div")


def wad_mul_u256(a: int, b: int) -> int:
    _require_non_negative("wad_mul_u256", a, b)
    prod = a * b
    if prod > U256_MAX:
        raise math_overflow("wad_mul_u256")
    return prod // WAD


def wad_div_u256(a: int, b: int) -> int:
    _require_non_negative("wad_div_u256", a, b)
    if b == 0:
        raise math_overflow("wad_div_u256")
    num = a * WAD
    if num > U256_MAX:
        raise math_overflow("wad_div_u256")
    return num // b


def exp_wad(x: int) -> int:
    """e^x for WAD-scaled non-negative x, WAD-scaled.

    x/ln2 is split into n + f; 2^f = e^(f*ln2) comes from a degree-6 Taylor
    series and 2^n from a shift. Inputs above MAX_EXP_INPUT overflow.
    """
    _require_non_negative("exp_wad", x)
    if x == 0:
        return WAD
    if x > MAX_EXP_INPUT:
        raise math_overflow("exp_wad")

    x_div_ln2 = wad_mul(x, INV_LN2_WAD)
    n = x_div_ln2 // WAD
    frac = x_div_ln2 % WAD
    f_ln2 = wad_mul(frac, LN2_WAD)

    two_pow_frac = 0
    x_pow = WAD
    last = len(INV_FACTORIALS_WAD) - 1
    for i, inv_fact in enumerate(INV_FACTORIALS_WAD):
        two_pow_frac = checked_u128(two_pow_frac + wad_mul(x_pow, inv_fact), "exp_wad")
        if i < last:
            x_pow = wad_mul(x_pow, f_ln2)

    if n > 127:
        raise math_overflow("exp_wad")
    two_pow_int = checked_u128((1 << n) * WAD, "exp_wad")
    return wad_mul(two_pow_int, two_pow_frac)


def exp_neg_wad(x: int) -> int:
    """e^-x for WAD-scaled non-negative x; 0 at or above EXP_NEG_ZERO_THRESHOLD."""
    _require_non_negative("exp_neg_wad", x)
    if x == 0:
        return WAD
    if x >= EXP_NEG_ZERO_THRESHOLD:
        return 0
    return wad_div(WAD, exp_wad(x))


def time_ratio_wad(elapsed_seconds: int, tau_seconds: int) -> int:
    """elapsed / tau as a WAD value; non-positive elapsed time is 0."""
    if elapsed_seconds <= 0:
        return 0
    if tau_seconds <= 0:
        raise MathError("math", "invalid_tau", {"tau_seconds": tau_seconds})
    return checked_u128(elapsed_seconds * WAD, "time_ratio") // tau_seconds


def exp_time_ratio(elapsed_seconds: int, tau_seconds: int) -> int:
    """e^(t/tau), WAD-scaled. t <= 0 gives WAD."""
    if elapsed_seconds <= 0:
        return WAD
    return exp_wad(time_ratio_wad(elapsed_seconds, tau_seconds))


def exp_neg_time_ratio(elapsed_seconds: int, tau_seconds: int) -> int:
    """e^(-t/tau), WAD-scaled. t <= 0 gives WAD."""
    if elapsed_seconds <= 0:
        return WAD
    return exp_neg_wad(time_ratio_wad(elapsed_seconds, tau_seconds))
