"""
Fixed-point precision constants and checked arithmetic for StakeFlow.

Reward quantities are unsigned Q64.64 numbers stored in plain Python
ints:

    1.0 == FP_ONE == 2**64

Token amounts are unsigned integers counted in base units (the smallest
indivisible unit of an asset).  With the default 9 decimals:

    1 token = 1,000,000,000 base units

Python ints never wrap, so every bound below is enforced explicitly and
a violation raises ``ArithmeticOverflow`` instead of silently growing.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from stakeflow_core.errors import ArithmeticOverflow

# Q64.64 layout.
FP_SHIFT: int = 64
FP_ONE: int = 1 << FP_SHIFT

# Storage widths.
U64_MAX: int = (1 << 64) - 1
U128_MAX: int = (1 << 128) - 1

# Basis points and calendar.
BPS_DENOMINATOR: int = 10_000
MAX_APY_BPS: int = 65_535
SECONDS_PER_DAY: int = 86_400
SECONDS_PER_YEAR: int = 365 * SECONDS_PER_DAY  # 31_536_000

# Default number of decimals for an asset.
DEFAULT_DECIMALS: int = 9

# Any nonzero amount scaled past 10**64 is beyond U128_MAX.
_MAX_SHIFT: int = 64


# ── checked arithmetic ─────────────────────────────────────────────────

def checked_add(a: int, b: int, bound: int = U128_MAX) -> int:
    """Return ``a + b`` or raise if the sum leaves ``[0, bound]``."""
    result = a + b
    if result < 0 or result > bound:
        raise ArithmeticOverflow(f"{a} + {b} exceeds {bound}")
    return result


def checked_sub(a: int, b: int) -> int:
    """Return ``a - b`` or raise if the difference would be negative."""
    if b > a:
        raise ArithmeticOverflow(f"{a} - {b} underflows")
    return a - b


def checked_mul(a: int, b: int, bound: int = U128_MAX) -> int:
    """Return ``a * b`` or raise if the product leaves ``[0, bound]``."""
    result = a * b
    if result < 0 or result > bound:
        raise ArithmeticOverflow(f"{a} * {b} exceeds {bound}")
    return result


def ensure_u64(value: int, name: str = "value") -> int:
    """Reject anything that is not an int in ``[0, U64_MAX]``."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an integer")
    if value < 0 or value > U64_MAX:
        raise ArithmeticOverflow(f"{name}={value} is outside the u64 range")
    return value


# ── conversions ────────────────────────────────────────────────────────

def fp_to_units(value_fp: int) -> int:
    """Floor a Q64.64 quantity to whole base units."""
    return value_fp >> FP_SHIFT


def split_units(value_fp: int) -> tuple[int, int]:
    """
    Split a Q64.64 quantity into ``(whole_units, remainder_fp)``.

    >>> split_units(3 * FP_ONE + 5)
    (3, 5)
    """
    whole = value_fp >> FP_SHIFT
    return whole, value_fp - (whole << FP_SHIFT)


def fp_to_float(value_fp: int) -> float:
    """Approximate a Q64.64 quantity as a float (display only)."""
    return value_fp / FP_ONE


def to_base_units(amount: float | int | str, decimals: int = DEFAULT_DECIMALS) -> int:
    """
    Convert a UI amount to integer base units (floored).

    Input is parsed as a ``Decimal`` and scaled exactly, so ``"0.1"`` and
    ``"1.000000001e3"`` convert without float rounding.

    >>> to_base_units("10")
    10000000000
    >>> to_base_units("0.000000001")
    1
    """
    text = str(amount).strip()
    if text.startswith("-"):
        raise ValueError("amount must not be negative")
    try:
        value = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"invalid amount: {amount!r}") from None
    if not value.is_finite():
        raise ValueError(f"invalid amount: {amount!r}")

    _, digits, exponent = value.as_tuple()
    mantissa = int("".join(map(str, digits)))
    if mantissa == 0:
        return 0
    shift = exponent + decimals
    if shift > _MAX_SHIFT:
        raise ValueError(f"amount out of range: {amount!r}")
    if shift >= 0:
        return mantissa * 10 ** shift
    return mantissa // 10 ** -shift


def from_base_units(units: int, decimals: int = DEFAULT_DECIMALS) -> float:
    """Convert integer base units to a float UI amount."""
    return units / 10 ** decimals


def format_amount(units: int, symbol: str = "", decimals: int = DEFAULT_DECIMALS) -> str:
    """Render base units with a fixed number of decimal places."""
    whole, frac = divmod(units, 10 ** decimals)
    text = f"{whole}.{frac:0{decimals}d}" if decimals else str(whole)
    return f"{text} {symbol}" if symbol else text
