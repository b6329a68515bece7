"""
Checked integer arithmetic for ledger balances.

Python integers never wrap, so the bounds of the on-ledger integer widths are
enforced explicitly: any result outside [0, U64_MAX] (or the signed i64 range
for timestamps) fails the whole call with an arithmetic error instead of
being clamped.
"""

from __future__ import annotations

from .constants import BPS_DENOMINATOR, I64_MAX, I64_MIN, U64_MAX
from .errors import ErrorCode, ledger_error


def _check_u64(value: int, what: str) -> int:
    if value > U64_MAX:
        raise ledger_error(ErrorCode.ARITHMETIC_OVERFLOW, what)
    if value < 0:
        raise ledger_error(ErrorCode.ARITHMETIC_UNDERFLOW, what)
    return value


def require_u64(value: int, what: str = "value") -> int:
    """Validate that an input already fits an unsigned 64-bit slot."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{what} must be an int, got {type(value).__name__}")
    if value < 0:
        raise ledger_error(ErrorCode.INVALID_AMOUNT, f"{what} must not be negative")
    return _check_u64(value, what)


def checked_add(a: int, b: int, what: str = "add") -> int:
    return _check_u64(a + b, what)


def checked_sub(a: int, b: int, what: str = "sub") -> int:
    return _check_u64(a - b, what)


def checked_mul(a: int, b: int, what: str = "mul") -> int:
    return _check_u64(a * b, what)


def checked_div(a: int, b: int, what: str = "div") -> int:
    if b == 0:
        raise ledger_error(ErrorCode.DIVISION_BY_ZERO, what)
    return _check_u64(a // b, what)


def checked_add_i64(a: int, b: int, what: str = "timestamp") -> int:
    result = a + b
    if result > I64_MAX:
        raise ledger_error(ErrorCode.ARITHMETIC_OVERFLOW, what)
    if result < I64_MIN:
        raise ledger_error(ErrorCode.ARITHMETIC_UNDERFLOW, what)
    return result


def bps_of(amount: int, bps: int, what: str = "bps") -> int:
    """Return floor(amount * bps / 10_000) with the multiplication checked."""
    return checked_div(checked_mul(amount, bps, what), BPS_DENOMINATOR, what)
