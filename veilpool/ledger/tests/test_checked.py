from __future__ import annotations

import pytest

from veilpool.ledger.checked import (
    bps_of,
    checked_add,
    checked_add_i64,
    checked_div,
    checked_mul,
    checked_sub,
    require_u64,
)
from veilpool.ledger.constants import I64_MAX, U64_MAX
from veilpool.ledger.errors import ErrorCode, LedgerArithmeticError, ValidationError


class TestCheckedArithmetic:
    """Overflow and underflow fail instead of wrapping or clamping."""

    def test_add_at_limit(self):
        """Adding up to U64_MAX is fine."""
        assert checked_add(U64_MAX - 1, 1) == U64_MAX

    def test_add_overflow(self):
        """Crossing U64_MAX raises an overflow error."""
        with pytest.raises(LedgerArithmeticError) as exc_info:
            checked_add(U64_MAX, 1, "total_stake")
        assert exc_info.value.code is ErrorCode.ARITHMETIC_OVERFLOW
        assert "total_stake" in str(exc_info.value)

    def test_sub_underflow(self):
        """Going below zero raises an underflow error."""
        with pytest.raises(LedgerArithmeticError) as exc_info:
            checked_sub(5, 6)
        assert exc_info.value.code is ErrorCode.ARITHMETIC_UNDERFLOW

    def test_mul_overflow(self):
        with pytest.raises(LedgerArithmeticError):
            checked_mul(2 ** 40, 2 ** 40)

    def test_div_by_zero(self):
        with pytest.raises(LedgerArithmeticError) as exc_info:
            checked_div(10, 0)
        assert exc_info.value.code is ErrorCode.DIVISION_BY_ZERO

    def test_div_floors(self):
        assert checked_div(7, 2) == 3

    def test_i64_timestamp_overflow(self):
        """Timestamps use the signed 64-bit range."""
        assert checked_add_i64(I64_MAX - 10, 10) == I64_MAX
        with pytest.raises(LedgerArithmeticError):
            checked_add_i64(I64_MAX, 1)


class TestBasisPoints:
    def test_bps_floor(self):
        """bps_of floors the result."""
        assert bps_of(150_000, 5_000) == 75_000
        assert bps_of(199, 500) == 9

    def test_bps_overflow_detected(self):
        """The intermediate product is checked too."""
        with pytest.raises(LedgerArithmeticError):
            bps_of(U64_MAX, 2)


class TestRequireU64:
    def test_rejects_bool(self):
        """Booleans are not amounts."""
        with pytest.raises(TypeError):
            require_u64(True)

    def test_rejects_float(self):
        with pytest.raises(TypeError):
            require_u64(1.5)  # type: ignore[arg-type]

    def test_rejects_negative_as_invalid_input(self):
        """A negative argument is malformed input, not an arithmetic fault."""
        with pytest.raises(ValidationError) as exc_info:
            require_u64(-1, "stake amount")
        assert exc_info.value.code is ErrorCode.INVALID_AMOUNT

    def test_rejects_oversized(self):
        with pytest.raises(LedgerArithmeticError) as exc_info:
            require_u64(U64_MAX + 1)
        assert exc_info.value.code is ErrorCode.ARITHMETIC_OVERFLOW
