"""
Ledger error taxonomy.

Every failure is a distinct, named condition (`ErrorCode`) belonging to one of
five kinds (`ErrorKind`). Operations raise; the transaction layer restores
state and re-raises, so a caller never observes a partial write.

Usage:
    try:
        registry.stake(ctx, amount)
    except CapacityError as exc:
        if exc.code is ErrorCode.INSUFFICIENT_STAKE:
            ...
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Optional, Tuple, Type


class ErrorKind(Enum):
    """Broad category of a ledger failure."""
    VALIDATION = "validation"
    STATE = "state"
    CAPACITY = "capacity"
    ARITHMETIC = "arithmetic"
    AUTHORIZATION = "authorization"


class ErrorCode(Enum):
    """Named failure conditions. Values are stable numeric codes."""
    # Validation
    LOCATION_TOO_LONG = 6000
    ADDRESS_TOO_LONG = 6001
    INVALID_BANDWIDTH = 6002
    INVALID_AMOUNT = 6003
    INVALID_REPUTATION = 6004
    INVALID_UNITS = 6005
    INVALID_DURATION = 6006
    INVALID_PRICE = 6007
    POOL_NAME_TOO_LONG = 6008
    INVALID_FUNDING = 6009
    ALLOCATION_TOO_SMALL = 6010
    MISMATCHED_LENGTHS = 6011
    EMPTY_NODE_POOL = 6012
    ZERO_TOTAL_WEIGHT = 6013
    WEIGHT_OUT_OF_RANGE = 6014
    INVALID_RANDOM_VALUE = 6015
    INVALID_SEED = 6016
    INVALID_ADDRESS = 6017

    # State
    REGISTRY_NOT_INITIALIZED = 6100
    REGISTRY_ALREADY_INITIALIZED = 6101
    NODE_NOT_REGISTERED = 6102
    NODE_ALREADY_REGISTERED = 6103
    NODE_NOT_ACTIVE = 6104
    NODE_ALREADY_ACTIVE = 6105
    NO_UNBONDING_IN_PROGRESS = 6106
    UNBONDING_PERIOD_ACTIVE = 6107
    UNBONDING_IN_PROGRESS = 6108
    LOW_REPUTATION = 6109
    SYSTEM_NOT_INITIALIZED = 6110
    SYSTEM_ALREADY_INITIALIZED = 6111
    SYSTEM_NOT_ACTIVE = 6112
    CREDIT_NOT_FOUND = 6113
    CREDIT_ALREADY_EXISTS = 6114
    CREDIT_NOT_ACTIVE = 6115
    CREDIT_EXPIRED = 6116
    POOL_NOT_FOUND = 6117
    POOL_ALREADY_EXISTS = 6118
    POOL_NOT_ACTIVE = 6119
    BENEFICIARY_NOT_FOUND = 6120
    BENEFICIARY_NOT_WHITELISTED = 6121
    BENEFICIARY_ALREADY_WHITELISTED = 6122
    REQUEST_NOT_FOUND = 6123
    REQUEST_ALREADY_EXISTS = 6124
    ALREADY_FULFILLED = 6125

    # Capacity / balance
    INSUFFICIENT_STAKE = 6200
    INSUFFICIENT_BALANCE = 6201
    INSUFFICIENT_FUNDS = 6202
    NO_EARNINGS_TO_CLAIM = 6203
    EARNINGS_VAULT_UNDERFUNDED = 6204
    INSUFFICIENT_ALLOCATION = 6205
    INSUFFICIENT_POOL_BALANCE = 6206
    POOL_FULL = 6207

    # Arithmetic
    ARITHMETIC_OVERFLOW = 6300
    ARITHMETIC_UNDERFLOW = 6301
    DIVISION_BY_ZERO = 6302

    # Authorization
    UNAUTHORIZED = 6400
    INVALID_SIGNATURE = 6401
    FEE_VAULT_MISMATCH = 6402
    MISSING_SIGNER = 6403


_V, _S, _C, _A, _Z = (
    ErrorKind.VALIDATION,
    ErrorKind.STATE,
    ErrorKind.CAPACITY,
    ErrorKind.ARITHMETIC,
    ErrorKind.AUTHORIZATION,
)

_ERROR_INFO: Dict[ErrorCode, Tuple[ErrorKind, str]] = {
    ErrorCode.LOCATION_TOO_LONG: (_V, "Location string exceeds maximum length"),
    ErrorCode.ADDRESS_TOO_LONG: (_V, "Network address string exceeds maximum length"),
    ErrorCode.INVALID_BANDWIDTH: (_V, "Bandwidth must be greater than 0"),
    ErrorCode.INVALID_AMOUNT: (_V, "Amount must be greater than 0"),
    ErrorCode.INVALID_REPUTATION: (_V, "Invalid reputation score. Must be 0-100"),
    ErrorCode.INVALID_UNITS: (_V, "Unit amount must be greater than 0"),
    ErrorCode.INVALID_DURATION: (_V, "Invalid duration"),
    ErrorCode.INVALID_PRICE: (_V, "Invalid price. Must be greater than 0"),
    ErrorCode.POOL_NAME_TOO_LONG: (_V, "Pool name exceeds maximum length"),
    ErrorCode.INVALID_FUNDING: (_V, "Funding amount must be greater than 0"),
    ErrorCode.ALLOCATION_TOO_SMALL: (_V, "Allocation is below the minimum"),
    ErrorCode.MISMATCHED_LENGTHS: (_V, "Node pool and weights have mismatched lengths"),
    ErrorCode.EMPTY_NODE_POOL: (_V, "Node pool cannot be empty"),
    ErrorCode.ZERO_TOTAL_WEIGHT: (_V, "Total weight cannot be zero"),
    ErrorCode.WEIGHT_OUT_OF_RANGE: (_V, "Selection weight out of range"),
    ErrorCode.INVALID_RANDOM_VALUE: (_V, "Random value must be 32 bytes"),
    ErrorCode.INVALID_SEED: (_V, "Seed must be 32 bytes"),
    ErrorCode.INVALID_ADDRESS: (_V, "Malformed address"),
    ErrorCode.REGISTRY_NOT_INITIALIZED: (_S, "Node registry is not initialized"),
    ErrorCode.REGISTRY_ALREADY_INITIALIZED: (_S, "Node registry is already initialized"),
    ErrorCode.NODE_NOT_REGISTERED: (_S, "Node is not registered"),
    ErrorCode.NODE_ALREADY_REGISTERED: (_S, "Node is already registered"),
    ErrorCode.NODE_NOT_ACTIVE: (_S, "Node is not active"),
    ErrorCode.NODE_ALREADY_ACTIVE: (_S, "Node is already active"),
    ErrorCode.NO_UNBONDING_IN_PROGRESS: (_S, "No unbonding in progress"),
    ErrorCode.UNBONDING_PERIOD_ACTIVE: (_S, "Unbonding period still active"),
    ErrorCode.UNBONDING_IN_PROGRESS: (_S, "Node is unbonding"),
    ErrorCode.LOW_REPUTATION: (_S, "Node reputation too low"),
    ErrorCode.SYSTEM_NOT_INITIALIZED: (_S, "Credit system is not initialized"),
    ErrorCode.SYSTEM_ALREADY_INITIALIZED: (_S, "Credit system is already initialized"),
    ErrorCode.SYSTEM_NOT_ACTIVE: (_S, "Credit system is not currently active"),
    ErrorCode.CREDIT_NOT_FOUND: (_S, "Access credit does not exist"),
    ErrorCode.CREDIT_ALREADY_EXISTS: (_S, "Access credit slot already used"),
    ErrorCode.CREDIT_NOT_ACTIVE: (_S, "Access credit is not active"),
    ErrorCode.CREDIT_EXPIRED: (_S, "Access credit has expired"),
    ErrorCode.POOL_NOT_FOUND: (_S, "Sponsorship pool does not exist"),
    ErrorCode.POOL_ALREADY_EXISTS: (_S, "Sponsorship pool already exists"),
    ErrorCode.POOL_NOT_ACTIVE: (_S, "Pool is not active"),
    ErrorCode.BENEFICIARY_NOT_FOUND: (_S, "Beneficiary has no grant in this pool"),
    ErrorCode.BENEFICIARY_NOT_WHITELISTED: (_S, "Beneficiary is not whitelisted for this pool"),
    ErrorCode.BENEFICIARY_ALREADY_WHITELISTED: (_S, "Beneficiary is already whitelisted"),
    ErrorCode.REQUEST_NOT_FOUND: (_S, "Selection request does not exist"),
    ErrorCode.REQUEST_ALREADY_EXISTS: (_S, "Selection request already exists"),
    ErrorCode.ALREADY_FULFILLED: (_S, "Selection request already fulfilled"),
    ErrorCode.INSUFFICIENT_STAKE: (_C, "Insufficient stake amount"),
    ErrorCode.INSUFFICIENT_BALANCE: (_C, "Insufficient balance for operation"),
    ErrorCode.INSUFFICIENT_FUNDS: (_C, "Insufficient escrow funds for transfer"),
    ErrorCode.NO_EARNINGS_TO_CLAIM: (_C, "No earnings available to claim"),
    ErrorCode.EARNINGS_VAULT_UNDERFUNDED: (_C, "Earnings escrow cannot cover the claim"),
    ErrorCode.INSUFFICIENT_ALLOCATION: (_C, "Insufficient allocation remaining for beneficiary"),
    ErrorCode.INSUFFICIENT_POOL_BALANCE: (_C, "Insufficient balance remaining in pool"),
    ErrorCode.POOL_FULL: (_C, "Pool has reached maximum beneficiary capacity"),
    ErrorCode.ARITHMETIC_OVERFLOW: (_A, "Arithmetic overflow"),
    ErrorCode.ARITHMETIC_UNDERFLOW: (_A, "Arithmetic underflow"),
    ErrorCode.DIVISION_BY_ZERO: (_A, "Division by zero"),
    ErrorCode.UNAUTHORIZED: (_Z, "Caller is not authorized for this operation"),
    ErrorCode.INVALID_SIGNATURE: (_Z, "Signature verification failed"),
    ErrorCode.FEE_VAULT_MISMATCH: (_Z, "Fee vault does not match the registry"),
    ErrorCode.MISSING_SIGNER: (_Z, "Call carries no verified identity"),
}


def error_kind(code: ErrorCode) -> ErrorKind:
    return _ERROR_INFO[code][0]


def error_message(code: ErrorCode) -> str:
    return _ERROR_INFO[code][1]


class LedgerError(Exception):
    """Base class for every ledger failure."""

    def __init__(self, code: ErrorCode, detail: Optional[str] = None):
        self.code = code
        self.kind = error_kind(code)
        self.detail = detail
        self.message = error_message(code)
        text = f"{code.name}: {self.message}"
        if detail:
            text = f"{text} ({detail})"
        super().__init__(text)

    def to_dict(self) -> Dict[str, object]:
        return {
            "code": self.code.value,
            "name": self.code.name,
            "kind": self.kind.value,
            "message": self.message,
            "detail": self.detail,
        }


class ValidationError(LedgerError):
    """Malformed or out-of-range input."""


class StateError(LedgerError):
    """Operation invalid for the entity's current state."""


class CapacityError(LedgerError):
    """Insufficient stake, balance, funding or capacity."""


class LedgerArithmeticError(LedgerError):
    """Checked arithmetic overflowed or underflowed."""


class AuthorizationError(LedgerError):
    """Caller does not match the required owner or authority."""


_KIND_TO_CLASS: Dict[ErrorKind, Type[LedgerError]] = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.STATE: StateError,
    ErrorKind.CAPACITY: CapacityError,
    ErrorKind.ARITHMETIC: LedgerArithmeticError,
    ErrorKind.AUTHORIZATION: AuthorizationError,
}


def ledger_error(code: ErrorCode, detail: Optional[str] = None) -> LedgerError:
    """Build the exception subclass matching the kind of `code`."""
    return _KIND_TO_CLASS[error_kind(code)](code, detail)
