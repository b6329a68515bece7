"""
VeilPool ledger core - node stake, access credits, sponsorship pools and
weighted node selection.

Every component operates on a shared `Ledger` (records + escrow + clock +
audit sinks) and runs each public operation as one all-or-nothing
transaction.
"""

from .constants import (
    MIN_STAKE,
    TOKEN_DECIMALS,
    TOKEN_UNIT,
    UNBONDING_PERIOD,
)
from .errors import (
    AuthorizationError,
    CapacityError,
    ErrorCode,
    ErrorKind,
    LedgerArithmeticError,
    LedgerError,
    StateError,
    ValidationError,
)
from .identity import (
    Address,
    CallContext,
    Keypair,
    derive_address,
    verify_signature,
)
from .events import (
    AuditEvent,
    AuditSink,
    CallbackSink,
    LoggingSink,
    RecordingSink,
)
from .substrate import (
    Clock,
    EscrowLedger,
    InMemoryEscrow,
    Ledger,
    ManualClock,
    SystemClock,
)
from .config import (
    IssuerConfig,
    LedgerConfig,
    LoggingConfig,
    PoolConfig,
    RegistryConfig,
    SelectionConfig,
    get_config,
    reset_config,
    set_config,
)
from .registry import (
    GlobalRegistry,
    NodeAccount,
    NodeRegistry,
    ViolationKind,
)
from .pricing import (
    PriceSchedule,
    SubscriptionTier,
    calculate_price,
    extension_price,
)
from .credits import (
    AccessCredit,
    AccessCreditIssuer,
    CreditVariant,
    PricingConfig,
)
from .pools import (
    BeneficiaryGrant,
    SponsorshipPool,
    SponsorshipPoolManager,
)
from .selection import (
    RandomNodeSelector,
    RandomSelectionRequest,
    Selection,
    select_weighted_node,
)

__all__ = [
    # Constants
    "MIN_STAKE",
    "TOKEN_DECIMALS",
    "TOKEN_UNIT",
    "UNBONDING_PERIOD",
    # Errors
    "AuthorizationError",
    "CapacityError",
    "ErrorCode",
    "ErrorKind",
    "LedgerArithmeticError",
    "LedgerError",
    "StateError",
    "ValidationError",
    # Identity
    "Address",
    "CallContext",
    "Keypair",
    "derive_address",
    "verify_signature",
    # Events
    "AuditEvent",
    "AuditSink",
    "CallbackSink",
    "LoggingSink",
    "RecordingSink",
    # Substrate
    "Clock",
    "EscrowLedger",
    "InMemoryEscrow",
    "Ledger",
    "ManualClock",
    "SystemClock",
    # Config
    "IssuerConfig",
    "LedgerConfig",
    "LoggingConfig",
    "PoolConfig",
    "RegistryConfig",
    "SelectionConfig",
    "get_config",
    "reset_config",
    "set_config",
    # Registry
    "GlobalRegistry",
    "NodeAccount",
    "NodeRegistry",
    "ViolationKind",
    # Pricing
    "PriceSchedule",
    "SubscriptionTier",
    "calculate_price",
    "extension_price",
    # Credits
    "AccessCredit",
    "AccessCreditIssuer",
    "CreditVariant",
    "PricingConfig",
    # Pools
    "BeneficiaryGrant",
    "SponsorshipPool",
    "SponsorshipPoolManager",
    # Selection
    "RandomNodeSelector",
    "RandomSelectionRequest",
    "Selection",
    "select_weighted_node",
]
