"""
Ledger audit events - observer interface for committed operations.

Every successful public operation emits exactly one event describing what it
did (redeeming from a pool may add a refill signal). Events are buffered by
the transaction and delivered to sinks only after commit, so a failed call is
never observable.

Design Principles:
- Events are immutable (frozen dataclasses)
- Sinks are optional; exceptions raised by a sink are logged, never propagated
- The event schema, not the transport, is the compatibility surface
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional, Protocol, Type, TypeVar

from veilpool.logging import AUDIT_LOGGER

from .identity import Address

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger(AUDIT_LOGGER)


@dataclass(frozen=True)
class AuditEvent:
    """Base event. `name` is the stable event type identifier."""
    name: ClassVar[str] = "event"
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"event": self.name}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Address):
                value = str(value)
            elif isinstance(value, Enum):
                value = value.value
            elif isinstance(value, bytes):
                value = value.hex()
            data[f.name] = value
        return data


# =============================================================================
# Node Registry
# =============================================================================

@dataclass(frozen=True)
class RegistryInitialized(AuditEvent):
    name: ClassVar[str] = "registry_initialized"
    authority: Address
    fee_vault: Address


@dataclass(frozen=True)
class NodeRegistered(AuditEvent):
    name: ClassVar[str] = "node_registered"
    operator: Address
    location: str
    ip_address: str
    bandwidth_gbps: int


@dataclass(frozen=True)
class StakeDeposited(AuditEvent):
    name: ClassVar[str] = "stake_deposited"
    operator: Address
    amount: int
    total_stake: int
    activated: bool


@dataclass(frozen=True)
class UnstakeInitiated(AuditEvent):
    name: ClassVar[str] = "unstake_initiated"
    operator: Address
    amount: int
    unbonding_until: int


@dataclass(frozen=True)
class StakeWithdrawn(AuditEvent):
    name: ClassVar[str] = "stake_withdrawn"
    operator: Address
    amount: int


@dataclass(frozen=True)
class HeartbeatRecorded(AuditEvent):
    name: ClassVar[str] = "heartbeat_recorded"
    operator: Address
    bandwidth_served: int
    total_bandwidth_served: int


@dataclass(frozen=True)
class ReputationUpdated(AuditEvent):
    name: ClassVar[str] = "reputation_updated"
    operator: Address
    old_score: int
    new_score: int


@dataclass(frozen=True)
class NodeSlashed(AuditEvent):
    name: ClassVar[str] = "node_slashed"
    operator: Address
    violation: str
    slash_amount: int
    remaining_stake: int
    deactivated: bool


@dataclass(frozen=True)
class EarningsRecorded(AuditEvent):
    name: ClassVar[str] = "earnings_recorded"
    operator: Address
    gross_amount: int
    operator_amount: int
    protocol_fee: int


@dataclass(frozen=True)
class EarningsVaultFunded(AuditEvent):
    name: ClassVar[str] = "earnings_vault_funded"
    funder: Address
    amount: int
    vault_balance: int


@dataclass(frozen=True)
class EarningsClaimed(AuditEvent):
    name: ClassVar[str] = "earnings_claimed"
    operator: Address
    amount: int


@dataclass(frozen=True)
class NodeDeactivated(AuditEvent):
    name: ClassVar[str] = "node_deactivated"
    operator: Address


@dataclass(frozen=True)
class NodeReactivated(AuditEvent):
    name: ClassVar[str] = "node_reactivated"
    operator: Address


# =============================================================================
# Access-Credit Issuer
# =============================================================================

@dataclass(frozen=True)
class IssuerInitialized(AuditEvent):
    name: ClassVar[str] = "issuer_initialized"
    authority: Address
    price_oracle: Address
    treasury: Address
    base_price: int


@dataclass(frozen=True)
class CreditPurchased(AuditEvent):
    name: ClassVar[str] = "credit_purchased"
    owner: Address
    units: int
    price_paid: int
    expiry: int


@dataclass(frozen=True)
class SubscriptionPurchased(AuditEvent):
    name: ClassVar[str] = "subscription_purchased"
    owner: Address
    tier: str
    units: int
    price_paid: int
    expiry: int


@dataclass(frozen=True)
class PoolCreditGranted(AuditEvent):
    name: ClassVar[str] = "pool_credit_granted"
    owner: Address
    pool_authority: Address
    pool_id: int
    units: int
    expiry: int


@dataclass(frozen=True)
class CreditRedeemed(AuditEvent):
    name: ClassVar[str] = "credit_redeemed"
    owner: Address
    servicing_node: Address
    units: int
    remaining_units: int
    pool_id: Optional[int]


@dataclass(frozen=True)
class CreditExtended(AuditEvent):
    name: ClassVar[str] = "credit_extended"
    owner: Address
    additional_days: int
    new_expiry: int
    price_paid: int


@dataclass(frozen=True)
class CreditToppedUp(AuditEvent):
    name: ClassVar[str] = "credit_topped_up"
    owner: Address
    additional_units: int
    new_balance: int
    price_paid: int


@dataclass(frozen=True)
class CreditValidated(AuditEvent):
    name: ClassVar[str] = "credit_validated"
    owner: Address
    required_units: int
    is_valid: bool


@dataclass(frozen=True)
class CreditDeactivated(AuditEvent):
    name: ClassVar[str] = "credit_deactivated"
    owner: Address
    remaining_units: int


@dataclass(frozen=True)
class PricingUpdated(AuditEvent):
    name: ClassVar[str] = "pricing_updated"
    old_price: int
    new_price: int


@dataclass(frozen=True)
class SystemActivityChanged(AuditEvent):
    name: ClassVar[str] = "system_activity_changed"
    is_active: bool


# =============================================================================
# Sponsorship Pools
# =============================================================================

@dataclass(frozen=True)
class PoolCreated(AuditEvent):
    name: ClassVar[str] = "pool_created"
    sponsor: Address
    pool_id: int
    pool_name: str
    total_funding: int
    allocation_per_user: int


@dataclass(frozen=True)
class BeneficiaryAdded(AuditEvent):
    name: ClassVar[str] = "beneficiary_added"
    sponsor: Address
    pool_id: int
    beneficiary: Address
    allocated_units: int
    reactivated: bool


@dataclass(frozen=True)
class BeneficiaryRemoved(AuditEvent):
    name: ClassVar[str] = "beneficiary_removed"
    sponsor: Address
    pool_id: int
    beneficiary: Address


@dataclass(frozen=True)
class PoolFunded(AuditEvent):
    name: ClassVar[str] = "pool_funded"
    sponsor: Address
    pool_id: int
    amount: int
    new_balance: int


@dataclass(frozen=True)
class AccessRedeemed(AuditEvent):
    name: ClassVar[str] = "access_redeemed"
    sponsor: Address
    pool_id: int
    beneficiary: Address
    units: int
    remaining_allocation: int


@dataclass(frozen=True)
class AutoRefillTriggered(AuditEvent):
    name: ClassVar[str] = "auto_refill_triggered"
    sponsor: Address
    pool_id: int
    remaining_balance: int
    threshold: int


@dataclass(frozen=True)
class PoolClosed(AuditEvent):
    name: ClassVar[str] = "pool_closed"
    sponsor: Address
    pool_id: int
    refunded_amount: int
    total_used: int


@dataclass(frozen=True)
class AutoRefillUpdated(AuditEvent):
    name: ClassVar[str] = "auto_refill_updated"
    sponsor: Address
    pool_id: int
    enabled: bool
    threshold: int


@dataclass(frozen=True)
class AllocationExtended(AuditEvent):
    name: ClassVar[str] = "allocation_extended"
    sponsor: Address
    pool_id: int
    beneficiary: Address
    additional_units: int
    new_allocation: int


# =============================================================================
# Randomized Node Selection
# =============================================================================

@dataclass(frozen=True)
class SelectionRequested(AuditEvent):
    name: ClassVar[str] = "selection_requested"
    requester: Address
    nonce: int
    seed: bytes


@dataclass(frozen=True)
class NodeSelected(AuditEvent):
    name: ClassVar[str] = "node_selected"
    requester: Address
    nonce: int
    selected_node: Address
    selected_index: int
    total_weight: int


# =============================================================================
# Sinks
# =============================================================================

class AuditSink(Protocol):
    """
    Receiver of committed audit events.

    Called synchronously after the owning transaction commits.
    """

    def on_event(self, event: AuditEvent) -> None:
        ...


class LoggingSink:
    """Sink that writes every event to the audit logger."""

    def __init__(self, log_level: int = logging.INFO):
        self._level = log_level

    def on_event(self, event: AuditEvent) -> None:
        audit_logger.log(self._level, f"[AUDIT] {event.name}", extra={"context": event.to_dict()})


E = TypeVar("E", bound=AuditEvent)


class RecordingSink:
    """In-memory append-only event log."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    def on_event(self, event: AuditEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: Type[E]) -> List[E]:
        return [e for e in self.events if isinstance(e, event_type)]

    def last(self) -> Optional[AuditEvent]:
        return self.events[-1] if self.events else None

    def clear(self) -> None:
        self.events.clear()


class CallbackSink:
    """Adapter turning a plain callable into a sink."""

    def __init__(self, callback: Callable[[AuditEvent], None]):
        self._callback = callback

    def on_event(self, event: AuditEvent) -> None:
        self._callback(event)
