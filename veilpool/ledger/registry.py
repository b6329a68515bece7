"""
Node Registry - stake, slashing, unbonding and reputation for bandwidth nodes.

Provides:
1. Node registration and collateral staking with automatic activation
2. Two-step unbonding (unstake -> wait -> withdraw_unstaked)
3. Policy slashing to the protocol fee vault
4. Heartbeat/bandwidth accounting and operator earnings

Node lifecycle:
    Unregistered -> Inactive (stake < min) -> Active
    Active -> Unbonding -> (withdrawn) Inactive
    Active -> Slashed below min -> Inactive -> Active (reactivate)

Invariants:
- registry.total_stake == sum(node.stake_amount) over all nodes
- registry.total_earnings_owed == sum(node.earnings_accumulated)
- stake escrow balance of a node == node.stake_amount
- an active node has stake >= min_stake and no withdrawal pending
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .checked import bps_of, checked_add, checked_add_i64, checked_sub, require_u64
from .config import RegistryConfig
from .constants import MAX_REPUTATION, U16_MAX
from .errors import ErrorCode, ledger_error
from .events import (
    EarningsClaimed,
    EarningsRecorded,
    EarningsVaultFunded,
    HeartbeatRecorded,
    NodeDeactivated,
    NodeReactivated,
    NodeRegistered,
    NodeSlashed,
    RegistryInitialized,
    ReputationUpdated,
    StakeDeposited,
    StakeWithdrawn,
    UnstakeInitiated,
)
from .identity import Address, CallContext, derive_address
from .substrate import Ledger, atomic, ledger_record

logger = logging.getLogger(__name__)


REGISTRY_KEY = derive_address("registry")
EARNINGS_VAULT = derive_address("earnings")


def node_key(operator: Address) -> Address:
    return derive_address("node", operator)


def stake_vault(operator: Address) -> Address:
    return derive_address("stake", node_key(operator))


class ViolationKind(Enum):
    """Slashable offences."""
    DOWNTIME = "downtime"
    MALICIOUS = "malicious"


# =============================================================================
# Records
# =============================================================================

@ledger_record
@dataclass
class GlobalRegistry:
    """Protocol-wide aggregate, created once by `initialize`."""
    KIND = "global_registry"

    authority: Address
    fee_vault: Address
    total_nodes: int = 0
    total_stake: int = 0
    total_bandwidth_served: int = 0
    total_earnings_distributed: int = 0
    total_earnings_owed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "authority": str(self.authority),
            "fee_vault": str(self.fee_vault),
            "total_nodes": self.total_nodes,
            "total_stake": self.total_stake,
            "total_bandwidth_served": self.total_bandwidth_served,
            "total_earnings_distributed": self.total_earnings_distributed,
            "total_earnings_owed": self.total_earnings_owed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GlobalRegistry":
        return cls(
            authority=Address.from_hex(data["authority"]),
            fee_vault=Address.from_hex(data["fee_vault"]),
            total_nodes=data.get("total_nodes", 0),
            total_stake=data.get("total_stake", 0),
            total_bandwidth_served=data.get("total_bandwidth_served", 0),
            total_earnings_distributed=data.get("total_earnings_distributed", 0),
            total_earnings_owed=data.get("total_earnings_owed", 0),
        )


@ledger_record
@dataclass
class NodeAccount:
    """
    One bandwidth-supplying node, keyed by its operator.

    `unbonding_until` is None when no withdrawal is pending.
    """
    KIND = "node"

    operator: Address
    location: str
    ip_address: str
    bandwidth_gbps: int
    registered_at: int
    last_heartbeat: int
    stake_amount: int = 0
    reputation: int = MAX_REPUTATION
    total_bandwidth_served: int = 0
    earnings_accumulated: int = 0
    is_active: bool = False
    unbonding_until: Optional[int] = None
    pending_unstake: int = 0
    slash_count: int = 0

    @property
    def is_unbonding(self) -> bool:
        return self.unbonding_until is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operator": str(self.operator),
            "location": self.location,
            "ip_address": self.ip_address,
            "bandwidth_gbps": self.bandwidth_gbps,
            "registered_at": self.registered_at,
            "last_heartbeat": self.last_heartbeat,
            "stake_amount": self.stake_amount,
            "reputation": self.reputation,
            "total_bandwidth_served": self.total_bandwidth_served,
            "earnings_accumulated": self.earnings_accumulated,
            "is_active": self.is_active,
            "unbonding_until": self.unbonding_until,
            "pending_unstake": self.pending_unstake,
            "slash_count": self.slash_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeAccount":
        return cls(
            operator=Address.from_hex(data["operator"]),
            location=data["location"],
            ip_address=data["ip_address"],
            bandwidth_gbps=data["bandwidth_gbps"],
            registered_at=data["registered_at"],
            last_heartbeat=data["last_heartbeat"],
            stake_amount=data.get("stake_amount", 0),
            reputation=data.get("reputation", MAX_REPUTATION),
            total_bandwidth_served=data.get("total_bandwidth_served", 0),
            earnings_accumulated=data.get("earnings_accumulated", 0),
            is_active=data.get("is_active", False),
            unbonding_until=data.get("unbonding_until"),
            pending_unstake=data.get("pending_unstake", 0),
            slash_count=data.get("slash_count", 0),
        )


# =============================================================================
# Node Registry
# =============================================================================

class NodeRegistry:
    """
    Manage node stake, slashing, unbonding and earnings.

    Every public mutating method runs in one ledger transaction and emits
    exactly one audit event on success.

    Usage:
        registry = NodeRegistry(ledger)
        registry.initialize(CallContext.of(admin), fee_vault)
        registry.register(CallContext.of(operator), "eu-west", "10.0.0.1", 10)
        registry.stake(CallContext.of(operator), MIN_STAKE)
    """

    def __init__(self, ledger: Ledger, config: Optional[RegistryConfig] = None):
        self.ledger = ledger
        self.config = config or RegistryConfig()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_registry(self) -> Optional[GlobalRegistry]:
        return self.ledger.get(REGISTRY_KEY, GlobalRegistry)

    def get_node(self, operator: Address) -> Optional[NodeAccount]:
        return self.ledger.get(node_key(operator), NodeAccount)

    def nodes(self) -> List[NodeAccount]:
        return list(self.ledger.records_of(NodeAccount))

    def active_nodes(self) -> List[NodeAccount]:
        return [n for n in self.ledger.records_of(NodeAccount) if n.is_active]

    def earnings_vault_balance(self) -> int:
        return self.ledger.escrow.balance_of(EARNINGS_VAULT)

    def _registry(self) -> GlobalRegistry:
        return self.ledger.load(REGISTRY_KEY, GlobalRegistry, ErrorCode.REGISTRY_NOT_INITIALIZED)

    def _node(self, operator: Address) -> NodeAccount:
        node = self.ledger.load(node_key(operator), NodeAccount, ErrorCode.NODE_NOT_REGISTERED)
        if node.operator != operator:
            raise ledger_error(ErrorCode.UNAUTHORIZED, "node operator mismatch")
        return node

    def _require_authority(self, ctx: CallContext, registry: GlobalRegistry) -> None:
        ctx.require_signer(registry.authority)

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    @atomic
    def initialize(self, ctx: CallContext, fee_vault: Address) -> GlobalRegistry:
        """Create the global registry; the caller becomes its authority."""
        registry = GlobalRegistry(authority=ctx.signer, fee_vault=fee_vault)
        self.ledger.create(REGISTRY_KEY, registry, ErrorCode.REGISTRY_ALREADY_INITIALIZED)
        self.ledger.emit(RegistryInitialized(
            timestamp=self.ledger.now(),
            authority=registry.authority,
            fee_vault=fee_vault,
        ))
        logger.info(f"Registry initialized: authority={registry.authority.short()}")
        return registry

    @atomic
    def register(
        self,
        ctx: CallContext,
        location: str,
        ip_address: str,
        bandwidth_gbps: int,
    ) -> NodeAccount:
        """
        Register the caller as a node operator.

        The node starts inactive with zero stake and full reputation.

        Raises:
            ValidationError: location/address too long, bandwidth out of range
            StateError: registry not initialized, node already registered
        """
        if len(location.encode("utf-8")) > self.config.max_location_len:
            raise ledger_error(ErrorCode.LOCATION_TOO_LONG)
        if len(ip_address.encode("utf-8")) > self.config.max_address_len:
            raise ledger_error(ErrorCode.ADDRESS_TOO_LONG)
        if isinstance(bandwidth_gbps, bool) or not isinstance(bandwidth_gbps, int):
            raise TypeError("bandwidth_gbps must be an int")
        if not (0 < bandwidth_gbps <= U16_MAX):
            raise ledger_error(ErrorCode.INVALID_BANDWIDTH, str(bandwidth_gbps))

        registry = self._registry()
        operator = ctx.signer
        now = self.ledger.now()
        node = NodeAccount(
            operator=operator,
            location=location,
            ip_address=ip_address,
            bandwidth_gbps=bandwidth_gbps,
            registered_at=now,
            last_heartbeat=now,
            reputation=self.config.initial_reputation,
        )
        self.ledger.create(node_key(operator), node, ErrorCode.NODE_ALREADY_REGISTERED)
        registry.total_nodes = checked_add(registry.total_nodes, 1, "total_nodes")

        self.ledger.emit(NodeRegistered(
            timestamp=now,
            operator=operator,
            location=location,
            ip_address=ip_address,
            bandwidth_gbps=bandwidth_gbps,
        ))
        logger.info(f"Node registered: {operator.short()} at {location}")
        return node

    # -------------------------------------------------------------------------
    # Staking
    # -------------------------------------------------------------------------

    @atomic
    def stake(self, ctx: CallContext, amount: int) -> NodeAccount:
        """
        Move `amount` from the operator's wallet into the node's stake escrow.

        The resulting stake must reach the minimum, so a first deposit is at
        least `min_stake` and later deposits may top up by any amount. A node
        activates automatically once its stake reaches the minimum, unless a
        withdrawal is pending.

        Raises:
            ValidationError: amount is zero or negative
            CapacityError: resulting stake below minimum, wallet too small
        """
        require_u64(amount, "stake amount")
        if amount == 0:
            raise ledger_error(ErrorCode.INVALID_AMOUNT, "stake amount must be positive")

        registry = self._registry()
        operator = ctx.signer
        node = self._node(operator)

        new_stake = checked_add(node.stake_amount, amount, "stake_amount")
        if new_stake < self.config.min_stake:
            raise ledger_error(
                ErrorCode.INSUFFICIENT_STAKE,
                f"stake {new_stake} below minimum {self.config.min_stake}",
            )

        self.ledger.escrow.transfer(operator, stake_vault(operator), amount)
        node.stake_amount = new_stake
        registry.total_stake = checked_add(registry.total_stake, amount, "total_stake")

        activated = False
        if not node.is_active and not node.is_unbonding and node.stake_amount >= self.config.min_stake:
            node.is_active = True
            activated = True

        self.ledger.emit(StakeDeposited(
            timestamp=self.ledger.now(),
            operator=operator,
            amount=amount,
            total_stake=node.stake_amount,
            activated=activated,
        ))
        logger.info(
            f"Stake deposited: {operator.short()} +{amount} -> {node.stake_amount}"
            + (" (activated)" if activated else "")
        )
        return node

    @atomic
    def unstake(self, ctx: CallContext, amount: int) -> NodeAccount:
        """
        Start the unbonding timelock and deactivate the node.

        No funds move here; `withdraw_unstaked` releases the whole stake once
        the timelock has elapsed.

        Raises:
            ValidationError: amount is zero
            CapacityError: amount exceeds stake, or leaves a sub-minimum remainder
        """
        require_u64(amount, "unstake amount")
        if amount == 0:
            raise ledger_error(ErrorCode.INVALID_AMOUNT, "unstake amount must be positive")

        operator = ctx.signer
        node = self._node(operator)
        if amount > node.stake_amount:
            raise ledger_error(
                ErrorCode.INSUFFICIENT_BALANCE,
                f"unstake {amount} exceeds stake {node.stake_amount}",
            )
        remaining = checked_sub(node.stake_amount, amount, "unstake remainder")
        if remaining != 0 and remaining < self.config.min_stake:
            raise ledger_error(
                ErrorCode.INSUFFICIENT_STAKE,
                f"remaining stake {remaining} would be below minimum {self.config.min_stake}",
            )

        now = self.ledger.now()
        node.unbonding_until = checked_add_i64(now, self.config.unbonding_period_seconds, "unbonding_until")
        node.pending_unstake = amount
        node.is_active = False

        self.ledger.emit(UnstakeInitiated(
            timestamp=now,
            operator=operator,
            amount=amount,
            unbonding_until=node.unbonding_until,
        ))
        logger.info(f"Unstake initiated: {operator.short()} {amount}, unbonding until {node.unbonding_until}")
        return node

    @atomic
    def withdraw_unstaked(self, ctx: CallContext) -> int:
        """
        Release the entire stake to the operator once unbonding has elapsed.

        Returns:
            The amount withdrawn
        """
        registry = self._registry()
        operator = ctx.signer
        node = self._node(operator)

        if node.unbonding_until is None:
            raise ledger_error(ErrorCode.NO_UNBONDING_IN_PROGRESS)
        now = self.ledger.now()
        if now < node.unbonding_until:
            raise ledger_error(
                ErrorCode.UNBONDING_PERIOD_ACTIVE,
                f"{node.unbonding_until - now}s remaining",
            )

        amount = node.stake_amount
        self.ledger.escrow.transfer(stake_vault(operator), operator, amount)
        registry.total_stake = checked_sub(registry.total_stake, amount, "total_stake")
        node.stake_amount = 0
        node.unbonding_until = None
        node.pending_unstake = 0

        self.ledger.emit(StakeWithdrawn(timestamp=now, operator=operator, amount=amount))
        logger.info(f"Stake withdrawn: {operator.short()} {amount}")
        return amount

    # -------------------------------------------------------------------------
    # Operation
    # -------------------------------------------------------------------------

    @atomic
    def heartbeat(self, ctx: CallContext, bandwidth_served: int) -> NodeAccount:
        """Record liveness and the bandwidth served since the last heartbeat."""
        require_u64(bandwidth_served, "bandwidth_served")
        registry = self._registry()
        operator = ctx.signer
        node = self._node(operator)
        if not node.is_active:
            raise ledger_error(ErrorCode.NODE_NOT_ACTIVE)

        now = self.ledger.now()
        node.last_heartbeat = now
        node.total_bandwidth_served = checked_add(
            node.total_bandwidth_served, bandwidth_served, "node bandwidth"
        )
        registry.total_bandwidth_served = checked_add(
            registry.total_bandwidth_served, bandwidth_served, "registry bandwidth"
        )

        self.ledger.emit(HeartbeatRecorded(
            timestamp=now,
            operator=operator,
            bandwidth_served=bandwidth_served,
            total_bandwidth_served=node.total_bandwidth_served,
        ))
        logger.debug(f"Heartbeat: {operator.short()} +{bandwidth_served}")
        return node

    @atomic
    def update_reputation(self, ctx: CallContext, operator: Address, score: int) -> NodeAccount:
        """Overwrite a node's reputation score (registry authority only)."""
        if isinstance(score, bool) or not isinstance(score, int):
            raise TypeError("score must be an int")
        if not (0 <= score <= MAX_REPUTATION):
            raise ledger_error(ErrorCode.INVALID_REPUTATION, str(score))

        registry = self._registry()
        self._require_authority(ctx, registry)
        node = self._node(operator)

        old_score = node.reputation
        node.reputation = score

        self.ledger.emit(ReputationUpdated(
            timestamp=self.ledger.now(),
            operator=operator,
            old_score=old_score,
            new_score=score,
        ))
        logger.info(f"Reputation updated: {operator.short()} {old_score} -> {score}")
        return node

    def slash_bps(self, violation: ViolationKind) -> int:
        if violation is ViolationKind.DOWNTIME:
            return self.config.downtime_slash_bps
        if violation is ViolationKind.MALICIOUS:
            return self.config.malicious_slash_bps
        raise ValueError(f"Unknown violation kind: {violation}")

    @atomic
    def slash(
        self,
        ctx: CallContext,
        operator: Address,
        violation: ViolationKind,
        fee_vault: Optional[Address] = None,
    ) -> int:
        """
        Forfeit a policy fraction of an active node's stake to the fee vault.

        `fee_vault`, when given, must be the vault recorded at initialization.

        Returns:
            The slashed amount
        """
        registry = self._registry()
        self._require_authority(ctx, registry)
        if fee_vault is not None and fee_vault != registry.fee_vault:
            raise ledger_error(ErrorCode.FEE_VAULT_MISMATCH, fee_vault.short())

        node = self._node(operator)
        if not node.is_active:
            raise ledger_error(ErrorCode.NODE_NOT_ACTIVE)

        slash_amount = bps_of(node.stake_amount, self.slash_bps(violation), "slash amount")
        self.ledger.escrow.transfer(stake_vault(operator), registry.fee_vault, slash_amount)
        node.stake_amount = checked_sub(node.stake_amount, slash_amount, "stake_amount")
        registry.total_stake = checked_sub(registry.total_stake, slash_amount, "total_stake")
        node.slash_count = checked_add(node.slash_count, 1, "slash_count")

        deactivated = node.stake_amount < self.config.min_stake
        if deactivated:
            node.is_active = False

        self.ledger.emit(NodeSlashed(
            timestamp=self.ledger.now(),
            operator=operator,
            violation=violation.value,
            slash_amount=slash_amount,
            remaining_stake=node.stake_amount,
            deactivated=deactivated,
        ))
        logger.warning(
            f"Node slashed ({violation.value}): {operator.short()} -{slash_amount}, "
            f"remaining {node.stake_amount}" + (", deactivated" if deactivated else "")
        )
        return slash_amount

    # -------------------------------------------------------------------------
    # Earnings
    # -------------------------------------------------------------------------

    def split_earnings(self, gross_amount: int) -> Tuple[int, int]:
        """Return (operator_amount, protocol_fee) for a gross amount."""
        protocol_fee = bps_of(gross_amount, self.config.protocol_fee_bps, "protocol fee")
        return checked_sub(gross_amount, protocol_fee, "operator earnings"), protocol_fee

    @atomic
    def record_earnings(self, ctx: CallContext, gross_amount: int) -> NodeAccount:
        """
        Credit the operator's net share of `gross_amount` to its claimable balance.

        Only counters move; `fund_earnings` is the path that puts the matching
        tokens into the earnings escrow.
        """
        require_u64(gross_amount, "gross_amount")
        registry = self._registry()
        operator = ctx.signer
        node = self._node(operator)
        if not node.is_active:
            raise ledger_error(ErrorCode.NODE_NOT_ACTIVE)

        operator_amount, protocol_fee = self.split_earnings(gross_amount)
        node.earnings_accumulated = checked_add(
            node.earnings_accumulated, operator_amount, "earnings_accumulated"
        )
        registry.total_earnings_distributed = checked_add(
            registry.total_earnings_distributed, gross_amount, "total_earnings_distributed"
        )
        registry.total_earnings_owed = checked_add(
            registry.total_earnings_owed, operator_amount, "total_earnings_owed"
        )

        self.ledger.emit(EarningsRecorded(
            timestamp=self.ledger.now(),
            operator=operator,
            gross_amount=gross_amount,
            operator_amount=operator_amount,
            protocol_fee=protocol_fee,
        ))
        logger.info(f"Earnings recorded: {operator.short()} net {operator_amount} (fee {protocol_fee})")
        return node

    @atomic
    def fund_earnings(self, ctx: CallContext, amount: int) -> int:
        """
        Move tokens from the caller's wallet into the earnings escrow.

        Returns:
            The escrow balance after funding
        """
        require_u64(amount, "amount")
        if amount == 0:
            raise ledger_error(ErrorCode.INVALID_AMOUNT, "funding must be positive")
        self._registry()

        funder = ctx.signer
        self.ledger.escrow.transfer(funder, EARNINGS_VAULT, amount)
        balance = self.earnings_vault_balance()

        self.ledger.emit(EarningsVaultFunded(
            timestamp=self.ledger.now(),
            funder=funder,
            amount=amount,
            vault_balance=balance,
        ))
        logger.info(f"Earnings vault funded by {funder.short()}: +{amount} -> {balance}")
        return balance

    @atomic
    def claim_earnings(self, ctx: CallContext) -> int:
        """
        Pay out the operator's entire claimable balance from the earnings escrow.

        Raises:
            CapacityError: nothing to claim, or the escrow cannot cover it
        """
        registry = self._registry()
        operator = ctx.signer
        node = self._node(operator)

        amount = node.earnings_accumulated
        if amount == 0:
            raise ledger_error(ErrorCode.NO_EARNINGS_TO_CLAIM)
        vault_balance = self.earnings_vault_balance()
        if vault_balance < amount:
            raise ledger_error(
                ErrorCode.EARNINGS_VAULT_UNDERFUNDED,
                f"vault holds {vault_balance}, owed {amount}",
            )

        self.ledger.escrow.transfer(EARNINGS_VAULT, operator, amount)
        node.earnings_accumulated = 0
        registry.total_earnings_owed = checked_sub(registry.total_earnings_owed, amount, "total_earnings_owed")

        self.ledger.emit(EarningsClaimed(timestamp=self.ledger.now(), operator=operator, amount=amount))
        logger.info(f"Earnings claimed: {operator.short()} {amount}")
        return amount

    # -------------------------------------------------------------------------
    # Activation
    # -------------------------------------------------------------------------

    @atomic
    def deactivate(self, ctx: CallContext) -> NodeAccount:
        operator = ctx.signer
        node = self._node(operator)
        if not node.is_active:
            raise ledger_error(ErrorCode.NODE_NOT_ACTIVE)
        node.is_active = False

        self.ledger.emit(NodeDeactivated(timestamp=self.ledger.now(), operator=operator))
        logger.info(f"Node deactivated: {operator.short()}")
        return node

    @atomic
    def reactivate(self, ctx: CallContext) -> NodeAccount:
        """
        Re-enable an inactive node.

        Raises:
            StateError: already active, unbonding in progress, low reputation
            CapacityError: stake below minimum
        """
        operator = ctx.signer
        node = self._node(operator)
        if node.is_active:
            raise ledger_error(ErrorCode.NODE_ALREADY_ACTIVE)
        if node.is_unbonding:
            raise ledger_error(ErrorCode.UNBONDING_IN_PROGRESS)
        if node.stake_amount < self.config.min_stake:
            raise ledger_error(ErrorCode.INSUFFICIENT_STAKE)
        if node.reputation < self.config.min_reputation:
            raise ledger_error(ErrorCode.LOW_REPUTATION, f"reputation {node.reputation}")
        node.is_active = True

        self.ledger.emit(NodeReactivated(timestamp=self.ledger.now(), operator=operator))
        logger.info(f"Node reactivated: {operator.short()}")
        return node

    # -------------------------------------------------------------------------
    # Invariants
    # -------------------------------------------------------------------------

    def check_invariants(self) -> Tuple[bool, List[str]]:
        """
        Check the registry accounting identities.

        Returns:
            (ok, failed) where failed lists the violated invariants
        """
        failed: List[str] = []
        registry = self.get_registry()
        if registry is None:
            return True, failed

        nodes = self.nodes()
        if registry.total_stake != sum(n.stake_amount for n in nodes):
            failed.append("total_stake_matches_nodes")
        if registry.total_earnings_owed != sum(n.earnings_accumulated for n in nodes):
            failed.append("earnings_owed_matches_nodes")
        if registry.total_nodes != len(nodes):
            failed.append("total_nodes_matches_nodes")
        for node in nodes:
            label = node.operator.short()
            if self.ledger.escrow.balance_of(stake_vault(node.operator)) != node.stake_amount:
                failed.append(f"stake_escrow_matches:{label}")
            if node.is_active and (node.stake_amount < self.config.min_stake or node.is_unbonding):
                failed.append(f"active_has_valid_stake:{label}")
            if not (0 <= node.reputation <= MAX_REPUTATION):
                failed.append(f"reputation_in_range:{label}")
        return not failed, failed
