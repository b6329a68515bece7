"""
Sponsorship Pool Manager - sponsor-funded capacity shared by beneficiaries.

A sponsor escrows funding into a pool; whitelisted beneficiaries redeem
units against both their own allocation and the pool's unspent funding.
Pool funding and redeemed units are counted 1:1.

Capacity rules:
- At most floor(total_funded / allocation_per_user) beneficiaries at once
- A redemption must fit the beneficiary's allocation AND the pool balance
- Extending an allocation is not checked against funding; the pool balance
  check at redemption time is the only hard limit

Invariants:
- total_used <= total_funded
- grant.used_units <= grant.allocated_units
- beneficiary_count == number of whitelisted grants of the pool
- pool escrow holds total_funded while active, total_used once closed
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .checked import checked_add, checked_div, checked_sub, require_u64
from .config import PoolConfig
from .errors import ErrorCode, ledger_error
from .events import (
    AccessRedeemed,
    AllocationExtended,
    AutoRefillTriggered,
    AutoRefillUpdated,
    BeneficiaryAdded,
    BeneficiaryRemoved,
    PoolClosed,
    PoolCreated,
    PoolFunded,
)
from .identity import Address, CallContext, derive_address
from .substrate import Ledger, atomic, ledger_record

logger = logging.getLogger(__name__)


def pool_key(sponsor: Address, pool_id: int) -> Address:
    return derive_address("pool", sponsor, pool_id)


def pool_vault(sponsor: Address, pool_id: int) -> Address:
    return derive_address("pool_vault", sponsor, pool_id)


def grant_key(sponsor: Address, pool_id: int, beneficiary: Address) -> Address:
    return derive_address("access", sponsor, pool_id, beneficiary)


# =============================================================================
# Records
# =============================================================================

@ledger_record
@dataclass
class SponsorshipPool:
    """A sponsor's funded pool. Closed pools never reopen."""
    KIND = "sponsorship_pool"

    sponsor: Address
    pool_id: int
    name: str
    total_funded: int
    allocation_per_user: int
    auto_refill_threshold: int
    created_at: int
    total_used: int = 0
    beneficiary_count: int = 0
    is_active: bool = True
    auto_refill_enabled: bool = False

    @property
    def remaining_balance(self) -> int:
        return self.total_funded - self.total_used

    @property
    def capacity(self) -> int:
        """Maximum number of whitelisted beneficiaries the funding supports."""
        return checked_div(self.total_funded, self.allocation_per_user, "pool capacity")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sponsor": str(self.sponsor),
            "pool_id": self.pool_id,
            "name": self.name,
            "total_funded": self.total_funded,
            "allocation_per_user": self.allocation_per_user,
            "auto_refill_threshold": self.auto_refill_threshold,
            "created_at": self.created_at,
            "total_used": self.total_used,
            "beneficiary_count": self.beneficiary_count,
            "is_active": self.is_active,
            "auto_refill_enabled": self.auto_refill_enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SponsorshipPool":
        return cls(
            sponsor=Address.from_hex(data["sponsor"]),
            pool_id=data["pool_id"],
            name=data["name"],
            total_funded=data["total_funded"],
            allocation_per_user=data["allocation_per_user"],
            auto_refill_threshold=data["auto_refill_threshold"],
            created_at=data["created_at"],
            total_used=data.get("total_used", 0),
            beneficiary_count=data.get("beneficiary_count", 0),
            is_active=data.get("is_active", True),
            auto_refill_enabled=data.get("auto_refill_enabled", False),
        )


@ledger_record
@dataclass
class BeneficiaryGrant:
    """A beneficiary's allocation in one pool. Persists after removal."""
    KIND = "beneficiary_grant"

    sponsor: Address
    pool_id: int
    beneficiary: Address
    allocated_units: int
    added_at: int
    used_units: int = 0
    last_used: Optional[int] = None
    is_whitelisted: bool = True

    @property
    def remaining_units(self) -> int:
        return self.allocated_units - self.used_units

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sponsor": str(self.sponsor),
            "pool_id": self.pool_id,
            "beneficiary": str(self.beneficiary),
            "allocated_units": self.allocated_units,
            "added_at": self.added_at,
            "used_units": self.used_units,
            "last_used": self.last_used,
            "is_whitelisted": self.is_whitelisted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BeneficiaryGrant":
        return cls(
            sponsor=Address.from_hex(data["sponsor"]),
            pool_id=data["pool_id"],
            beneficiary=Address.from_hex(data["beneficiary"]),
            allocated_units=data["allocated_units"],
            added_at=data["added_at"],
            used_units=data.get("used_units", 0),
            last_used=data.get("last_used"),
            is_whitelisted=data.get("is_whitelisted", True),
        )


# =============================================================================
# Pool Manager
# =============================================================================

class SponsorshipPoolManager:
    """
    Manage sponsorship pools and beneficiary grants.

    The sponsor is always the caller for pool administration; the beneficiary
    is the caller for `redeem_access`.
    """

    def __init__(self, ledger: Ledger, config: Optional[PoolConfig] = None):
        self.ledger = ledger
        self.config = config or PoolConfig()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_pool(self, sponsor: Address, pool_id: int) -> Optional[SponsorshipPool]:
        return self.ledger.get(pool_key(sponsor, pool_id), SponsorshipPool)

    def get_grant(self, sponsor: Address, pool_id: int, beneficiary: Address) -> Optional[BeneficiaryGrant]:
        return self.ledger.get(grant_key(sponsor, pool_id, beneficiary), BeneficiaryGrant)

    def pools(self) -> List[SponsorshipPool]:
        return list(self.ledger.records_of(SponsorshipPool))

    def grants_of(self, sponsor: Address, pool_id: int) -> List[BeneficiaryGrant]:
        return [
            g for g in self.ledger.records_of(BeneficiaryGrant)
            if g.sponsor == sponsor and g.pool_id == pool_id
        ]

    def _pool(self, sponsor: Address, pool_id: int) -> SponsorshipPool:
        pool = self.ledger.load(pool_key(sponsor, pool_id), SponsorshipPool, ErrorCode.POOL_NOT_FOUND)
        if pool.sponsor != sponsor:
            raise ledger_error(ErrorCode.UNAUTHORIZED, "pool sponsor mismatch")
        return pool

    def _active_pool(self, sponsor: Address, pool_id: int) -> SponsorshipPool:
        pool = self._pool(sponsor, pool_id)
        if not pool.is_active:
            raise ledger_error(ErrorCode.POOL_NOT_ACTIVE, f"pool {pool_id}")
        return pool

    def _grant(self, sponsor: Address, pool_id: int, beneficiary: Address) -> BeneficiaryGrant:
        grant = self.ledger.load(
            grant_key(sponsor, pool_id, beneficiary), BeneficiaryGrant, ErrorCode.BENEFICIARY_NOT_FOUND
        )
        if grant.beneficiary != beneficiary:
            raise ledger_error(ErrorCode.UNAUTHORIZED, "grant beneficiary mismatch")
        return grant

    # -------------------------------------------------------------------------
    # Pool lifecycle
    # -------------------------------------------------------------------------

    @atomic
    def create_pool(
        self,
        ctx: CallContext,
        pool_id: int,
        name: str,
        total_funding: int,
        allocation_per_user: int,
    ) -> SponsorshipPool:
        """
        Create a pool and escrow its initial funding.

        The auto-refill threshold defaults to a fifth of the funding, with
        auto-refill disabled.

        Raises:
            ValidationError: name too long, zero funding, allocation too small
            StateError: pool id already used by this sponsor
            CapacityError: sponsor cannot cover the funding
        """
        require_u64(pool_id, "pool_id")
        require_u64(total_funding, "total_funding")
        require_u64(allocation_per_user, "allocation_per_user")
        if len(name.encode("utf-8")) > self.config.max_name_len:
            raise ledger_error(ErrorCode.POOL_NAME_TOO_LONG)
        if total_funding == 0:
            raise ledger_error(ErrorCode.INVALID_FUNDING)
        if allocation_per_user < self.config.min_allocation_units:
            raise ledger_error(ErrorCode.ALLOCATION_TOO_SMALL)

        sponsor = ctx.signer
        now = self.ledger.now()
        pool = SponsorshipPool(
            sponsor=sponsor,
            pool_id=pool_id,
            name=name,
            total_funded=total_funding,
            allocation_per_user=allocation_per_user,
            auto_refill_threshold=checked_div(total_funding, self.config.auto_refill_divisor, "threshold"),
            created_at=now,
        )
        self.ledger.create(pool_key(sponsor, pool_id), pool, ErrorCode.POOL_ALREADY_EXISTS)
        self.ledger.escrow.transfer(sponsor, pool_vault(sponsor, pool_id), total_funding)

        self.ledger.emit(PoolCreated(
            timestamp=now,
            sponsor=sponsor,
            pool_id=pool_id,
            pool_name=name,
            total_funding=total_funding,
            allocation_per_user=allocation_per_user,
        ))
        logger.info(f"Pool created: {sponsor.short()}/{pool_id} '{name}' funding={total_funding}")
        return pool

    @atomic
    def fund_pool(self, ctx: CallContext, pool_id: int, amount: int) -> SponsorshipPool:
        """Add funding to an active pool."""
        require_u64(amount, "amount")
        if amount == 0:
            raise ledger_error(ErrorCode.INVALID_FUNDING)
        sponsor = ctx.signer
        pool = self._active_pool(sponsor, pool_id)

        self.ledger.escrow.transfer(sponsor, pool_vault(sponsor, pool_id), amount)
        pool.total_funded = checked_add(pool.total_funded, amount, "total_funded")
        new_balance = checked_sub(pool.total_funded, pool.total_used, "pool balance")

        self.ledger.emit(PoolFunded(
            timestamp=self.ledger.now(),
            sponsor=sponsor,
            pool_id=pool_id,
            amount=amount,
            new_balance=new_balance,
        ))
        logger.info(f"Pool funded: {sponsor.short()}/{pool_id} +{amount} -> balance {new_balance}")
        return pool

    @atomic
    def close_pool(self, ctx: CallContext, pool_id: int) -> int:
        """
        Refund the unspent balance to the sponsor and close the pool for good.

        Returns:
            The refunded amount
        """
        sponsor = ctx.signer
        pool = self._active_pool(sponsor, pool_id)

        remaining = checked_sub(pool.total_funded, pool.total_used, "pool balance")
        if remaining > 0:
            self.ledger.escrow.transfer(pool_vault(sponsor, pool_id), sponsor, remaining)
        pool.is_active = False

        self.ledger.emit(PoolClosed(
            timestamp=self.ledger.now(),
            sponsor=sponsor,
            pool_id=pool_id,
            refunded_amount=remaining,
            total_used=pool.total_used,
        ))
        logger.info(f"Pool closed: {sponsor.short()}/{pool_id} refunded {remaining}")
        return remaining

    @atomic
    def update_auto_refill(self, ctx: CallContext, pool_id: int, enabled: bool, threshold: int) -> SponsorshipPool:
        """Overwrite the auto-refill settings (sponsor only)."""
        require_u64(threshold, "threshold")
        sponsor = ctx.signer
        pool = self._active_pool(sponsor, pool_id)
        pool.auto_refill_enabled = bool(enabled)
        pool.auto_refill_threshold = threshold

        self.ledger.emit(AutoRefillUpdated(
            timestamp=self.ledger.now(),
            sponsor=sponsor,
            pool_id=pool_id,
            enabled=pool.auto_refill_enabled,
            threshold=threshold,
        ))
        logger.info(f"Auto-refill updated: {sponsor.short()}/{pool_id} enabled={enabled} threshold={threshold}")
        return pool

    # -------------------------------------------------------------------------
    # Beneficiaries
    # -------------------------------------------------------------------------

    @atomic
    def add_beneficiary(
        self,
        ctx: CallContext,
        pool_id: int,
        beneficiary: Address,
        allocated_units: int,
    ) -> BeneficiaryGrant:
        """
        Whitelist `beneficiary` with a fresh allocation.

        A previously removed beneficiary is re-whitelisted; its usage history
        is kept and the new allocation is granted on top of it.

        Raises:
            ValidationError: allocation below the minimum
            StateError: pool inactive, beneficiary already whitelisted
            CapacityError: pool already holds its maximum number of beneficiaries
        """
        require_u64(allocated_units, "allocated_units")
        sponsor = ctx.signer
        pool = self._active_pool(sponsor, pool_id)
        if allocated_units < self.config.min_allocation_units:
            raise ledger_error(ErrorCode.ALLOCATION_TOO_SMALL)

        existing = self.get_grant(sponsor, pool_id, beneficiary)
        if existing is not None and existing.is_whitelisted:
            raise ledger_error(ErrorCode.BENEFICIARY_ALREADY_WHITELISTED, beneficiary.short())

        if pool.beneficiary_count >= pool.capacity:
            raise ledger_error(
                ErrorCode.POOL_FULL,
                f"{pool.beneficiary_count}/{pool.capacity} beneficiaries",
            )

        now = self.ledger.now()
        if existing is None:
            grant = BeneficiaryGrant(
                sponsor=sponsor,
                pool_id=pool_id,
                beneficiary=beneficiary,
                allocated_units=allocated_units,
                added_at=now,
            )
            self.ledger.create(grant_key(sponsor, pool_id, beneficiary), grant, ErrorCode.BENEFICIARY_ALREADY_WHITELISTED)
        else:
            grant = existing
            grant.allocated_units = checked_add(grant.used_units, allocated_units, "allocated_units")
            grant.is_whitelisted = True
            grant.added_at = now
        pool.beneficiary_count = checked_add(pool.beneficiary_count, 1, "beneficiary_count")

        self.ledger.emit(BeneficiaryAdded(
            timestamp=now,
            sponsor=sponsor,
            pool_id=pool_id,
            beneficiary=beneficiary,
            allocated_units=allocated_units,
            reactivated=existing is not None,
        ))
        logger.info(f"Beneficiary added: {beneficiary.short()} to {sponsor.short()}/{pool_id} ({allocated_units} units)")
        return grant

    @atomic
    def remove_beneficiary(self, ctx: CallContext, pool_id: int, beneficiary: Address) -> BeneficiaryGrant:
        """Un-whitelist a beneficiary. The grant record is kept for history."""
        sponsor = ctx.signer
        pool = self._pool(sponsor, pool_id)
        grant = self._grant(sponsor, pool_id, beneficiary)
        if not grant.is_whitelisted:
            raise ledger_error(ErrorCode.BENEFICIARY_NOT_WHITELISTED, beneficiary.short())

        grant.is_whitelisted = False
        pool.beneficiary_count = checked_sub(pool.beneficiary_count, 1, "beneficiary_count")

        self.ledger.emit(BeneficiaryRemoved(
            timestamp=self.ledger.now(),
            sponsor=sponsor,
            pool_id=pool_id,
            beneficiary=beneficiary,
        ))
        logger.info(f"Beneficiary removed: {beneficiary.short()} from {sponsor.short()}/{pool_id}")
        return grant

    @atomic
    def extend_allocation(
        self,
        ctx: CallContext,
        pool_id: int,
        beneficiary: Address,
        additional_units: int,
    ) -> BeneficiaryGrant:
        """Raise a whitelisted beneficiary's allocation without a funding check."""
        require_u64(additional_units, "additional_units")
        sponsor = ctx.signer
        self._pool(sponsor, pool_id)
        grant = self._grant(sponsor, pool_id, beneficiary)
        if not grant.is_whitelisted:
            raise ledger_error(ErrorCode.BENEFICIARY_NOT_WHITELISTED, beneficiary.short())
        if additional_units == 0:
            raise ledger_error(ErrorCode.INVALID_UNITS)

        grant.allocated_units = checked_add(grant.allocated_units, additional_units, "allocated_units")

        self.ledger.emit(AllocationExtended(
            timestamp=self.ledger.now(),
            sponsor=sponsor,
            pool_id=pool_id,
            beneficiary=beneficiary,
            additional_units=additional_units,
            new_allocation=grant.allocated_units,
        ))
        logger.info(f"Allocation extended: {beneficiary.short()} +{additional_units} -> {grant.allocated_units}")
        return grant

    # -------------------------------------------------------------------------
    # Redemption
    # -------------------------------------------------------------------------

    @atomic
    def redeem_access(self, ctx: CallContext, sponsor: Address, pool_id: int, units: int) -> BeneficiaryGrant:
        """
        Draw `units` from the caller's allocation and the pool balance.

        When auto-refill is enabled and the pool balance drops below the
        threshold, an AutoRefillTriggered signal is emitted; no funds move.

        Raises:
            ValidationError: units is zero
            StateError: pool inactive, caller not whitelisted
            CapacityError: allocation or pool balance too small
        """
        require_u64(units, "units")
        beneficiary = ctx.signer
        pool = self._active_pool(sponsor, pool_id)
        grant = self._grant(sponsor, pool_id, beneficiary)
        if not grant.is_whitelisted:
            raise ledger_error(ErrorCode.BENEFICIARY_NOT_WHITELISTED, beneficiary.short())
        if units == 0:
            raise ledger_error(ErrorCode.INVALID_UNITS)

        allocation_left = checked_sub(grant.allocated_units, grant.used_units, "allocation")
        if allocation_left < units:
            raise ledger_error(ErrorCode.INSUFFICIENT_ALLOCATION, f"{allocation_left} < {units}")
        pool_left = checked_sub(pool.total_funded, pool.total_used, "pool balance")
        if pool_left < units:
            raise ledger_error(ErrorCode.INSUFFICIENT_POOL_BALANCE, f"{pool_left} < {units}")

        now = self.ledger.now()
        grant.used_units = checked_add(grant.used_units, units, "used_units")
        grant.last_used = now
        pool.total_used = checked_add(pool.total_used, units, "total_used")

        remaining_balance = checked_sub(pool.total_funded, pool.total_used, "pool balance")
        if pool.auto_refill_enabled and remaining_balance < pool.auto_refill_threshold:
            self.ledger.emit(AutoRefillTriggered(
                timestamp=now,
                sponsor=sponsor,
                pool_id=pool_id,
                remaining_balance=remaining_balance,
                threshold=pool.auto_refill_threshold,
            ))
            logger.info(f"Auto-refill needed: {sponsor.short()}/{pool_id} balance {remaining_balance}")

        self.ledger.emit(AccessRedeemed(
            timestamp=now,
            sponsor=sponsor,
            pool_id=pool_id,
            beneficiary=beneficiary,
            units=units,
            remaining_allocation=grant.remaining_units,
        ))
        logger.info(f"Access redeemed: {beneficiary.short()} {units} units from {sponsor.short()}/{pool_id}")
        return grant

    # -------------------------------------------------------------------------
    # Invariants
    # -------------------------------------------------------------------------

    def check_invariants(self) -> Tuple[bool, List[str]]:
        """
        Check pool and grant accounting.

        Returns:
            (ok, failed) where failed lists the violated invariants
        """
        failed: List[str] = []
        whitelisted: Dict[Tuple[Address, int], int] = {}
        for grant in self.ledger.records_of(BeneficiaryGrant):
            label = f"{grant.sponsor.short()}/{grant.pool_id}/{grant.beneficiary.short()}"
            if grant.used_units > grant.allocated_units:
                failed.append(f"used_within_allocation:{label}")
            if grant.is_whitelisted:
                slot = (grant.sponsor, grant.pool_id)
                whitelisted[slot] = whitelisted.get(slot, 0) + 1

        for pool in self.pools():
            label = f"{pool.sponsor.short()}/{pool.pool_id}"
            if pool.total_used > pool.total_funded:
                failed.append(f"used_within_funding:{label}")
            if pool.beneficiary_count != whitelisted.get((pool.sponsor, pool.pool_id), 0):
                failed.append(f"beneficiary_count_matches:{label}")
            if pool.beneficiary_count > pool.capacity:
                failed.append(f"beneficiaries_within_capacity:{label}")
            expected_escrow = pool.total_funded if pool.is_active else pool.total_used
            if self.ledger.escrow.balance_of(pool_vault(pool.sponsor, pool.pool_id)) != expected_escrow:
                failed.append(f"pool_escrow_matches:{label}")
        return not failed, failed
