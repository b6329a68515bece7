"""
Access-Credit Issuer - issuance, redemption and extension of access credits.

Credit variants:
- PAY_PER_UNIT: bought at the tiered volume price, 30-day expiry
- SUBSCRIPTION: flat-price bundle with the tier's duration
- POOL_SPONSORED: granted free by a pool sponsor, 365-day expiry

A personal credit lives at a slot derived from the owner alone, so each
owner can hold at most one personal credit ever. Pool-sponsored credits live
at a slot derived from (beneficiary, pool_id).

A credit is usable while `is_active`, `now <= expiry_timestamp` and it still
has units. It deactivates automatically when redeemed down to zero.

Invariants:
- treasury escrow balance == pricing.total_revenue (issuer is the only payee)
- remaining_units >= 0
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

from .checked import checked_add, checked_add_i64, checked_mul, checked_sub, require_u64
from .config import IssuerConfig
from .constants import SECONDS_PER_DAY, U16_MAX
from .errors import ErrorCode, ledger_error
from .events import (
    CreditDeactivated,
    CreditExtended,
    CreditPurchased,
    CreditRedeemed,
    CreditToppedUp,
    CreditValidated,
    IssuerInitialized,
    PoolCreditGranted,
    PricingUpdated,
    SubscriptionPurchased,
    SystemActivityChanged,
)
from .identity import Address, CallContext, derive_address
from .pricing import PriceSchedule, SubscriptionTier, calculate_price, extension_price
from .substrate import Ledger, atomic, decode_address, encode_address, ledger_record

if TYPE_CHECKING:
    from .pools import SponsorshipPoolManager

logger = logging.getLogger(__name__)


PRICING_KEY = derive_address("pricing_config")
DEFAULT_TREASURY = derive_address("treasury")


def credit_key(owner: Address) -> Address:
    return derive_address("pass", owner)


def pool_credit_key(beneficiary: Address, pool_id: int) -> Address:
    return derive_address("pool_pass", beneficiary, pool_id)


class CreditVariant(Enum):
    PAY_PER_UNIT = "pay_per_unit"
    SUBSCRIPTION = "subscription"
    POOL_SPONSORED = "pool_sponsored"


# =============================================================================
# Records
# =============================================================================

@ledger_record
@dataclass
class PricingConfig:
    """Issuer configuration and sales totals, created once by `initialize`."""
    KIND = "pricing_config"

    authority: Address
    price_oracle: Address
    treasury: Address
    base_price_per_unit: int
    tier_1_threshold: int
    tier_1_discount_bps: int
    tier_2_threshold: int
    tier_2_discount_bps: int
    total_credits_sold: int = 0
    total_revenue: int = 0
    is_active: bool = True

    def schedule(self) -> PriceSchedule:
        return PriceSchedule(
            base_price_per_unit=self.base_price_per_unit,
            tier_1_threshold=self.tier_1_threshold,
            tier_1_discount_bps=self.tier_1_discount_bps,
            tier_2_threshold=self.tier_2_threshold,
            tier_2_discount_bps=self.tier_2_discount_bps,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "authority": str(self.authority),
            "price_oracle": str(self.price_oracle),
            "treasury": str(self.treasury),
            "base_price_per_unit": self.base_price_per_unit,
            "tier_1_threshold": self.tier_1_threshold,
            "tier_1_discount_bps": self.tier_1_discount_bps,
            "tier_2_threshold": self.tier_2_threshold,
            "tier_2_discount_bps": self.tier_2_discount_bps,
            "total_credits_sold": self.total_credits_sold,
            "total_revenue": self.total_revenue,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PricingConfig":
        return cls(
            authority=Address.from_hex(data["authority"]),
            price_oracle=Address.from_hex(data["price_oracle"]),
            treasury=Address.from_hex(data["treasury"]),
            base_price_per_unit=data["base_price_per_unit"],
            tier_1_threshold=data["tier_1_threshold"],
            tier_1_discount_bps=data["tier_1_discount_bps"],
            tier_2_threshold=data["tier_2_threshold"],
            tier_2_discount_bps=data["tier_2_discount_bps"],
            total_credits_sold=data.get("total_credits_sold", 0),
            total_revenue=data.get("total_revenue", 0),
            is_active=data.get("is_active", True),
        )


@ledger_record
@dataclass
class AccessCredit:
    """A prepaid, expiring bandwidth entitlement ("pass")."""
    KIND = "access_credit"

    owner: Address
    remaining_units: int
    expiry_timestamp: int
    purchased_at: int
    total_spent: int
    variant: CreditVariant
    pool_id: Optional[int] = None
    pool_sponsor: Optional[Address] = None
    is_active: bool = True

    def is_expired(self, now: int) -> bool:
        return now > self.expiry_timestamp

    def is_usable(self, now: int, required_units: int = 0) -> bool:
        return self.is_active and not self.is_expired(now) and self.remaining_units >= required_units

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": str(self.owner),
            "remaining_units": self.remaining_units,
            "expiry_timestamp": self.expiry_timestamp,
            "purchased_at": self.purchased_at,
            "total_spent": self.total_spent,
            "variant": self.variant.value,
            "pool_id": self.pool_id,
            "pool_sponsor": encode_address(self.pool_sponsor),
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccessCredit":
        return cls(
            owner=Address.from_hex(data["owner"]),
            remaining_units=data["remaining_units"],
            expiry_timestamp=data["expiry_timestamp"],
            purchased_at=data["purchased_at"],
            total_spent=data.get("total_spent", 0),
            variant=CreditVariant(data["variant"]),
            pool_id=data.get("pool_id"),
            pool_sponsor=decode_address(data.get("pool_sponsor")),
            is_active=data.get("is_active", True),
        )


# =============================================================================
# Issuer
# =============================================================================

class AccessCreditIssuer:
    """
    Sell, grant and redeem access credits.

    Payments move from the caller's wallet to the treasury escrow recorded
    at initialization.

    Usage:
        issuer = AccessCreditIssuer(ledger)
        issuer.initialize(CallContext.of(admin), price_oracle=oracle)
        issuer.purchase(CallContext.of(user), 1_000)
        issuer.redeem(CallContext.of(user), 10, servicing_node=node)
    """

    def __init__(
        self,
        ledger: Ledger,
        config: Optional[IssuerConfig] = None,
        pools: Optional["SponsorshipPoolManager"] = None,
    ):
        self.ledger = ledger
        self.config = config or IssuerConfig()
        self.pools = pools

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_pricing(self) -> Optional[PricingConfig]:
        return self.ledger.get(PRICING_KEY, PricingConfig)

    def get_credit(self, owner: Address, pool_id: Optional[int] = None) -> Optional[AccessCredit]:
        return self.ledger.get(self._credit_slot(owner, pool_id), AccessCredit)

    def quote(self, units: int) -> int:
        """Price of `units` under the current (or default) schedule."""
        pricing = self.get_pricing()
        schedule = pricing.schedule() if pricing is not None else PriceSchedule.from_config(self.config)
        return calculate_price(units, schedule)

    def treasury_balance(self) -> int:
        pricing = self.get_pricing()
        if pricing is None:
            return 0
        return self.ledger.escrow.balance_of(pricing.treasury)

    @staticmethod
    def _credit_slot(owner: Address, pool_id: Optional[int]) -> Address:
        if pool_id is None:
            return credit_key(owner)
        return pool_credit_key(owner, pool_id)

    def _pricing(self) -> PricingConfig:
        return self.ledger.load(PRICING_KEY, PricingConfig, ErrorCode.SYSTEM_NOT_INITIALIZED)

    def _active_pricing(self) -> PricingConfig:
        pricing = self._pricing()
        if not pricing.is_active:
            raise ledger_error(ErrorCode.SYSTEM_NOT_ACTIVE)
        return pricing

    def _credit(self, owner: Address, pool_id: Optional[int] = None) -> AccessCredit:
        credit = self.ledger.load(self._credit_slot(owner, pool_id), AccessCredit, ErrorCode.CREDIT_NOT_FOUND)
        if credit.owner != owner:
            raise ledger_error(ErrorCode.UNAUTHORIZED, "credit owner mismatch")
        return credit

    def _active_credit(self, owner: Address, pool_id: Optional[int] = None) -> AccessCredit:
        credit = self._credit(owner, pool_id)
        if not credit.is_active:
            raise ledger_error(ErrorCode.CREDIT_NOT_ACTIVE)
        return credit

    def _expiry(self, now: int, days: int) -> int:
        return checked_add_i64(now, checked_mul(days, SECONDS_PER_DAY, "duration"), "expiry")

    def _collect(self, payer: Address, pricing: PricingConfig, amount: int) -> None:
        self.ledger.escrow.transfer(payer, pricing.treasury, amount)
        pricing.total_revenue = checked_add(pricing.total_revenue, amount, "total_revenue")

    # -------------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------------

    @atomic
    def initialize(
        self,
        ctx: CallContext,
        price_oracle: Address,
        treasury: Optional[Address] = None,
    ) -> PricingConfig:
        """Create the pricing config; the caller becomes its authority."""
        pricing = PricingConfig(
            authority=ctx.signer,
            price_oracle=price_oracle,
            treasury=treasury or DEFAULT_TREASURY,
            base_price_per_unit=self.config.base_price_per_unit,
            tier_1_threshold=self.config.tier_1_threshold,
            tier_1_discount_bps=self.config.tier_1_discount_bps,
            tier_2_threshold=self.config.tier_2_threshold,
            tier_2_discount_bps=self.config.tier_2_discount_bps,
        )
        self.ledger.create(PRICING_KEY, pricing, ErrorCode.SYSTEM_ALREADY_INITIALIZED)

        self.ledger.emit(IssuerInitialized(
            timestamp=self.ledger.now(),
            authority=pricing.authority,
            price_oracle=price_oracle,
            treasury=pricing.treasury,
            base_price=pricing.base_price_per_unit,
        ))
        logger.info(f"Issuer initialized: authority={pricing.authority.short()} base_price={pricing.base_price_per_unit}")
        return pricing

    @atomic
    def update_pricing(self, ctx: CallContext, new_base_price: int) -> PricingConfig:
        """Set a new base price per unit (authority only)."""
        require_u64(new_base_price, "new_base_price")
        if new_base_price == 0:
            raise ledger_error(ErrorCode.INVALID_PRICE)
        pricing = self._pricing()
        ctx.require_signer(pricing.authority)

        old_price = pricing.base_price_per_unit
        pricing.base_price_per_unit = new_base_price

        self.ledger.emit(PricingUpdated(timestamp=self.ledger.now(), old_price=old_price, new_price=new_base_price))
        logger.info(f"Pricing updated: {old_price} -> {new_base_price}")
        return pricing

    @atomic
    def set_system_active(self, ctx: CallContext, active: bool) -> PricingConfig:
        """Pause or resume sales (authority only)."""
        pricing = self._pricing()
        ctx.require_signer(pricing.authority)
        pricing.is_active = bool(active)

        self.ledger.emit(SystemActivityChanged(timestamp=self.ledger.now(), is_active=pricing.is_active))
        logger.info(f"Issuer {'resumed' if pricing.is_active else 'paused'}")
        return pricing

    # -------------------------------------------------------------------------
    # Issuance
    # -------------------------------------------------------------------------

    @atomic
    def purchase(self, ctx: CallContext, units: int) -> AccessCredit:
        """
        Buy a pay-per-unit credit at the tiered price.

        Raises:
            StateError: system inactive, caller already holds a personal credit
            ValidationError: units is zero or negative
            CapacityError: caller cannot pay
        """
        require_u64(units, "units")
        pricing = self._active_pricing()
        if units == 0:
            raise ledger_error(ErrorCode.INVALID_UNITS)

        owner = ctx.signer
        price = calculate_price(units, pricing.schedule())
        now = self.ledger.now()
        credit = AccessCredit(
            owner=owner,
            remaining_units=units,
            expiry_timestamp=self._expiry(now, self.config.default_expiry_days),
            purchased_at=now,
            total_spent=price,
            variant=CreditVariant.PAY_PER_UNIT,
        )
        self.ledger.create(credit_key(owner), credit, ErrorCode.CREDIT_ALREADY_EXISTS)
        self._collect(owner, pricing, price)
        pricing.total_credits_sold = checked_add(pricing.total_credits_sold, 1, "total_credits_sold")

        self.ledger.emit(CreditPurchased(
            timestamp=now,
            owner=owner,
            units=units,
            price_paid=price,
            expiry=credit.expiry_timestamp,
        ))
        logger.info(f"Credit purchased: {owner.short()} {units} units for {price}")
        return credit

    @atomic
    def purchase_subscription(self, ctx: CallContext, tier: SubscriptionTier) -> AccessCredit:
        """Buy a flat-price subscription bundle."""
        pricing = self._active_pricing()
        owner = ctx.signer
        now = self.ledger.now()
        credit = AccessCredit(
            owner=owner,
            remaining_units=tier.units,
            expiry_timestamp=self._expiry(now, tier.duration_days),
            purchased_at=now,
            total_spent=tier.price,
            variant=CreditVariant.SUBSCRIPTION,
        )
        self.ledger.create(credit_key(owner), credit, ErrorCode.CREDIT_ALREADY_EXISTS)
        self._collect(owner, pricing, tier.price)
        pricing.total_credits_sold = checked_add(pricing.total_credits_sold, 1, "total_credits_sold")

        self.ledger.emit(SubscriptionPurchased(
            timestamp=now,
            owner=owner,
            tier=tier.value,
            units=tier.units,
            price_paid=tier.price,
            expiry=credit.expiry_timestamp,
        ))
        logger.info(f"Subscription purchased: {owner.short()} {tier.value}")
        return credit

    @atomic
    def grant_pool_credit(
        self,
        ctx: CallContext,
        pool_id: int,
        beneficiary: Address,
        units: int,
    ) -> AccessCredit:
        """
        Grant a free pool-sponsored credit to `beneficiary`.

        The caller is the pool authority. When a pool manager is attached the
        caller must sponsor an active pool with this id.
        """
        require_u64(pool_id, "pool_id")
        require_u64(units, "units")
        if units == 0:
            raise ledger_error(ErrorCode.INVALID_UNITS)

        sponsor = ctx.signer
        if self.pools is not None:
            pool = self.pools.get_pool(sponsor, pool_id)
            if pool is None:
                raise ledger_error(ErrorCode.POOL_NOT_FOUND, f"pool {pool_id}")
            if not pool.is_active:
                raise ledger_error(ErrorCode.POOL_NOT_ACTIVE, f"pool {pool_id}")

        now = self.ledger.now()
        credit = AccessCredit(
            owner=beneficiary,
            remaining_units=units,
            expiry_timestamp=self._expiry(now, self.config.pool_credit_days),
            purchased_at=now,
            total_spent=0,
            variant=CreditVariant.POOL_SPONSORED,
            pool_id=pool_id,
            pool_sponsor=sponsor,
        )
        self.ledger.create(pool_credit_key(beneficiary, pool_id), credit, ErrorCode.CREDIT_ALREADY_EXISTS)

        self.ledger.emit(PoolCreditGranted(
            timestamp=now,
            owner=beneficiary,
            pool_authority=sponsor,
            pool_id=pool_id,
            units=units,
            expiry=credit.expiry_timestamp,
        ))
        logger.info(f"Pool credit granted: {beneficiary.short()} {units} units from pool {pool_id}")
        return credit

    # -------------------------------------------------------------------------
    # Credit operations
    # -------------------------------------------------------------------------

    @atomic
    def redeem(
        self,
        ctx: CallContext,
        units: int,
        servicing_node: Address,
        pool_id: Optional[int] = None,
    ) -> AccessCredit:
        """
        Spend `units` of the caller's credit.

        `servicing_node` is caller-supplied and only recorded in the event.

        Raises:
            StateError: credit missing, inactive or expired
            ValidationError: units is zero
            CapacityError: not enough units left
        """
        require_u64(units, "units")
        owner = ctx.signer
        credit = self._active_credit(owner, pool_id)
        now = self.ledger.now()
        if credit.is_expired(now):
            raise ledger_error(ErrorCode.CREDIT_EXPIRED)
        if units == 0:
            raise ledger_error(ErrorCode.INVALID_UNITS)
        if credit.remaining_units < units:
            raise ledger_error(ErrorCode.INSUFFICIENT_BALANCE, f"{credit.remaining_units} < {units}")

        credit.remaining_units = checked_sub(credit.remaining_units, units, "remaining_units")
        if credit.remaining_units == 0:
            credit.is_active = False

        self.ledger.emit(CreditRedeemed(
            timestamp=now,
            owner=owner,
            servicing_node=servicing_node,
            units=units,
            remaining_units=credit.remaining_units,
            pool_id=pool_id,
        ))
        logger.info(f"Credit redeemed: {owner.short()} {units} units via {servicing_node.short()}")
        return credit

    @atomic
    def extend_expiry(self, ctx: CallContext, additional_days: int) -> AccessCredit:
        """Push the personal credit's expiry out, charging base_price * days / 30."""
        require_u64(additional_days, "additional_days")
        if not (0 < additional_days <= U16_MAX):
            raise ledger_error(ErrorCode.INVALID_DURATION, str(additional_days))
        owner = ctx.signer
        credit = self._active_credit(owner)
        pricing = self._pricing()

        price = extension_price(pricing.base_price_per_unit, additional_days)
        self._collect(owner, pricing, price)
        credit.expiry_timestamp = checked_add_i64(
            credit.expiry_timestamp,
            checked_mul(additional_days, SECONDS_PER_DAY, "duration"),
            "expiry",
        )
        credit.total_spent = checked_add(credit.total_spent, price, "total_spent")

        self.ledger.emit(CreditExtended(
            timestamp=self.ledger.now(),
            owner=owner,
            additional_days=additional_days,
            new_expiry=credit.expiry_timestamp,
            price_paid=price,
        ))
        logger.info(f"Credit extended: {owner.short()} +{additional_days}d for {price}")
        return credit

    @atomic
    def top_up(self, ctx: CallContext, additional_units: int) -> AccessCredit:
        """Add units to the personal credit at the tiered price."""
        require_u64(additional_units, "additional_units")
        if additional_units == 0:
            raise ledger_error(ErrorCode.INVALID_UNITS)
        owner = ctx.signer
        credit = self._active_credit(owner)
        pricing = self._pricing()

        price = calculate_price(additional_units, pricing.schedule())
        self._collect(owner, pricing, price)
        credit.remaining_units = checked_add(credit.remaining_units, additional_units, "remaining_units")
        credit.total_spent = checked_add(credit.total_spent, price, "total_spent")

        self.ledger.emit(CreditToppedUp(
            timestamp=self.ledger.now(),
            owner=owner,
            additional_units=additional_units,
            new_balance=credit.remaining_units,
            price_paid=price,
        ))
        logger.info(f"Credit topped up: {owner.short()} +{additional_units} for {price}")
        return credit

    @atomic
    def validate(
        self,
        ctx: CallContext,
        required_units: int,
        owner: Optional[Address] = None,
        pool_id: Optional[int] = None,
    ) -> bool:
        """
        Check whether a credit can cover `required_units` right now.

        Anyone may validate anyone's credit; `owner` defaults to the caller.
        The check itself is recorded as an audit event.
        """
        require_u64(required_units, "required_units")
        owner = owner or ctx.signer
        credit = self._credit(owner, pool_id)
        now = self.ledger.now()
        is_valid = credit.is_usable(now, required_units)

        self.ledger.emit(CreditValidated(
            timestamp=now,
            owner=owner,
            required_units=required_units,
            is_valid=is_valid,
        ))
        logger.debug(f"Credit validated: {owner.short()} required={required_units} valid={is_valid}")
        return is_valid

    @atomic
    def deactivate(self, ctx: CallContext, pool_id: Optional[int] = None) -> AccessCredit:
        """Permanently deactivate the caller's credit."""
        owner = ctx.signer
        credit = self._active_credit(owner, pool_id)
        credit.is_active = False

        self.ledger.emit(CreditDeactivated(
            timestamp=self.ledger.now(),
            owner=owner,
            remaining_units=credit.remaining_units,
        ))
        logger.info(f"Credit deactivated: {owner.short()} ({credit.remaining_units} units forfeited)")
        return credit
