from __future__ import annotations

import pytest

from veilpool.ledger.constants import SECONDS_PER_DAY, TOKEN_UNIT
from veilpool.ledger.credits import (
    DEFAULT_TREASURY,
    AccessCreditIssuer,
    CreditVariant,
)
from veilpool.ledger.errors import (
    AuthorizationError,
    CapacityError,
    ErrorCode,
    StateError,
    ValidationError,
)
from veilpool.ledger.events import CreditRedeemed, CreditValidated
from veilpool.ledger.identity import CallContext, Keypair
from veilpool.ledger.pricing import SubscriptionTier

NODE = Keypair.from_seed("servicing-node").address
USER_FUNDS = 10_000 * TOKEN_UNIT


class TestIssuerAdministration:
    def test_initialize_uses_default_treasury(self, issuer, admin):
        pricing = issuer.get_pricing()
        assert pricing.authority == admin.address
        assert pricing.treasury == DEFAULT_TREASURY
        assert pricing.base_price_per_unit == 500_000
        assert pricing.is_active

    def test_initialize_twice(self, issuer, admin):
        with pytest.raises(StateError) as exc_info:
            issuer.initialize(CallContext.of(admin), price_oracle=admin.address)
        assert exc_info.value.code is ErrorCode.SYSTEM_ALREADY_INITIALIZED

    def test_update_pricing_authority_only(self, issuer, user):
        with pytest.raises(AuthorizationError):
            issuer.update_pricing(CallContext.of(user), 1_000)

    def test_update_pricing_rejects_zero(self, issuer, admin):
        with pytest.raises(ValidationError) as exc_info:
            issuer.update_pricing(CallContext.of(admin), 0)
        assert exc_info.value.code is ErrorCode.INVALID_PRICE

    def test_new_price_applies_to_quotes(self, issuer, admin):
        issuer.update_pricing(CallContext.of(admin), 1_000)
        assert issuer.quote(10) == 10_000

    def test_paused_system_refuses_sales(self, issuer, admin, user):
        issuer.set_system_active(CallContext.of(admin), False)
        with pytest.raises(StateError) as exc_info:
            issuer.purchase(CallContext.of(user), 10)
        assert exc_info.value.code is ErrorCode.SYSTEM_NOT_ACTIVE

    def test_uninitialized_issuer(self, ledger, user):
        with pytest.raises(StateError) as exc_info:
            AccessCreditIssuer(ledger).purchase(CallContext.of(user), 10)
        assert exc_info.value.code is ErrorCode.SYSTEM_NOT_INITIALIZED


class TestPurchase:
    def test_purchase_charges_tiered_price(self, issuer, user, escrow, clock):
        credit = issuer.purchase(CallContext.of(user), 1_000)
        assert credit.remaining_units == 1_000
        assert credit.total_spent == 425_000_000
        assert credit.variant is CreditVariant.PAY_PER_UNIT
        assert credit.expiry_timestamp == clock.now() + 30 * SECONDS_PER_DAY
        assert escrow.balance_of(user.address) == USER_FUNDS - 425_000_000
        assert issuer.treasury_balance() == 425_000_000

        pricing = issuer.get_pricing()
        assert pricing.total_credits_sold == 1
        assert pricing.total_revenue == 425_000_000

    def test_one_personal_credit_per_owner(self, issuer, user):
        ctx = CallContext.of(user)
        issuer.purchase(ctx, 10)
        with pytest.raises(StateError) as exc_info:
            issuer.purchase(ctx, 10)
        assert exc_info.value.code is ErrorCode.CREDIT_ALREADY_EXISTS
        with pytest.raises(StateError):
            issuer.purchase_subscription(ctx, SubscriptionTier.MONTHLY)

    def test_zero_units_rejected(self, issuer, user):
        with pytest.raises(ValidationError) as exc_info:
            issuer.purchase(CallContext.of(user), 0)
        assert exc_info.value.code is ErrorCode.INVALID_UNITS

    def test_negative_units_rejected(self, issuer, user):
        with pytest.raises(ValidationError) as exc_info:
            issuer.purchase(CallContext.of(user), -5)
        assert exc_info.value.code is ErrorCode.INVALID_AMOUNT
        assert issuer.get_credit(user.address) is None

    def test_unaffordable_purchase_leaves_no_credit(self, issuer):
        broke = Keypair.from_seed("broke")
        with pytest.raises(CapacityError):
            issuer.purchase(CallContext.of(broke), 10)
        assert issuer.get_credit(broke.address) is None
        assert issuer.get_pricing().total_credits_sold == 0

    def test_subscription(self, issuer, user, clock):
        credit = issuer.purchase_subscription(CallContext.of(user), SubscriptionTier.QUARTERLY)
        assert credit.remaining_units == 1_500
        assert credit.total_spent == 540_000_000
        assert credit.variant is CreditVariant.SUBSCRIPTION
        assert credit.expiry_timestamp == clock.now() + 90 * SECONDS_PER_DAY


class TestRedeem:
    def test_redeem_decrements_units(self, issuer, user, recorder):
        ctx = CallContext.of(user)
        issuer.purchase(ctx, 100)
        credit = issuer.redeem(ctx, 40, servicing_node=NODE)
        assert credit.remaining_units == 60
        assert credit.is_active
        event = recorder.of_type(CreditRedeemed)[-1]
        assert event.servicing_node == NODE
        assert event.pool_id is None

    def test_redeeming_everything_deactivates(self, issuer, user):
        ctx = CallContext.of(user)
        issuer.purchase(ctx, 10)
        credit = issuer.redeem(ctx, 10, servicing_node=NODE)
        assert credit.remaining_units == 0
        assert not credit.is_active
        with pytest.raises(StateError) as exc_info:
            issuer.redeem(ctx, 1, servicing_node=NODE)
        assert exc_info.value.code is ErrorCode.CREDIT_NOT_ACTIVE

    def test_insufficient_units(self, issuer, user):
        ctx = CallContext.of(user)
        issuer.purchase(ctx, 10)
        with pytest.raises(CapacityError) as exc_info:
            issuer.redeem(ctx, 11, servicing_node=NODE)
        assert exc_info.value.code is ErrorCode.INSUFFICIENT_BALANCE

    def test_zero_units(self, issuer, user):
        ctx = CallContext.of(user)
        issuer.purchase(ctx, 10)
        with pytest.raises(ValidationError):
            issuer.redeem(ctx, 0, servicing_node=NODE)

    def test_no_credit(self, issuer, user):
        with pytest.raises(StateError) as exc_info:
            issuer.redeem(CallContext.of(user), 1, servicing_node=NODE)
        assert exc_info.value.code is ErrorCode.CREDIT_NOT_FOUND

    def test_expiry_boundary(self, issuer, user, clock):
        """Usable at the expiry instant, expired one second later."""
        ctx = CallContext.of(user)
        credit = issuer.purchase(ctx, 10)
        clock.set(credit.expiry_timestamp)
        issuer.redeem(ctx, 1, servicing_node=NODE)
        clock.advance(1)
        with pytest.raises(StateError) as exc_info:
            issuer.redeem(ctx, 1, servicing_node=NODE)
        assert exc_info.value.code is ErrorCode.CREDIT_EXPIRED


class TestExtendAndTopUp:
    def test_extend_charges_prorated_price(self, issuer, user):
        ctx = CallContext.of(user)
        credit = issuer.purchase(ctx, 10)
        expiry = credit.expiry_timestamp
        before = issuer.treasury_balance()

        credit = issuer.extend_expiry(ctx, 15)
        assert credit.expiry_timestamp == expiry + 15 * SECONDS_PER_DAY
        assert issuer.treasury_balance() == before + 250_000
        assert credit.total_spent == 5_000_000 + 250_000

    @pytest.mark.parametrize("days", [0, 65_536])
    def test_extend_duration_range(self, issuer, user, days):
        ctx = CallContext.of(user)
        issuer.purchase(ctx, 10)
        with pytest.raises(ValidationError) as exc_info:
            issuer.extend_expiry(ctx, days)
        assert exc_info.value.code is ErrorCode.INVALID_DURATION

    def test_top_up_uses_tiered_price_for_the_increment(self, issuer, user):
        ctx = CallContext.of(user)
        issuer.purchase(ctx, 10)
        credit = issuer.top_up(ctx, 100)
        assert credit.remaining_units == 110
        assert credit.total_spent == 5_000_000 + 47_500_000

    def test_top_up_inactive_credit(self, issuer, user):
        ctx = CallContext.of(user)
        issuer.purchase(ctx, 10)
        issuer.deactivate(ctx)
        with pytest.raises(StateError) as exc_info:
            issuer.top_up(ctx, 5)
        assert exc_info.value.code is ErrorCode.CREDIT_NOT_ACTIVE


class TestValidate:
    def test_validate_records_result(self, issuer, user, recorder):
        ctx = CallContext.of(user)
        issuer.purchase(ctx, 10)
        assert issuer.validate(ctx, 10)
        assert not issuer.validate(ctx, 11)
        results = [e.is_valid for e in recorder.of_type(CreditValidated)]
        assert results == [True, False]

    def test_anyone_can_validate_another_owner(self, issuer, user):
        issuer.purchase(CallContext.of(user), 10)
        verifier = Keypair.from_seed("verifier")
        assert issuer.validate(CallContext.of(verifier), 5, owner=user.address)

    def test_expired_credit_is_invalid(self, issuer, user, clock):
        ctx = CallContext.of(user)
        credit = issuer.purchase(ctx, 10)
        clock.set(credit.expiry_timestamp + 1)
        assert not issuer.validate(ctx, 1)


class TestPoolCredits:
    def test_grant_requires_active_sponsored_pool(self, issuer, pools, sponsor):
        beneficiary = Keypair.from_seed("beneficiary").address
        with pytest.raises(StateError) as exc_info:
            issuer.grant_pool_credit(CallContext.of(sponsor), 1, beneficiary, 50)
        assert exc_info.value.code is ErrorCode.POOL_NOT_FOUND

        pools.create_pool(CallContext.of(sponsor), 1, "school", 10_000, 100)
        pools.close_pool(CallContext.of(sponsor), 1)
        with pytest.raises(StateError) as exc_info:
            issuer.grant_pool_credit(CallContext.of(sponsor), 1, beneficiary, 50)
        assert exc_info.value.code is ErrorCode.POOL_NOT_ACTIVE

    def test_pool_credit_lives_beside_personal_credit(self, issuer, pools, sponsor, user, clock):
        pools.create_pool(CallContext.of(sponsor), 7, "library", 10_000, 100)
        credit = issuer.grant_pool_credit(CallContext.of(sponsor), 7, user.address, 50)
        assert credit.variant is CreditVariant.POOL_SPONSORED
        assert credit.total_spent == 0
        assert credit.pool_sponsor == sponsor.address
        assert credit.expiry_timestamp == clock.now() + 365 * SECONDS_PER_DAY

        ctx = CallContext.of(user)
        issuer.purchase(ctx, 10)
        issuer.redeem(ctx, 20, servicing_node=NODE, pool_id=7)
        assert issuer.get_credit(user.address, pool_id=7).remaining_units == 30
        assert issuer.get_credit(user.address).remaining_units == 10

    def test_grant_without_pool_manager(self, ledger, admin, sponsor):
        """A standalone issuer trusts the caller as pool authority."""
        issuer = AccessCreditIssuer(ledger)
        issuer.initialize(CallContext.of(admin), price_oracle=admin.address)
        beneficiary = Keypair.from_seed("beneficiary").address
        credit = issuer.grant_pool_credit(CallContext.of(sponsor), 3, beneficiary, 5)
        assert credit.pool_id == 3

    def test_deactivate_pool_credit(self, issuer, pools, sponsor, user):
        pools.create_pool(CallContext.of(sponsor), 2, "ngo", 10_000, 100)
        issuer.grant_pool_credit(CallContext.of(sponsor), 2, user.address, 50)
        credit = issuer.deactivate(CallContext.of(user), pool_id=2)
        assert not credit.is_active
