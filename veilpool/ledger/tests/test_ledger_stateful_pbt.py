"""
Stateful property tests for the ledger components.

Random sequences of registry and pool calls (valid or not) must never break
the accounting identities, and escrow transfers must conserve tokens.
"""

from __future__ import annotations

from typing import List

from hypothesis import HealthCheck, settings
from hypothesis import strategies as st
from hypothesis.stateful import RuleBasedStateMachine, invariant, rule

from veilpool.ledger.constants import MIN_STAKE, TOKEN_UNIT, UNBONDING_PERIOD
from veilpool.ledger.errors import LedgerError
from veilpool.ledger.identity import CallContext, Keypair
from veilpool.ledger.pools import SponsorshipPoolManager
from veilpool.ledger.registry import NodeRegistry, ViolationKind
from veilpool.ledger.substrate import InMemoryEscrow, Ledger, ManualClock

_REFERENCE_NOW = 1_704_067_200
_OPERATORS = [Keypair.from_seed(f"pbt-operator-{i}") for i in range(3)]
_BENEFICIARIES = [Keypair.from_seed(f"pbt-beneficiary-{i}") for i in range(4)]
_ADMIN = Keypair.from_seed("pbt-admin")
_SPONSOR = Keypair.from_seed("pbt-sponsor")
_FEE_VAULT = Keypair.from_seed("pbt-fee-vault").address

operator_index = st.integers(min_value=0, max_value=len(_OPERATORS) - 1)
beneficiary_index = st.integers(min_value=0, max_value=len(_BENEFICIARIES) - 1)
stake_amounts = st.sampled_from([0, 1, MIN_STAKE // 2, MIN_STAKE, MIN_STAKE + 7 * TOKEN_UNIT, 3 * MIN_STAKE])
pool_ids = st.integers(min_value=0, max_value=1)


class LedgerMachine(RuleBasedStateMachine):
    def __init__(self) -> None:
        super().__init__()
        self.clock = ManualClock(_REFERENCE_NOW)
        self.escrow = InMemoryEscrow()
        self.ledger = Ledger(clock=self.clock, escrow=self.escrow)
        self.registry = NodeRegistry(self.ledger)
        self.pools = SponsorshipPoolManager(self.ledger)

        for kp in _OPERATORS:
            self.escrow.deposit(kp.address, 5 * MIN_STAKE)
        self.escrow.deposit(_SPONSOR.address, 100_000)
        self.escrow.deposit(_ADMIN.address, 1_000 * TOKEN_UNIT)
        self.supply = self.escrow.total()
        self.errors: List[str] = []

        self.registry.initialize(CallContext.of(_ADMIN), _FEE_VAULT)

    def _attempt(self, fn, *args) -> None:
        try:
            fn(*args)
        except LedgerError as exc:
            self.errors.append(exc.code.name)

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    @rule(i=operator_index)
    def register(self, i: int) -> None:
        self._attempt(self.registry.register, CallContext.of(_OPERATORS[i]), "eu", "198.51.100.1", 10)

    @rule(i=operator_index, amount=stake_amounts)
    def stake(self, i: int, amount: int) -> None:
        self._attempt(self.registry.stake, CallContext.of(_OPERATORS[i]), amount)

    @rule(i=operator_index, amount=stake_amounts)
    def unstake(self, i: int, amount: int) -> None:
        self._attempt(self.registry.unstake, CallContext.of(_OPERATORS[i]), amount)

    @rule(i=operator_index)
    def withdraw(self, i: int) -> None:
        self._attempt(self.registry.withdraw_unstaked, CallContext.of(_OPERATORS[i]))

    @rule(i=operator_index, malicious=st.booleans())
    def slash(self, i: int, malicious: bool) -> None:
        kind = ViolationKind.MALICIOUS if malicious else ViolationKind.DOWNTIME
        self._attempt(self.registry.slash, CallContext.of(_ADMIN), _OPERATORS[i].address, kind)

    @rule(i=operator_index, gross=st.integers(min_value=0, max_value=10 * TOKEN_UNIT))
    def earn(self, i: int, gross: int) -> None:
        self._attempt(self.registry.record_earnings, CallContext.of(_OPERATORS[i]), gross)

    @rule(amount=st.integers(min_value=0, max_value=10 * TOKEN_UNIT))
    def fund_earnings(self, amount: int) -> None:
        self._attempt(self.registry.fund_earnings, CallContext.of(_ADMIN), amount)

    @rule(i=operator_index)
    def claim(self, i: int) -> None:
        self._attempt(self.registry.claim_earnings, CallContext.of(_OPERATORS[i]))

    @rule(i=operator_index, active=st.booleans())
    def toggle(self, i: int, active: bool) -> None:
        ctx = CallContext.of(_OPERATORS[i])
        self._attempt(self.registry.reactivate if active else self.registry.deactivate, ctx)

    @rule(i=operator_index, score=st.integers(min_value=0, max_value=100))
    def reputation(self, i: int, score: int) -> None:
        self._attempt(self.registry.update_reputation, CallContext.of(_ADMIN), _OPERATORS[i].address, score)

    @rule(seconds=st.sampled_from([1, 3_600, UNBONDING_PERIOD - 1, UNBONDING_PERIOD]))
    def advance(self, seconds: int) -> None:
        self.clock.advance(seconds)

    # -------------------------------------------------------------------------
    # Pools
    # -------------------------------------------------------------------------

    @rule(pool_id=pool_ids, funding=st.integers(min_value=0, max_value=20_000), allocation=st.integers(0, 5_000))
    def create_pool(self, pool_id: int, funding: int, allocation: int) -> None:
        self._attempt(self.pools.create_pool, CallContext.of(_SPONSOR), pool_id, "pbt", funding, allocation)

    @rule(pool_id=pool_ids, amount=st.integers(min_value=0, max_value=5_000))
    def fund_pool(self, pool_id: int, amount: int) -> None:
        self._attempt(self.pools.fund_pool, CallContext.of(_SPONSOR), pool_id, amount)

    @rule(pool_id=pool_ids)
    def close_pool(self, pool_id: int) -> None:
        self._attempt(self.pools.close_pool, CallContext.of(_SPONSOR), pool_id)

    @rule(pool_id=pool_ids, b=beneficiary_index, units=st.integers(min_value=0, max_value=5_000))
    def add_beneficiary(self, pool_id: int, b: int, units: int) -> None:
        self._attempt(
            self.pools.add_beneficiary, CallContext.of(_SPONSOR), pool_id, _BENEFICIARIES[b].address, units
        )

    @rule(pool_id=pool_ids, b=beneficiary_index)
    def remove_beneficiary(self, pool_id: int, b: int) -> None:
        self._attempt(self.pools.remove_beneficiary, CallContext.of(_SPONSOR), pool_id, _BENEFICIARIES[b].address)

    @rule(pool_id=pool_ids, b=beneficiary_index, units=st.integers(min_value=0, max_value=5_000))
    def extend(self, pool_id: int, b: int, units: int) -> None:
        self._attempt(
            self.pools.extend_allocation, CallContext.of(_SPONSOR), pool_id, _BENEFICIARIES[b].address, units
        )

    @rule(pool_id=pool_ids, b=beneficiary_index, units=st.integers(min_value=0, max_value=3_000))
    def redeem(self, pool_id: int, b: int, units: int) -> None:
        self._attempt(
            self.pools.redeem_access, CallContext.of(_BENEFICIARIES[b]), _SPONSOR.address, pool_id, units
        )

    # -------------------------------------------------------------------------
    # Invariants
    # -------------------------------------------------------------------------

    @invariant()
    def registry_accounting(self) -> None:
        ok, failed = self.registry.check_invariants()
        assert ok, failed

    @invariant()
    def pool_accounting(self) -> None:
        ok, failed = self.pools.check_invariants()
        assert ok, failed

    @invariant()
    def tokens_conserved(self) -> None:
        assert self.escrow.total() == self.supply

    @invariant()
    def no_transaction_left_open(self) -> None:
        assert not self.ledger.in_transaction


LedgerMachine.TestCase.settings = settings(
    max_examples=50,
    stateful_step_count=40,
    deadline=None,
    derandomize=True,
    suppress_health_check=[HealthCheck.too_slow],
)
TestLedgerStateful = LedgerMachine.TestCase
