from __future__ import annotations

import logging

import pytest

from veilpool.ledger.constants import MIN_STAKE, TOKEN_UNIT
from veilpool.ledger.credits import AccessCreditIssuer
from veilpool.ledger.events import RecordingSink
from veilpool.ledger.identity import Address, CallContext, Keypair
from veilpool.ledger.pools import SponsorshipPoolManager
from veilpool.ledger.registry import NodeRegistry
from veilpool.ledger.selection import RandomNodeSelector
from veilpool.ledger.substrate import InMemoryEscrow, Ledger, ManualClock
from veilpool.logging import AUDIT_LOGGER

REFERENCE_NOW = 1_704_067_200
WALLET_FUNDS = 10 * MIN_STAKE


def as_caller(*identities: Keypair) -> CallContext:
    return CallContext.of(*identities)


@pytest.fixture(autouse=True)
def _restore_veilpool_logger():
    """configure_logging() mutates the shared loggers; undo it per test."""
    logger = logging.getLogger("veilpool")
    audit = logging.getLogger(AUDIT_LOGGER)
    handlers = list(logger.handlers)
    audit_handlers = list(audit.handlers)
    level = logger.level
    propagate = logger.propagate
    yield
    for handler in audit.handlers:
        if handler not in audit_handlers:
            handler.close()
    logger.handlers[:] = handlers
    audit.handlers[:] = audit_handlers
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(REFERENCE_NOW)


@pytest.fixture
def escrow() -> InMemoryEscrow:
    return InMemoryEscrow()


@pytest.fixture
def recorder() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def ledger(clock: ManualClock, escrow: InMemoryEscrow, recorder: RecordingSink) -> Ledger:
    return Ledger(clock=clock, escrow=escrow, sinks=[recorder])


@pytest.fixture
def admin() -> Keypair:
    return Keypair.from_seed("admin")


@pytest.fixture
def operator(escrow: InMemoryEscrow) -> Keypair:
    kp = Keypair.from_seed("operator")
    escrow.deposit(kp.address, WALLET_FUNDS)
    return kp


@pytest.fixture
def user(escrow: InMemoryEscrow) -> Keypair:
    kp = Keypair.from_seed("user")
    escrow.deposit(kp.address, 10_000 * TOKEN_UNIT)
    return kp


@pytest.fixture
def sponsor(escrow: InMemoryEscrow) -> Keypair:
    kp = Keypair.from_seed("sponsor")
    escrow.deposit(kp.address, 10_000 * TOKEN_UNIT)
    return kp


@pytest.fixture
def fee_vault() -> Address:
    return Keypair.from_seed("fee-vault").address


@pytest.fixture
def registry(ledger: Ledger, admin: Keypair, fee_vault: Address) -> NodeRegistry:
    reg = NodeRegistry(ledger)
    reg.initialize(as_caller(admin), fee_vault)
    return reg


@pytest.fixture
def pools(ledger: Ledger) -> SponsorshipPoolManager:
    return SponsorshipPoolManager(ledger)


@pytest.fixture
def issuer(ledger: Ledger, admin: Keypair, pools: SponsorshipPoolManager) -> AccessCreditIssuer:
    iss = AccessCreditIssuer(ledger, pools=pools)
    iss.initialize(as_caller(admin), price_oracle=Keypair.from_seed("oracle").address)
    return iss


@pytest.fixture
def selector(ledger: Ledger) -> RandomNodeSelector:
    return RandomNodeSelector(ledger)
