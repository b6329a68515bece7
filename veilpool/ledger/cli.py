from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Sequence, Tuple

from veilpool.logging import LoggingOptions, configure_logging

from .config import LedgerConfig
from .constants import TOKEN_UNIT
from .credits import AccessCreditIssuer
from .errors import LedgerError
from .events import AuditSink, LoggingSink, RecordingSink
from .identity import Address, CallContext, Keypair
from .pools import SponsorshipPoolManager
from .pricing import PriceSchedule, SubscriptionTier, calculate_price, discount_bps
from .registry import NodeRegistry, ViolationKind
from .selection import RandomNodeSelector, random_u64, select_weighted_node
from .substrate import InMemoryEscrow, Ledger, ManualClock

logger = logging.getLogger(__name__)


def _emit(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _parse_node_weight(value: str) -> Tuple[Address, int]:
    address_hex, sep, weight = value.rpartition(":")
    if not sep:
        raise argparse.ArgumentTypeError(f"expected ADDR:WEIGHT, got {value!r}")
    try:
        return Address.from_hex(address_hex), int(weight)
    except (LedgerError, ValueError) as exc:
        raise argparse.ArgumentTypeError(f"invalid node {value!r}: {exc}") from exc


def _parse_random(value: str) -> bytes:
    try:
        return bytes.fromhex(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("random value must be hex") from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="veilpool-ledger",
        description="VeilPool ledger tools: pricing quotes, node selection and an in-memory demo",
    )
    parser.add_argument("--config", default=None, help="Config file (JSON, TOML or YAML)")
    parser.add_argument(
        "--log-level", default=None, type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], help="Override log level",
    )
    parser.add_argument("--log-format", default=None, choices=["text", "json"], help="Override log format")
    subparsers = parser.add_subparsers(dest="command", required=True)

    quote = subparsers.add_parser("quote", help="Price a pay-per-unit purchase")
    quote.add_argument("--units", type=int, required=True, help="Units to buy")
    quote.add_argument("--base-price", type=int, default=None, help="Base price per unit")

    subparsers.add_parser("subscriptions", help="List subscription tiers")

    select = subparsers.add_parser("select", help="Run weighted node selection")
    select.add_argument("--random", type=_parse_random, required=True, help="32-byte random value (hex)")
    select.add_argument(
        "--node",
        type=_parse_node_weight,
        action="append",
        required=True,
        help="Candidate as ADDR_HEX:WEIGHT (repeatable)",
    )

    subparsers.add_parser("config", help="Print the effective configuration")

    demo = subparsers.add_parser("demo", help="Run an end-to-end in-memory scenario")
    demo.add_argument("--save", default=None, help="Write the final ledger state to this JSON file")

    return parser


# =============================================================================
# Commands
# =============================================================================

def _cmd_quote(config: LedgerConfig, args: argparse.Namespace) -> Dict[str, Any]:
    schedule = PriceSchedule.from_config(config.issuer, args.base_price)
    price = calculate_price(args.units, schedule)
    return {
        "units": args.units,
        "base_price_per_unit": schedule.base_price_per_unit,
        "discount_bps": discount_bps(args.units, schedule),
        "price": price,
    }


def _cmd_subscriptions(config: LedgerConfig, args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "tiers": [
            {"tier": t.value, "units": t.units, "price": t.price, "duration_days": t.duration_days}
            for t in SubscriptionTier
        ]
    }


def _cmd_select(config: LedgerConfig, args: argparse.Namespace) -> Dict[str, Any]:
    nodes = [n for n, _ in args.node]
    weights = [w for _, w in args.node]
    selection = select_weighted_node(random_u64(args.random), nodes, weights, max_weight=config.selection.max_weight)
    return {
        "selected_node": str(selection.node),
        "selected_index": selection.index,
        "total_weight": selection.total_weight,
    }


def _cmd_config(config: LedgerConfig, args: argparse.Namespace) -> Dict[str, Any]:
    return config.to_dict()


def run_demo(config: LedgerConfig, save_path: Optional[str] = None) -> Dict[str, Any]:
    """Drive every component through a short happy-path scenario."""
    recorder = RecordingSink()
    escrow = InMemoryEscrow()
    sinks: List[AuditSink] = [recorder]
    if config.logging.audit:
        sinks.append(LoggingSink())
    ledger = Ledger(clock=ManualClock(), escrow=escrow, sinks=sinks)

    admin = Keypair.from_seed("demo-admin")
    operator = Keypair.from_seed("demo-operator")
    user = Keypair.from_seed("demo-user")
    sponsor = Keypair.from_seed("demo-sponsor")
    beneficiary = Keypair.from_seed("demo-beneficiary")
    fee_vault = Keypair.from_seed("demo-fee-vault").address

    escrow.deposit(operator.address, 2 * config.registry.min_stake)
    escrow.deposit(user.address, 1_000 * TOKEN_UNIT)
    escrow.deposit(sponsor.address, 1_000 * TOKEN_UNIT)
    escrow.deposit(admin.address, 1_000 * TOKEN_UNIT)

    registry = NodeRegistry(ledger, config.registry)
    pools = SponsorshipPoolManager(ledger, config.pools)
    issuer = AccessCreditIssuer(ledger, config.issuer, pools=pools)
    selector = RandomNodeSelector(ledger, config.selection)

    registry.initialize(CallContext.of(admin), fee_vault)
    registry.register(CallContext.signed(b"register", operator), "eu-west", "203.0.113.7", 10)
    registry.stake(CallContext.of(operator), config.registry.min_stake)
    registry.heartbeat(CallContext.of(operator), 25)
    registry.record_earnings(CallContext.of(operator), 10 * TOKEN_UNIT)
    registry.fund_earnings(CallContext.of(admin), 10 * TOKEN_UNIT)
    registry.claim_earnings(CallContext.of(operator))
    registry.slash(CallContext.of(admin), operator.address, ViolationKind.DOWNTIME)

    issuer.initialize(CallContext.of(admin), price_oracle=admin.address)
    issuer.purchase(CallContext.of(user), 1_000)
    selector.request(CallContext.of(user), bytes(32))
    node = selector.fulfill(
        CallContext.of(admin),
        user.address,
        bytes(range(32)),
        [operator.address],
        [100],
    )
    issuer.redeem(CallContext.of(user), 100, servicing_node=node)

    pools.create_pool(CallContext.of(sponsor), 1, "demo pool", 10_000, 100)
    pools.add_beneficiary(CallContext.of(sponsor), 1, beneficiary.address, 100)
    pools.redeem_access(CallContext.of(beneficiary), sponsor.address, 1, 40)
    issuer.grant_pool_credit(CallContext.of(sponsor), 1, beneficiary.address, 50)

    registry_ok, registry_failed = registry.check_invariants()
    pools_ok, pools_failed = pools.check_invariants()

    if save_path:
        ledger.save(save_path)

    reg = registry.get_registry()
    return {
        "events": [e.name for e in recorder.events],
        "registry": reg.to_dict() if reg else None,
        "treasury_balance": issuer.treasury_balance(),
        "invariants": {
            "registry": {"ok": registry_ok, "failed": registry_failed},
            "pools": {"ok": pools_ok, "failed": pools_failed},
        },
    }


def _cmd_demo(config: LedgerConfig, args: argparse.Namespace) -> Dict[str, Any]:
    return run_demo(config, save_path=args.save)


_COMMANDS = {
    "quote": _cmd_quote,
    "subscriptions": _cmd_subscriptions,
    "select": _cmd_select,
    "config": _cmd_config,
    "demo": _cmd_demo,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        config = LedgerConfig.load(args.config)
    except (ValueError, TypeError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    configure_logging(LoggingOptions(
        level=args.log_level or config.logging.level,
        format=args.log_format or config.logging.format,
        file=config.logging.file,
        redact=config.logging.redact,
        audit_file=config.logging.audit_file,
    ))

    try:
        payload = _COMMANDS[args.command](config, args)
    except LedgerError as exc:
        logger.error(f"{args.command} failed: {exc}")
        print(json.dumps({"error": exc.to_dict()}, sort_keys=True), file=sys.stderr)
        return 1

    _emit(payload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
