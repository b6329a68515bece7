"""
Randomized Node Selector - weighted roulette selection from external randomness.

The caller supplies the candidate pool and 8-bit weights (typically derived
from reputation off-ledger); nothing here reads the node registry. The first
8 bytes of the 32-byte random value, read little-endian, pick a point on the
cumulative weight line:

    target = r mod sum(weights)
    select the first i with weights[0] + ... + weights[i] > target

so node i is chosen with probability weights[i] / sum(weights).

A request is fulfilled exactly once; the selected node never changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .checked import checked_add, require_u64
from .config import SelectionConfig
from .constants import MAX_SELECTION_WEIGHT, RANDOM_VALUE_LEN, SEED_LEN
from .errors import ErrorCode, ledger_error
from .events import NodeSelected, SelectionRequested
from .identity import Address, CallContext, derive_address
from .substrate import Ledger, atomic, decode_address, ledger_record

logger = logging.getLogger(__name__)


def request_key(requester: Address, nonce: int) -> Address:
    return derive_address("vrf_request", requester, nonce)


@dataclass(frozen=True)
class Selection:
    node: Address
    index: int
    total_weight: int


def random_u64(random_value: bytes) -> int:
    """Interpret the first 8 bytes of a 32-byte random value as a little-endian u64."""
    if not isinstance(random_value, (bytes, bytearray)) or len(random_value) != RANDOM_VALUE_LEN:
        raise ledger_error(ErrorCode.INVALID_RANDOM_VALUE, f"expected {RANDOM_VALUE_LEN} bytes")
    return int.from_bytes(random_value[:8], "little")


def select_weighted_node(
    random_value: int,
    nodes: Sequence[Address],
    weights: Sequence[int],
    max_weight: int = MAX_SELECTION_WEIGHT,
) -> Selection:
    """
    Pick a node by cumulative weight.

    Raises:
        ValidationError: mismatched lengths, empty pool, weight out of range,
            zero total weight
    """
    if len(nodes) != len(weights):
        raise ledger_error(ErrorCode.MISMATCHED_LENGTHS, f"{len(nodes)} nodes, {len(weights)} weights")
    if not nodes:
        raise ledger_error(ErrorCode.EMPTY_NODE_POOL)
    for weight in weights:
        if isinstance(weight, bool) or not isinstance(weight, int) or not (0 <= weight <= max_weight):
            raise ledger_error(ErrorCode.WEIGHT_OUT_OF_RANGE, repr(weight))
    require_u64(random_value, "random_value")

    total_weight = 0
    for weight in weights:
        total_weight = checked_add(total_weight, weight, "total_weight")
    if total_weight == 0:
        raise ledger_error(ErrorCode.ZERO_TOTAL_WEIGHT)

    target = random_value % total_weight
    cumulative = 0
    for index, weight in enumerate(weights):
        cumulative += weight
        if target < cumulative:
            return Selection(node=nodes[index], index=index, total_weight=total_weight)

    # unreachable while target < total_weight
    return Selection(node=nodes[-1], index=len(nodes) - 1, total_weight=total_weight)


@ledger_record
@dataclass
class RandomSelectionRequest:
    """One selection request. `is_fulfilled` only ever goes False -> True."""
    KIND = "selection_request"

    requester: Address
    nonce: int
    seed: bytes
    timestamp: int
    is_fulfilled: bool = False
    selected_node: Optional[Address] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requester": str(self.requester),
            "nonce": self.nonce,
            "seed": self.seed.hex(),
            "timestamp": self.timestamp,
            "is_fulfilled": self.is_fulfilled,
            "selected_node": str(self.selected_node) if self.selected_node else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RandomSelectionRequest":
        return cls(
            requester=Address.from_hex(data["requester"]),
            nonce=data["nonce"],
            seed=bytes.fromhex(data["seed"]),
            timestamp=data["timestamp"],
            is_fulfilled=data.get("is_fulfilled", False),
            selected_node=decode_address(data.get("selected_node")),
        )


class RandomNodeSelector:
    """
    Request/fulfil lifecycle around `select_weighted_node`.

    When a randomness authority is configured only it may fulfil requests;
    otherwise any authenticated caller may.
    """

    def __init__(
        self,
        ledger: Ledger,
        config: Optional[SelectionConfig] = None,
        randomness_authority: Optional[Address] = None,
    ):
        self.ledger = ledger
        self.config = config or SelectionConfig()
        if randomness_authority is None and self.config.randomness_authority:
            randomness_authority = Address.from_hex(self.config.randomness_authority)
        self.randomness_authority = randomness_authority

    def get_request(self, requester: Address, nonce: int = 0) -> Optional[RandomSelectionRequest]:
        return self.ledger.get(request_key(requester, nonce), RandomSelectionRequest)

    def get_selected_node(self, requester: Address, nonce: int = 0) -> Optional[Address]:
        """The selected node, or None while the request is pending or unknown."""
        request = self.get_request(requester, nonce)
        return request.selected_node if request is not None else None

    @atomic
    def request(self, ctx: CallContext, seed: bytes, nonce: int = 0) -> RandomSelectionRequest:
        """Open a selection request bound to the caller."""
        require_u64(nonce, "nonce")
        if not isinstance(seed, (bytes, bytearray)) or len(seed) != SEED_LEN:
            raise ledger_error(ErrorCode.INVALID_SEED, f"expected {SEED_LEN} bytes")

        requester = ctx.signer
        now = self.ledger.now()
        request = RandomSelectionRequest(requester=requester, nonce=nonce, seed=bytes(seed), timestamp=now)
        self.ledger.create(request_key(requester, nonce), request, ErrorCode.REQUEST_ALREADY_EXISTS)

        self.ledger.emit(SelectionRequested(timestamp=now, requester=requester, nonce=nonce, seed=request.seed))
        logger.info(f"Selection requested: {requester.short()} nonce={nonce}")
        return request

    @atomic
    def fulfill(
        self,
        ctx: CallContext,
        requester: Address,
        random_value: bytes,
        node_pool: List[Address],
        weights: List[int],
        nonce: int = 0,
    ) -> Address:
        """
        Resolve a pending request with externally supplied randomness.

        Raises:
            AuthorizationError: caller is not the configured randomness authority
            StateError: request unknown or already fulfilled
            ValidationError: malformed random value, pool or weights
        """
        if self.randomness_authority is not None:
            ctx.require_signer(self.randomness_authority)
        if len(node_pool) != len(weights):
            raise ledger_error(ErrorCode.MISMATCHED_LENGTHS, f"{len(node_pool)} nodes, {len(weights)} weights")
        if not node_pool:
            raise ledger_error(ErrorCode.EMPTY_NODE_POOL)

        request = self.ledger.load(request_key(requester, nonce), RandomSelectionRequest, ErrorCode.REQUEST_NOT_FOUND)
        if request.is_fulfilled:
            raise ledger_error(ErrorCode.ALREADY_FULFILLED)

        r = random_u64(random_value)
        selection = select_weighted_node(r, node_pool, weights, max_weight=self.config.max_weight)
        request.selected_node = selection.node
        request.is_fulfilled = True

        self.ledger.emit(NodeSelected(
            timestamp=self.ledger.now(),
            requester=requester,
            nonce=nonce,
            selected_node=selection.node,
            selected_index=selection.index,
            total_weight=selection.total_weight,
        ))
        logger.info(
            f"Node selected for {requester.short()}: {selection.node.short()} "
            f"(index {selection.index} of {len(node_pool)})"
        )
        return selection.node
