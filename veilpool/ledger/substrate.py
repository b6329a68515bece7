"""
In-process ledger substrate.

The core components assume an execution substrate that:
1. Stores account records durably under derived addresses
2. Applies each call atomically (all-or-nothing)
3. Moves token units between keyed escrow balances
4. Supplies a monotonic wall clock

This module is a reference implementation of that contract so the core can
run and be tested in-process. A production deployment swaps `InMemoryEscrow`
and `SystemClock` for adapters to the real ledger.

Invariants:
- A failed transaction leaves records, escrow balances and the event log
  exactly as they were before the call
- Events reach sinks only after the outermost transaction commits
"""

from __future__ import annotations

import copy
import json
import logging
import os
import secrets
import time
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Optional,
    Protocol,
    Type,
    TypeVar,
    Union,
    runtime_checkable,
)

from .checked import checked_add, checked_sub, require_u64
from .errors import ErrorCode, LedgerError, ledger_error
from .events import AuditEvent, AuditSink
from .identity import Address

logger = logging.getLogger(__name__)


# =============================================================================
# Clock
# =============================================================================

class Clock(Protocol):
    """Wall-clock source returning unix seconds."""

    def now(self) -> int:
        ...


class SystemClock:
    """Clock backed by the host time, never moving backwards."""

    def __init__(self) -> None:
        self._last = 0

    def now(self) -> int:
        self._last = max(self._last, int(time.time()))
        return self._last


class ManualClock:
    """Deterministic clock for tests and simulations."""

    def __init__(self, start: int = 1_704_067_200):
        self._now = int(start)

    def now(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("clock cannot move backwards")
        self._now += int(seconds)
        return self._now

    def set(self, timestamp: int) -> None:
        if timestamp < self._now:
            raise ValueError(f"clock cannot move backwards: {timestamp} < {self._now}")
        self._now = int(timestamp)


# =============================================================================
# Escrow
# =============================================================================

class EscrowLedger(Protocol):
    """Keyed token balances."""

    def transfer(self, from_key: Address, to_key: Address, amount: int) -> None:
        ...

    def balance_of(self, key: Address) -> int:
        ...


@runtime_checkable
class SupportsSnapshot(Protocol):
    def snapshot(self) -> Any:
        ...

    def restore(self, state: Any) -> None:
        ...


class InMemoryEscrow:
    """
    Dictionary-backed escrow ledger.

    Invariants:
    - Every balance is in [0, U64_MAX]
    - transfer conserves the sum of balances
    """

    def __init__(self, balances: Optional[Dict[Address, int]] = None):
        self._balances: Dict[Address, int] = dict(balances or {})

    def balance_of(self, key: Address) -> int:
        return self._balances.get(key, 0)

    def deposit(self, key: Address, amount: int) -> int:
        """Credit `key` from outside the ledger (faucet / bridge-in)."""
        require_u64(amount, "deposit")
        self._balances[key] = checked_add(self.balance_of(key), amount, "deposit")
        return self._balances[key]

    def transfer(self, from_key: Address, to_key: Address, amount: int) -> None:
        require_u64(amount, "transfer")
        if amount == 0:
            return
        available = self.balance_of(from_key)
        if available < amount:
            raise ledger_error(
                ErrorCode.INSUFFICIENT_FUNDS,
                f"{from_key.short()} holds {available}, needs {amount}",
            )
        self._balances[from_key] = checked_sub(available, amount, "transfer")
        self._balances[to_key] = checked_add(self.balance_of(to_key), amount, "transfer")

    def total(self) -> int:
        return sum(self._balances.values())

    def snapshot(self) -> Dict[Address, int]:
        return dict(self._balances)

    def restore(self, state: Dict[Address, int]) -> None:
        self._balances = dict(state)

    def to_dict(self) -> Dict[str, int]:
        return {str(k): v for k, v in sorted(self._balances.items()) if v}

    @classmethod
    def from_dict(cls, data: Dict[str, int]) -> "InMemoryEscrow":
        return cls({Address.from_hex(k): int(v) for k, v in data.items()})


# =============================================================================
# Record registry (for persistence)
# =============================================================================

R = TypeVar("R")

_RECORD_TYPES: Dict[str, Type[Any]] = {}


def ledger_record(cls: Type[R]) -> Type[R]:
    """Register a record class (needs KIND, to_dict, from_dict) for persistence."""
    kind = getattr(cls, "KIND", None)
    if not kind:
        raise TypeError(f"{cls.__name__} must define KIND")
    _RECORD_TYPES[kind] = cls
    return cls


def encode_address(value: Optional[Address]) -> Optional[str]:
    return str(value) if value is not None else None


def decode_address(value: Optional[str]) -> Optional[Address]:
    return Address.from_hex(value) if value is not None else None


# =============================================================================
# Ledger
# =============================================================================

def _atomic_write_text(path: Path, text: str, mode: int = 0o600) -> None:
    """Write text via temp file + fsync + rename so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp.{os.getpid()}.{secrets.token_hex(8)}")

    fd = os.open(str(tmp_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(str(tmp_path), str(path))
    finally:
        tmp_path.unlink(missing_ok=True)


class Ledger:
    """
    Record store + escrow + clock + audit fan-out with transactional semantics.

    Usage:
        ledger = Ledger(clock=ManualClock())
        with ledger.transaction():
            ledger.create(key, record, exists=ErrorCode.NODE_ALREADY_REGISTERED)
            ledger.emit(event)
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        escrow: Optional[EscrowLedger] = None,
        sinks: Optional[List[AuditSink]] = None,
    ):
        self.clock: Clock = clock or SystemClock()
        self.escrow: EscrowLedger = escrow if escrow is not None else InMemoryEscrow()
        self._records: Dict[Address, Any] = {}
        self._sinks: List[AuditSink] = list(sinks or [])

        self._depth = 0
        self._pending: List[AuditEvent] = []
        self._committed_events = 0

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["Ledger"]:
        """
        All-or-nothing scope. Re-entrant: only the outermost level snapshots
        and commits.
        """
        if self._depth > 0:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        records_before = copy.deepcopy(self._records)
        escrow_before = self.escrow.snapshot() if isinstance(self.escrow, SupportsSnapshot) else None
        self._depth = 1
        self._pending = []
        try:
            yield self
        except BaseException as exc:
            self._records = records_before
            if escrow_before is not None:
                self.escrow.restore(escrow_before)
            dropped = len(self._pending)
            self._pending = []
            if isinstance(exc, LedgerError):
                logger.warning(f"Transaction aborted: {exc} ({dropped} event(s) discarded)")
            raise
        finally:
            self._depth = 0

        events, self._pending = self._pending, []
        self._committed_events += len(events)
        for event in events:
            self._dispatch(event)

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def add_sink(self, sink: AuditSink) -> None:
        self._sinks.append(sink)

    def remove_sink(self, sink: AuditSink) -> None:
        self._sinks.remove(sink)

    def emit(self, event: AuditEvent) -> None:
        if not self.in_transaction:
            raise RuntimeError("events can only be emitted inside a transaction")
        self._pending.append(event)

    def _dispatch(self, event: AuditEvent) -> None:
        for sink in self._sinks:
            try:
                sink.on_event(event)
            except Exception:
                logger.exception(f"Audit sink {type(sink).__name__} failed on {event.name}")

    @property
    def committed_event_count(self) -> int:
        return self._committed_events

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def now(self) -> int:
        return self.clock.now()

    def get(self, key: Address, record_type: Type[R]) -> Optional[R]:
        record = self._records.get(key)
        if record is None:
            return None
        if not isinstance(record, record_type):
            raise TypeError(
                f"record at {key.short()} is {type(record).__name__}, expected {record_type.__name__}"
            )
        return record

    def load(self, key: Address, record_type: Type[R], missing: ErrorCode) -> R:
        record = self.get(key, record_type)
        if record is None:
            raise ledger_error(missing, key.short())
        return record

    def create(self, key: Address, record: R, exists: ErrorCode) -> R:
        if not self.in_transaction:
            raise RuntimeError("records can only be created inside a transaction")
        if key in self._records:
            raise ledger_error(exists, key.short())
        self._records[key] = record
        return record

    def exists(self, key: Address) -> bool:
        return key in self._records

    def records_of(self, record_type: Type[R]) -> Iterator[R]:
        for record in self._records.values():
            if isinstance(record, record_type):
                yield record

    def __len__(self) -> int:
        return len(self._records)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        records = {}
        for key, record in sorted(self._records.items()):
            records[str(key)] = {"kind": record.KIND, "data": record.to_dict()}
        data: Dict[str, Any] = {"version": 1, "records": records}
        if isinstance(self.escrow, InMemoryEscrow):
            data["escrow"] = self.escrow.to_dict()
        return data

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        clock: Optional[Clock] = None,
        sinks: Optional[List[AuditSink]] = None,
    ) -> "Ledger":
        escrow = InMemoryEscrow.from_dict(data.get("escrow", {}))
        ledger = cls(clock=clock, escrow=escrow, sinks=sinks)
        for key_hex, entry in data.get("records", {}).items():
            record_type = _RECORD_TYPES.get(entry["kind"])
            if record_type is None:
                raise ValueError(f"unknown record kind: {entry['kind']}")
            ledger._records[Address.from_hex(key_hex)] = record_type.from_dict(entry["data"])
        return ledger

    def save(self, path: Union[str, Path]) -> None:
        _atomic_write_text(Path(path), json.dumps(self.to_dict(), indent=2, sort_keys=True))
        logger.info(f"Ledger state saved to {path} ({len(self._records)} records)")

    @classmethod
    def load_file(
        cls,
        path: Union[str, Path],
        clock: Optional[Clock] = None,
        sinks: Optional[List[AuditSink]] = None,
    ) -> "Ledger":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.from_dict(data, clock=clock, sinks=sinks)


F = TypeVar("F", bound=Callable[..., Any])


def atomic(fn: F) -> F:
    """Run a component method inside one ledger transaction (`self.ledger`)."""

    @wraps(fn)
    def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        with self.ledger.transaction():
            return fn(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]
