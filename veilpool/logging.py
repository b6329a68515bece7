"""
Process-wide logging for VeilPool.

Two kinds of records flow through the ``veilpool`` logger hierarchy:

- operational records from module loggers (``veilpool.ledger.registry`` ...),
  whose ``context`` is free-form and redacted by key name;
- committed audit events on ``veilpool.ledger.audit``, whose ``context`` is an
  event's ``to_dict()``. Their schema is known, so only fields that carry
  credentials are masked and public ledger data (selection seeds, random
  values, addresses) stays verbatim for replay.

Audit records can additionally be written to a dedicated JSON-lines file.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, FrozenSet, List, Mapping, MutableMapping, Optional

AUDIT_LOGGER = "veilpool.ledger.audit"

REDACTED = "[REDACTED]"

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_FORMATS = ("text", "json")


@dataclass(frozen=True)
class LoggingOptions:
    level: str = "INFO"
    format: str = "text"  # text | json
    file: Optional[str] = None
    redact: bool = True
    audit_file: Optional[str] = None  # JSON lines of committed audit events
    max_size_mb: int = 10
    backup_count: int = 3


# Free-form contexts: any key containing one of these is masked. A keypair
# seed is a private key, hence "seed".
_SECRET_KEY_FRAGMENTS = (
    "authorization",
    "keypair",
    "mnemonic",
    "password",
    "private_key",
    "secret",
    "seed",
    "signature",
)

# Audit contexts: exact field names that hold credentials.
_SECRET_EVENT_FIELDS: FrozenSet[str] = frozenset({
    "keypair",
    "private_key",
    "seed",
    "signature",
    "signatures",
})

# Audit fields that match a secret fragment but are published on the ledger.
_PUBLIC_EVENT_FIELDS: Dict[str, FrozenSet[str]] = {
    "selection_requested": frozenset({"seed"}),
}

_RE_KV = re.compile(
    r"(?P<key>private[_-]?key|secret|password|mnemonic|authorization|signature|seed)"
    r"\s*[:=]\s*(?P<value>[^\s,;]+)",
    flags=re.IGNORECASE,
)


def _redact_message(value: str) -> str:
    return _RE_KV.sub(lambda m: f"{m.group('key')}={REDACTED}", value)


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SECRET_KEY_FRAGMENTS)


def redact_context(value: Any, *, depth: int = 0, max_depth: int = 4) -> Any:
    """Mask secret-looking values in a free-form log context.

    Raw bytes are never emitted; structures nested deeper than ``max_depth``
    are replaced wholesale.
    """
    if depth > max_depth:
        return REDACTED
    if isinstance(value, str):
        return _redact_message(value)
    if isinstance(value, (bytes, bytearray)):
        return REDACTED
    if isinstance(value, Mapping):
        return {
            k: REDACTED if isinstance(k, str) and _is_secret_key(k)
            else redact_context(v, depth=depth + 1, max_depth=max_depth)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_context(v, depth=depth + 1, max_depth=max_depth) for v in value]
    return value


def redact_event(context: Mapping[str, Any]) -> Dict[str, Any]:
    """Mask credential fields of a serialized audit event.

    Event fields are flat and already JSON-ready (addresses and byte strings
    are hex), so values are kept as-is unless the field name is a credential
    field and the event does not publish it.
    """
    public = _PUBLIC_EVENT_FIELDS.get(str(context.get("event", "")), frozenset())
    redacted: Dict[str, Any] = {}
    for key, value in context.items():
        if key in public:
            redacted[key] = value
        elif key in _SECRET_EVENT_FIELDS or isinstance(value, (bytes, bytearray)):
            redacted[key] = REDACTED
        else:
            redacted[key] = value
    return redacted


def _is_audit_record(record: logging.LogRecord) -> bool:
    return record.name == AUDIT_LOGGER or record.name.startswith(AUDIT_LOGGER + ".")


class RedactionFilter(logging.Filter):
    """Redacts record messages and ``extra={"context": ...}`` payloads."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = _redact_message(record.msg)

        context = getattr(record, "context", None)
        if isinstance(context, MutableMapping):
            if _is_audit_record(record) and "event" in context:
                record.context = redact_event(context)
            else:
                record.context = redact_context(context)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line; audit records also expose their event type."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context is not None:
            payload["context"] = context
            if _is_audit_record(record) and isinstance(context, Mapping):
                payload["event"] = context.get("event")
                payload["ledger_time"] = context.get("timestamp")
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _check_level(level: str) -> str:
    normalized = level.strip().upper()
    if normalized not in _LEVELS:
        raise ValueError(f"Invalid log level: {level}")
    return normalized


def _check_format(fmt: str) -> str:
    normalized = fmt.strip().lower()
    if normalized not in _FORMATS:
        raise ValueError(f"Invalid log format: {fmt}")
    return normalized


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def load_logging_options_from_env() -> LoggingOptions:
    """Load logging options from environment.

    Env vars:
        - VEILPOOL_LOG_LEVEL
        - VEILPOOL_LOG_FORMAT
        - VEILPOOL_LOG_FILE
        - VEILPOOL_LOG_AUDIT_FILE
        - VEILPOOL_LOG_REDACT ("0"/"false" disables redaction)
    """
    return LoggingOptions(
        level=_check_level(os.getenv("VEILPOOL_LOG_LEVEL", "INFO")),
        format=_check_format(os.getenv("VEILPOOL_LOG_FORMAT", "text")),
        file=os.getenv("VEILPOOL_LOG_FILE"),
        redact=_env_flag("VEILPOOL_LOG_REDACT", True),
        audit_file=os.getenv("VEILPOOL_LOG_AUDIT_FILE"),
    )


def _handler(target: logging.Handler, formatter: logging.Formatter, redact: bool) -> logging.Handler:
    target.setFormatter(formatter)
    if redact:
        target.addFilter(RedactionFilter())
    return target


def _rotating(path: str, options: LoggingOptions) -> RotatingFileHandler:
    return RotatingFileHandler(
        path,
        maxBytes=options.max_size_mb * 1024 * 1024,
        backupCount=options.backup_count,
    )


def configure_logging(options: LoggingOptions) -> None:
    """Configure the ``veilpool`` logger hierarchy.

    Postconditions:
        - Every record goes to stderr, and to ``options.file`` when set
        - Audit records also go to ``options.audit_file`` as JSON lines
        - Redaction applies to every handler unless ``options.redact`` is False
    """
    fmt = _check_format(options.format)
    if fmt == "json":
        stream_formatter: logging.Formatter = JSONFormatter()
        file_formatter: logging.Formatter = JSONFormatter()
    else:
        stream_formatter = logging.Formatter("%(levelname)s %(name)s: %(message)s")
        file_formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    handlers: List[logging.Handler] = [_handler(logging.StreamHandler(sys.stderr), stream_formatter, options.redact)]
    if options.file:
        handlers.append(_handler(_rotating(options.file, options), file_formatter, options.redact))

    root = logging.getLogger("veilpool")
    root.setLevel(_check_level(options.level))
    root.handlers[:] = handlers
    root.propagate = False

    audit = logging.getLogger(AUDIT_LOGGER)
    audit.handlers.clear()
    if options.audit_file:
        audit.addHandler(_handler(_rotating(options.audit_file, options), JSONFormatter(), options.redact))
