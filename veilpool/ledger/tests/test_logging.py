import json
import logging

import pytest

from veilpool.ledger.events import LoggingSink, NodeDeactivated, SelectionRequested
from veilpool.ledger.identity import Keypair
from veilpool.logging import (
    AUDIT_LOGGER,
    REDACTED,
    LoggingOptions,
    configure_logging,
    load_logging_options_from_env,
)


def test_logging_redacts_secrets_in_message(capsys) -> None:
    configure_logging(LoggingOptions(level="INFO", format="text", redact=True))
    logger = logging.getLogger("veilpool.test")
    logger.info("private_key=SUPERSECRET")

    captured = capsys.readouterr()
    assert "SUPERSECRET" not in captured.err
    assert "[REDACTED]" in captured.err


def test_logging_redacts_secrets_in_context(capsys) -> None:
    configure_logging(LoggingOptions(level="INFO", format="json", redact=True))
    logger = logging.getLogger("veilpool.test")
    logger.info("hello", extra={"context": {"signature": "SUPERSECRET"}})

    captured = capsys.readouterr()
    assert "SUPERSECRET" not in captured.err
    assert "[REDACTED]" in captured.err


def test_json_format_is_one_object_per_line(capsys) -> None:
    configure_logging(LoggingOptions(level="DEBUG", format="json", redact=False))
    logging.getLogger("veilpool.ledger.registry").debug("heartbeat")

    line = capsys.readouterr().err.strip().splitlines()[-1]
    payload = json.loads(line)
    assert payload["level"] == "DEBUG"
    assert payload["logger"] == "veilpool.ledger.registry"
    assert payload["message"] == "heartbeat"


def test_level_filters_lower_records(capsys) -> None:
    configure_logging(LoggingOptions(level="WARNING", format="text"))
    logging.getLogger("veilpool.test").info("quiet")
    logging.getLogger("veilpool.test").warning("loud")

    err = capsys.readouterr().err
    assert "quiet" not in err
    assert "loud" in err


def test_rotating_file_handler(tmp_path, capsys) -> None:
    log_file = tmp_path / "ledger.log"
    configure_logging(LoggingOptions(level="INFO", format="text", file=str(log_file)))
    logging.getLogger("veilpool.test").info("to disk")
    for handler in logging.getLogger("veilpool").handlers:
        handler.flush()

    assert "to disk" in log_file.read_text()


def test_options_from_env(monkeypatch) -> None:
    monkeypatch.setenv("VEILPOOL_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("VEILPOOL_LOG_FORMAT", "json")
    monkeypatch.setenv("VEILPOOL_LOG_REDACT", "0")

    options = load_logging_options_from_env()
    assert options.level == "DEBUG"
    assert options.format == "json"
    assert not options.redact


def test_audit_sink_writes_event_context(capsys) -> None:
    configure_logging(LoggingOptions(level="INFO", format="json", redact=True))
    operator = Keypair.from_seed("operator").address
    LoggingSink().on_event(NodeDeactivated(timestamp=5, operator=operator))

    line = capsys.readouterr().err.strip().splitlines()[-1]
    payload = json.loads(line)
    assert payload["logger"] == "veilpool.ledger.audit"
    assert payload["context"]["event"] == "node_deactivated"
    assert payload["context"]["operator"] == str(operator)


def _last_json_line(err: str) -> dict:
    return json.loads(err.strip().splitlines()[-1])


def test_audit_event_keeps_selection_seed(capsys) -> None:
    """The request seed is public ledger data and must survive redaction."""
    configure_logging(LoggingOptions(level="INFO", format="json", redact=True))
    requester = Keypair.from_seed("requester").address
    seed = bytes(range(32))
    LoggingSink().on_event(SelectionRequested(timestamp=7, requester=requester, nonce=3, seed=seed))

    payload = _last_json_line(capsys.readouterr().err)
    assert payload["event"] == "selection_requested"
    assert payload["ledger_time"] == 7
    assert payload["context"]["seed"] == seed.hex()
    assert payload["context"]["requester"] == str(requester)


def test_audit_event_masks_credential_fields(capsys) -> None:
    configure_logging(LoggingOptions(level="INFO", format="json", redact=True))
    signature = "ab" * 64
    logging.getLogger(AUDIT_LOGGER).info(
        "[AUDIT] node_selected",
        extra={"context": {"event": "node_selected", "signature": signature, "seed": "cd" * 16, "nonce": 1}},
    )

    payload = _last_json_line(capsys.readouterr().err)
    assert payload["context"]["signature"] == REDACTED
    assert payload["context"]["seed"] == REDACTED
    assert payload["context"]["nonce"] == 1
    assert signature not in json.dumps(payload)


def test_keypair_seed_masked_outside_audit_trail(capsys) -> None:
    configure_logging(LoggingOptions(level="INFO", format="json", redact=True))
    logger = logging.getLogger("veilpool.ledger.identity")
    logger.info("derived seed=hunter2", extra={"context": {"seed": "hunter2", "raw": b"\x00\x01"}})

    payload = _last_json_line(capsys.readouterr().err)
    assert "hunter2" not in payload["message"]
    assert payload["context"] == {"seed": REDACTED, "raw": REDACTED}
    assert "event" not in payload


def test_audit_file_receives_only_audit_records(tmp_path, capsys) -> None:
    audit_file = tmp_path / "audit.jsonl"
    configure_logging(LoggingOptions(level="INFO", format="text", audit_file=str(audit_file)))
    logging.getLogger("veilpool.ledger.registry").info("operational")
    operator = Keypair.from_seed("operator").address
    LoggingSink().on_event(NodeDeactivated(timestamp=9, operator=operator))
    for handler in logging.getLogger(AUDIT_LOGGER).handlers:
        handler.flush()

    lines = audit_file.read_text().strip().splitlines()
    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["event"] == "node_deactivated"
    assert record["context"]["operator"] == str(operator)
    assert "operational" in capsys.readouterr().err


def test_unknown_level_or_format_rejected(monkeypatch) -> None:
    with pytest.raises(ValueError):
        configure_logging(LoggingOptions(level="LOUD"))
    monkeypatch.setenv("VEILPOOL_LOG_FORMAT", "xml")
    with pytest.raises(ValueError):
        load_logging_options_from_env()


def test_audit_file_from_env(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("VEILPOOL_LOG_AUDIT_FILE", str(tmp_path / "audit.jsonl"))
    monkeypatch.setenv("VEILPOOL_LOG_REDACT", "false")

    options = load_logging_options_from_env()
    assert options.audit_file == str(tmp_path / "audit.jsonl")
    assert not options.redact
