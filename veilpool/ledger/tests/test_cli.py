from __future__ import annotations

import json
import os

import pytest

from veilpool.ledger.cli import main, run_demo
from veilpool.ledger.config import LedgerConfig
from veilpool.ledger.identity import Address
from veilpool.ledger.substrate import Ledger

NODE_A = str(Address(b"\x0a" * 32))
NODE_B = str(Address(b"\x0b" * 32))


@pytest.fixture(autouse=True)
def _no_env_config(monkeypatch):
    for key in list(os.environ):
        if key.startswith("VEILPOOL_"):
            monkeypatch.delenv(key)


def _run(capsys, *argv):
    code = main(list(argv))
    captured = capsys.readouterr()
    return code, captured.out, captured.err


class TestQuote:
    def test_quote_applies_volume_discount(self, capsys):
        code, out, _ = _run(capsys, "quote", "--units", "1000")
        assert code == 0
        payload = json.loads(out)
        assert payload["price"] == 425_000_000
        assert payload["discount_bps"] == 1_500

    def test_quote_with_base_price(self, capsys):
        code, out, _ = _run(capsys, "quote", "--units", "10", "--base-price", "1000")
        assert code == 0
        assert json.loads(out)["price"] == 10_000

    def test_quote_overflow_is_reported(self, capsys):
        code, out, err = _run(capsys, "quote", "--units", str(2 ** 64 - 1))
        assert code == 1
        assert out == ""
        error = json.loads(err.strip().splitlines()[-1])["error"]
        assert error["name"] == "ARITHMETIC_OVERFLOW"
        assert error["kind"] == "arithmetic"


class TestSelect:
    def test_select_by_weight(self, capsys):
        random_hex = ((15).to_bytes(8, "little") + bytes(24)).hex()
        code, out, _ = _run(
            capsys, "select", "--random", random_hex,
            "--node", f"{NODE_A}:10", "--node", f"{NODE_B}:90",
        )
        assert code == 0
        payload = json.loads(out)
        assert payload["selected_node"] == NODE_B
        assert payload["selected_index"] == 1
        assert payload["total_weight"] == 100

    def test_select_rejects_short_random_value(self, capsys):
        code, _, err = _run(capsys, "select", "--random", "00ff", "--node", f"{NODE_A}:1")
        assert code == 1
        assert "INVALID_RANDOM_VALUE" in err

    def test_bad_node_argument(self, capsys):
        with pytest.raises(SystemExit):
            main(["select", "--random", "00" * 32, "--node", "nonsense"])


class TestConfigCommands:
    def test_subscriptions(self, capsys):
        code, out, _ = _run(capsys, "subscriptions")
        assert code == 0
        tiers = {t["tier"]: t for t in json.loads(out)["tiers"]}
        assert tiers["yearly"]["price"] == 1_920_000_000

    def test_config_reflects_file(self, tmp_path, capsys):
        path = tmp_path / "veilpool.toml"
        path.write_text("[registry]\nmin_stake = 42\n")
        code, out, _ = _run(capsys, "--config", str(path), "config")
        assert code == 0
        assert json.loads(out)["registry"]["min_stake"] == 42

    def test_invalid_config_exit_code(self, tmp_path, capsys):
        path = tmp_path / "veilpool.toml"
        path.write_text("[registry]\nprotocol_fee_bps = 20000\n")
        code, _, err = _run(capsys, "--config", str(path), "config")
        assert code == 2
        assert "Invalid configuration" in err

    def test_malformed_yaml_exit_code(self, tmp_path, capsys):
        path = tmp_path / "veilpool.yaml"
        path.write_text("registry: [min_stake\n")
        code, out, err = _run(capsys, "--config", str(path), "config")
        assert code == 2
        assert out == ""
        assert "Invalid configuration" in err


class TestDemo:
    def test_demo_keeps_invariants(self, capsys):
        code, out, _ = _run(capsys, "--log-level", "WARNING", "demo")
        assert code == 0
        payload = json.loads(out)
        assert payload["invariants"]["registry"]["ok"]
        assert payload["invariants"]["pools"]["ok"]
        assert payload["treasury_balance"] == 425_000_000
        assert "node_selected" in payload["events"]
        assert payload["events"][0] == "registry_initialized"

    def test_demo_saves_state(self, tmp_path):
        path = tmp_path / "state.json"
        run_demo(LedgerConfig(), save_path=str(path))
        restored = Ledger.load_file(path)
        assert len(restored) > 0
