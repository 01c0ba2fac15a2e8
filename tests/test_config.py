"""Tests for YAML + environment configuration loading."""

from decimal import Decimal
from pathlib import Path

import pytest

from binsettle.infrastructure.utils.config import SettlementServiceConfig, load_config

DEFAULT_YAML = Path(__file__).resolve().parent.parent / "config" / "default.yaml"


def write_yaml(tmp_path, text):
    p = tmp_path / "config.yaml"
    p.write_text(text, encoding="utf-8")
    return p


class TestConfig:
    def test_shipped_default_config_is_valid(self):
        cfg = SettlementServiceConfig.from_yaml(DEFAULT_YAML)
        assert cfg.environment == "DEMO"
        assert cfg.settlement.refund_on_price_unavailable is False
        assert {s.id for s in cfg.symbols} >= {"BTCUSDT", "ETHUSDT"}
        assert cfg.demo_accounts["demo-user-1"] == Decimal("1000")

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = write_yaml(
            tmp_path,
            "log_level: INFO\nsettlement:\n  sweep_interval_sec: 5\n",
        )
        monkeypatch.setenv("SETTLEMENT__SWEEP_INTERVAL_SEC", "2.5")
        monkeypatch.setenv("SETTLEMENT__REFUND_ON_PRICE_UNAVAILABLE", "true")
        monkeypatch.setenv("DATABASE__SQLITE__PATH", str(tmp_path / "x.db"))
        monkeypatch.setenv("LOG_LEVEL", "debug")

        cfg = SettlementServiceConfig.from_yaml(path)

        assert cfg.settlement.sweep_interval_sec == 2.5
        assert cfg.settlement.refund_on_price_unavailable is True
        assert cfg.database.sqlite.path == str(tmp_path / "x.db")
        assert cfg.log_level == "DEBUG"

    def test_symbol_validation(self, tmp_path):
        path = write_yaml(
            tmp_path,
            "symbols:\n"
            "  - id: BTC\n"
            "    binance_symbol: btcusdt\n"
            "    min_amount: '100'\n"
            "    max_amount: '10'\n",
        )
        with pytest.raises(ValueError, match="max_amount"):
            SettlementServiceConfig.from_yaml(path)

    def test_binance_symbol_is_normalized(self, tmp_path):
        path = write_yaml(tmp_path, "symbols:\n  - id: BTC\n    binance_symbol: btcusdt\n")
        cfg = SettlementServiceConfig.from_yaml(path)
        assert cfg.symbols[0].binance_symbol == "BTCUSDT"
        assert cfg.symbols[0].payout_rate == Decimal("80")

    def test_duplicate_symbol_ids_rejected(self, tmp_path):
        path = write_yaml(
            tmp_path,
            "symbols:\n  - {id: BTC, binance_symbol: BTCUSDT}\n  - {id: BTC, binance_symbol: BTCBUSD}\n",
        )
        with pytest.raises(ValueError):
            SettlementServiceConfig.from_yaml(path)

    def test_invalid_environment_rejected(self, tmp_path):
        path = write_yaml(tmp_path, "environment: STAGING\n")
        with pytest.raises(ValueError):
            SettlementServiceConfig.from_yaml(path)

    def test_load_config_honours_env_path(self, tmp_path, monkeypatch):
        path = write_yaml(tmp_path, "environment: REAL\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("BINSETTLE_CONFIG", str(path))
        assert load_config().environment == "REAL"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            SettlementServiceConfig.from_yaml(tmp_path / "nope.yaml")
