#!/usr/bin/env python3
"""dispatch.yaml loaders and trade-config / credential lookups."""

from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from dispatch_config import (
    DirectionPolicy,
    ExecutorConfig,
    FilterConfig,
    GateConfig,
    Platform,
    ReporterConfig,
    StaticCredentialsLookup,
    YamlTradeConfigLookup,
    load_dispatch_config,
)
from signal_models import Direction


def test_repo_dispatch_yaml_loads() -> None:
    cfg = load_dispatch_config(str(Path(__file__).resolve().parents[1] / "dispatch.yaml"), refresh=True)
    gate = GateConfig.load(cfg)
    flt = FilterConfig.load(cfg)
    executor = ExecutorConfig.load(cfg)

    assert gate.resume_delay_sec == 35
    assert flt.staleness_sec == 30
    assert executor.policy("authenticating").timeout_sec >= executor.policy("locating_instrument").timeout_sec
    assert YamlTradeConfigLookup.load(cfg).resolve("eurusd") is not None


def test_missing_sections_use_defaults() -> None:
    cfg = {"config": {}}
    assert FilterConfig.load(cfg) == FilterConfig()
    assert GateConfig.load(cfg) == GateConfig()
    executor = ExecutorConfig.load(cfg)
    assert executor.session_timeout_sec == 240
    assert executor.policy("order_surface").attempts == 6


def test_invalid_values_fall_back() -> None:
    cfg = {
        "config": {
            "filter": {"staleness_sec": "soon", "ledger_capacity": 10, "ledger_retain": 50},
            "gate": {"resume_delay_sec": -5, "resume_immediately_on_clean_failure": "no"},
            "executor": {"steps": {"initializing": {"attempts": 0, "timeout_sec": 12}}},
        }
    }
    flt = FilterConfig.load(cfg)
    assert flt.staleness_sec == 30
    assert flt.ledger_retain == 10
    gate = GateConfig.load(cfg)
    assert gate.resume_delay_sec == 35
    assert gate.resume_immediately_on_clean_failure is False
    init = ExecutorConfig.load(cfg).policy("initializing")
    assert init.attempts == 2
    assert init.timeout_sec == 12


def test_reporter_journal_defaults_under_runtime_dir() -> None:
    rc = ReporterConfig.load({"config": {}})
    assert rc.journal_path.endswith("status_events.jsonl")


def test_trade_config_lookup_normalizes_and_validates() -> None:
    lookup = YamlTradeConfigLookup(
        {
            "EURUSD": {"lot_size": "0.02", "order_count": 3, "direction": "buy", "platform": "mt4"},
            "XAUUSD": {"lotSize": "0.10", "numberOfTrades": "2"},
            "BROKEN": {"platform": "ctrader"},
        }
    )
    eur = lookup.resolve(" eurusd ")
    assert eur.lot_size == "0.02"
    assert eur.order_count == 3
    assert eur.direction_policy is DirectionPolicy.BUY
    assert eur.platform is Platform.MT4
    xau = lookup.resolve("XAUUSD")
    assert (xau.lot_size, xau.order_count, xau.platform) == ("0.10", 2, Platform.MT5)
    assert lookup.resolve("BROKEN") is None
    assert lookup.resolve("GBPUSD") is None
    assert set(lookup.instruments()) == {"EURUSD", "XAUUSD"}


def test_direction_policy() -> None:
    assert DirectionPolicy.BOTH.allows(Direction.SELL)
    assert DirectionPolicy.BUY.allows(Direction.BUY)
    assert not DirectionPolicy.BUY.allows(Direction.SELL)


def test_credentials_lookup_requires_login_and_password() -> None:
    lookup = StaticCredentialsLookup(
        {
            "mt5": {"login": "5550001", "password": "pw", "server": "Deriv-Demo"},
            "mt4": {"login": "1001", "password": ""},
            "ctrader": {"login": "x", "password": "y"},
        }
    )
    creds = lookup.resolve(Platform.MT5)
    assert creds.login == "5550001"
    assert "pw" not in repr(creds)
    assert lookup.resolve(Platform.MT4) is None
