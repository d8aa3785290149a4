#!/usr/bin/env python3
"""Raw payload parsing into Signal values."""

from datetime import datetime, timezone
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from signal_models import (
    Direction,
    SignalParseError,
    parse_price,
    parse_signal,
    parse_timestamp,
)


def test_parse_signal_from_signals_api_payload() -> None:
    payload = {
        "id": "42",
        "asset": "EURUSD",
        "action": "buy",
        "price": "1.08500",
        "tp": "1.09000",
        "sl": "1.08000",
        "time": "2026-10-18 09:30:00",
        "latestupdate": "2026-10-18T09:30:05Z",
    }

    sig = parse_signal(payload, "foreground")

    assert sig.id == "42"
    assert sig.instrument == "EURUSD"
    assert sig.direction is Direction.BUY
    assert sig.entry_price == pytest.approx(1.085)
    assert sig.take_profit == pytest.approx(1.09)
    assert sig.stop_loss == pytest.approx(1.08)
    assert sig.issued_at == datetime(2026, 10, 18, 9, 30, 0, tzinfo=timezone.utc)
    assert sig.reference_time == datetime(2026, 10, 18, 9, 30, 5, tzinfo=timezone.utc)
    assert sig.source_tag == "foreground"


def test_numeric_id_is_kept_as_string() -> None:
    sig = parse_signal({"id": 42, "asset": "GBPUSD", "action": "SELL", "time": "1760779800"}, "push")
    assert sig.id == "42"
    assert sig.direction is Direction.SELL


def test_direction_aliases() -> None:
    assert parse_signal({"id": "1", "asset": "X", "action": "long"}, "t").direction is Direction.BUY
    assert parse_signal({"id": "2", "asset": "X", "side": "Short"}, "t").direction is Direction.SELL


def test_unset_prices_become_none() -> None:
    sig = parse_signal({"id": "7", "asset": "XAUUSD", "action": "BUY", "tp": "", "sl": "n/a"}, "t")
    assert sig.take_profit is None
    assert sig.stop_loss is None
    assert parse_price("nan") is None
    assert parse_price(0) == 0.0


def test_unparseable_timestamps_are_kept_as_none() -> None:
    sig = parse_signal({"id": "9", "asset": "EURUSD", "action": "BUY", "time": "yesterday"}, "t")
    assert sig.issued_at is None
    assert sig.reference_time is None


def test_epoch_milliseconds_and_seconds_agree() -> None:
    assert parse_timestamp(1760779800) == parse_timestamp("1760779800000")


def test_naive_iso_is_treated_as_utc() -> None:
    ts = parse_timestamp("2026-10-18T12:00:00")
    assert ts is not None and ts.tzinfo is not None
    assert ts.utcoffset().total_seconds() == 0


def test_missing_fields_raise() -> None:
    with pytest.raises(SignalParseError):
        parse_signal({"asset": "EURUSD", "action": "BUY"}, "t")
    with pytest.raises(SignalParseError):
        parse_signal({"id": "1", "action": "BUY"}, "t")
    with pytest.raises(SignalParseError):
        parse_signal({"id": "1", "asset": "EURUSD", "action": "HOLD"}, "t")
