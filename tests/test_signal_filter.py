#!/usr/bin/env python3
"""Dedup ledger + staleness filter behavior."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from signal_filter import DedupLedger, FilterDecision, SignalFilter
from signal_models import Direction, Signal

NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


def _signal(signal_id: str, age_sec: float = 5.0, source: str = "foreground", updated_age=None) -> Signal:
    return Signal(
        id=signal_id,
        instrument="EURUSD",
        direction=Direction.BUY,
        issued_at=NOW - timedelta(seconds=age_sec),
        last_updated_at=None if updated_age is None else NOW - timedelta(seconds=updated_age),
        source_tag=source,
    )


def _filter(**kwargs) -> SignalFilter:
    return SignalFilter(clock=lambda: NOW, **kwargs)


def test_second_delivery_is_already_seen_regardless_of_source() -> None:
    flt = _filter()
    assert flt.evaluate(_signal("42", source="foreground")) is FilterDecision.ACCEPT
    assert flt.evaluate(_signal("42", source="push")) is FilterDecision.REJECT_ALREADY_SEEN
    assert flt.evaluate(_signal("42", source="background")) is FilterDecision.REJECT_ALREADY_SEEN


def test_staleness_boundary_is_inclusive_on_accept_side() -> None:
    flt = _filter(staleness_sec=30)
    assert flt.evaluate(_signal("a", age_sec=30.0)) is FilterDecision.ACCEPT
    assert flt.evaluate(_signal("b", age_sec=30.001)) is FilterDecision.REJECT_STALE


def test_latest_update_refreshes_age() -> None:
    flt = _filter(staleness_sec=30)
    assert flt.evaluate(_signal("c", age_sec=120, updated_age=3)) is FilterDecision.ACCEPT


def test_missing_timestamp_rejected() -> None:
    flt = _filter()
    sig = Signal(id="x", instrument="EURUSD", direction=Direction.SELL)
    assert flt.evaluate(sig) is FilterDecision.REJECT_INVALID_TIMESTAMP
    assert "x" not in flt.ledger


def test_rejections_do_not_touch_ledger() -> None:
    flt = _filter(staleness_sec=30)
    assert flt.evaluate(_signal("old", age_sec=90)) is FilterDecision.REJECT_STALE
    assert "old" not in flt.ledger
    # A fresh re-delivery with the same id is still eligible.
    assert flt.evaluate(_signal("old", age_sec=1)) is FilterDecision.ACCEPT


def test_ledger_trims_to_most_recent_when_capacity_exceeded() -> None:
    ledger = DedupLedger(capacity=10, retain=5)
    for i in range(10):
        ledger.add(str(i))
    assert len(ledger) == 10

    evicted = ledger.add("10")

    assert evicted == 6
    assert ledger.ids() == ["6", "7", "8", "9", "10"]
    assert "0" not in ledger
    assert "10" in ledger


def test_ledger_add_is_idempotent() -> None:
    ledger = DedupLedger(capacity=3, retain=2)
    ledger.add("a")
    ledger.add("a")
    assert len(ledger) == 1


def test_filter_from_config() -> None:
    from dispatch_config import FilterConfig

    flt = SignalFilter.from_config(FilterConfig(staleness_sec=10, ledger_capacity=4, ledger_retain=2), clock=lambda: NOW)
    assert flt.staleness_sec == 10
    assert flt.ledger.capacity == 4
    assert flt.evaluate(_signal("z", age_sec=11)) is FilterDecision.REJECT_STALE
