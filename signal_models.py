#!/usr/bin/env python3
"""
Signal model and raw payload parsing.

Source payloads arrive as loosely typed JSON (every field a string in the
signals API). This module normalizes them into an immutable ``Signal``.
Timestamps that cannot be parsed are kept as ``None`` so the staleness
filter can reject them with a precise reason instead of failing here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import math
from typing import Any, Dict, Mapping, Optional


class Direction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


# Alias spellings seen from different producers.
DIRECTION_MAP = {
    "BUY": Direction.BUY,
    "LONG": Direction.BUY,
    "BULLISH": Direction.BUY,
    "SELL": Direction.SELL,
    "SHORT": Direction.SELL,
    "BEARISH": Direction.SELL,
}

# Epoch values above this are treated as milliseconds.
_EPOCH_MS_THRESHOLD = 1e11

_DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y/%m/%d %H:%M:%S",
)


class SignalParseError(ValueError):
    """Raised when a raw payload cannot be turned into a Signal."""


@dataclass(frozen=True)
class Signal:
    """
    One externally sourced trade instruction.

    Attributes:
        id: Source-assigned identifier (not unique across sources)
        instrument: Instrument name as the source spells it (e.g. 'EURUSD')
        direction: BUY or SELL
        entry_price: Reference entry price (may be unset)
        take_profit: Take-profit price (may be unset)
        stop_loss: Stop-loss price (may be unset)
        issued_at: When the source issued the signal (UTC, may be unparseable)
        last_updated_at: Last source-side update (UTC, may be absent)
        source_tag: Adapter that delivered this copy
        raw: Original payload, for logging only
    """
    id: str
    instrument: str
    direction: Direction
    entry_price: Optional[float] = None
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    issued_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None
    source_tag: str = ""
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def reference_time(self) -> Optional[datetime]:
        """Most recent of issued_at / last_updated_at, or None if neither parsed."""
        stamps = [ts for ts in (self.issued_at, self.last_updated_at) if ts is not None]
        return max(stamps) if stamps else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "instrument": self.instrument,
            "direction": self.direction.value,
            "entry_price": self.entry_price,
            "take_profit": self.take_profit,
            "stop_loss": self.stop_loss,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "last_updated_at": self.last_updated_at.isoformat() if self.last_updated_at else None,
            "source_tag": self.source_tag,
        }


def normalize_direction(raw: Any) -> Direction:
    if isinstance(raw, Direction):
        return raw
    key = str(raw or "").strip().upper()
    try:
        return DIRECTION_MAP[key]
    except KeyError:
        raise SignalParseError(f"unknown direction {raw!r}") from None


def parse_price(value: Any) -> Optional[float]:
    """Parse a price field; empty, zero-length or non-numeric values are unset."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        num = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            num = float(text)
        except ValueError:
            return None
    if math.isnan(num) or math.isinf(num):
        return None
    return num


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601, 'YYYY-MM-DD HH:MM:SS' or epoch (s/ms) into aware UTC.

    Naive datetimes are treated as UTC.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = _from_epoch(float(value))
    else:
        text = str(value).strip()
        if not text:
            return None
        dt = None
        try:
            dt = _from_epoch(float(text))
        except ValueError:
            pass
        if dt is None:
            iso = text[:-1] + "+00:00" if text.endswith("Z") else text
            try:
                dt = datetime.fromisoformat(iso)
            except ValueError:
                for fmt in _DATETIME_FORMATS:
                    try:
                        dt = datetime.strptime(text, fmt)
                        break
                    except ValueError:
                        continue
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _from_epoch(value: float) -> Optional[datetime]:
    if math.isnan(value) or math.isinf(value) or value <= 0:
        return None
    if value > _EPOCH_MS_THRESHOLD:
        value = value / 1000.0
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _first(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def parse_signal(payload: Mapping[str, Any], source_tag: str) -> Signal:
    """Build a Signal from a signals-API style payload.

    Raises:
        SignalParseError: when id, instrument or direction is missing/invalid
    """
    if not isinstance(payload, Mapping):
        raise SignalParseError(f"payload must be a mapping, got {type(payload).__name__}")

    raw_id = _first(payload, "id", "signal_id")
    signal_id = str(raw_id).strip() if raw_id is not None else ""
    if not signal_id:
        raise SignalParseError("signal id missing")

    instrument = str(_first(payload, "asset", "instrument", "symbol") or "").strip()
    if not instrument:
        raise SignalParseError(f"signal {signal_id}: instrument missing")

    direction = normalize_direction(_first(payload, "action", "direction", "side"))

    return Signal(
        id=signal_id,
        instrument=instrument,
        direction=direction,
        entry_price=parse_price(_first(payload, "price", "entry_price")),
        take_profit=parse_price(_first(payload, "tp", "take_profit")),
        stop_loss=parse_price(_first(payload, "sl", "stop_loss")),
        issued_at=parse_timestamp(_first(payload, "time", "issued_at")),
        last_updated_at=parse_timestamp(_first(payload, "latestupdate", "last_updated_at")),
        source_tag=source_tag,
        raw=dict(payload),
    )
