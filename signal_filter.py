#!/usr/bin/env python3
"""
Dedup & staleness filter.

Every raw delivery from every source passes through ``SignalFilter.evaluate``
exactly once. The ledger is keyed by signal id only, so copies of the same
signal arriving from different adapters converge to a single acceptance.
"""

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime, timezone
from enum import Enum
import threading
from typing import Callable, Optional

from logging_utils import get_logger
from signal_models import Signal


DEFAULT_STALENESS_SEC = 30.0
DEFAULT_LEDGER_CAPACITY = 1000
DEFAULT_LEDGER_RETAIN = 500


class FilterDecision(str, Enum):
    ACCEPT = "accept"
    REJECT_ALREADY_SEEN = "reject_already_seen"
    REJECT_STALE = "reject_stale"
    REJECT_INVALID_TIMESTAMP = "reject_invalid_timestamp"

    @property
    def accepted(self) -> bool:
        return self is FilterDecision.ACCEPT


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DedupLedger:
    """Insertion-ordered bounded set of accepted signal ids.

    When the size exceeds ``capacity`` the oldest ids are evicted until only
    the most recent ``retain`` remain.
    """

    def __init__(self, capacity: int = DEFAULT_LEDGER_CAPACITY, retain: int = DEFAULT_LEDGER_RETAIN):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if retain < 1 or retain > capacity:
            raise ValueError("retain must be between 1 and capacity")
        self.capacity = int(capacity)
        self.retain = int(retain)
        self._ids: "OrderedDict[str, None]" = OrderedDict()

    def __contains__(self, signal_id: object) -> bool:
        return str(signal_id) in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, signal_id: str) -> int:
        """Insert an id; returns the number of ids evicted."""
        key = str(signal_id)
        if key in self._ids:
            return 0
        self._ids[key] = None
        if len(self._ids) <= self.capacity:
            return 0
        evicted = 0
        while len(self._ids) > self.retain:
            self._ids.popitem(last=False)
            evicted += 1
        return evicted

    def ids(self) -> list:
        return list(self._ids.keys())


class SignalFilter:
    """Exactly-once, age-bounded acceptance of signals."""

    def __init__(
        self,
        staleness_sec: float = DEFAULT_STALENESS_SEC,
        ledger: Optional[DedupLedger] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.staleness_sec = float(staleness_sec)
        self.ledger = ledger if ledger is not None else DedupLedger()
        self._clock = clock
        self._lock = threading.Lock()
        self.log = get_logger("dispatcher.filter")

    @classmethod
    def from_config(cls, cfg, clock: Callable[[], datetime] = utc_now) -> "SignalFilter":
        """Build from a ``dispatch_config.FilterConfig``."""
        return cls(
            staleness_sec=cfg.staleness_sec,
            ledger=DedupLedger(cfg.ledger_capacity, cfg.ledger_retain),
            clock=clock,
        )

    def age_seconds(self, signal: Signal) -> Optional[float]:
        ref = signal.reference_time
        if ref is None:
            return None
        return (self._clock() - ref).total_seconds()

    def evaluate(self, signal: Signal) -> FilterDecision:
        with self._lock:
            age = self.age_seconds(signal)
            if age is None:
                decision = FilterDecision.REJECT_INVALID_TIMESTAMP
            elif age > self.staleness_sec:
                decision = FilterDecision.REJECT_STALE
            elif signal.id in self.ledger:
                decision = FilterDecision.REJECT_ALREADY_SEEN
            else:
                evicted = self.ledger.add(signal.id)
                if evicted:
                    self.log.debug(f"Dedup ledger trimmed: evicted={evicted} size={len(self.ledger)}")
                decision = FilterDecision.ACCEPT

        if decision is FilterDecision.ACCEPT:
            self.log.info(
                f"Accepted signal {signal.id} {signal.instrument} {signal.direction.value} "
                f"from {signal.source_tag or '?'} (age={age:.1f}s)"
            )
        elif decision is FilterDecision.REJECT_STALE:
            self.log.info(f"Rejected stale signal {signal.id} (age={age:.1f}s > {self.staleness_sec:.0f}s)")
        elif decision is FilterDecision.REJECT_INVALID_TIMESTAMP:
            self.log.info(f"Rejected signal {signal.id}: no parseable timestamp")
        else:
            self.log.debug(f"Signal {signal.id} already processed ({signal.source_tag or '?'})")
        return decision
