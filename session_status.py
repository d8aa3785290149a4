#!/usr/bin/env python3
"""Execution session outcome, step and failure-reason constants."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Set


class Outcome(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    PARTIALLY_SUCCEEDED = "partially_succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not Outcome.PENDING


# Outcomes that leave orders on the remote surface.
MUTATING_OUTCOMES: Set[Outcome] = {
    Outcome.SUCCEEDED,
    Outcome.PARTIALLY_SUCCEEDED,
}


class StepName(str, Enum):
    INITIALIZING = "initializing"
    AUTHENTICATING = "authenticating"
    LOCATING_INSTRUMENT = "locating_instrument"
    EXECUTING_TRADES = "executing_trades"
    REPORTING = "reporting"


class FailureReason(str, Enum):
    HOST_CREATION_FAILED = "HOST_CREATION_FAILED"
    HOST_LOAD_TIMEOUT = "HOST_LOAD_TIMEOUT"
    AUTH_VERIFICATION_TIMEOUT = "AUTH_VERIFICATION_TIMEOUT"
    INSTRUMENT_NOT_FOUND = "INSTRUMENT_NOT_FOUND"
    NO_TRADES_SUCCEEDED = "NO_TRADES_SUCCEEDED"
    CANCELLED = "CANCELLED"
    SESSION_TIMEOUT = "SESSION_TIMEOUT"
    MISSING_CREDENTIALS = "MISSING_CREDENTIALS"
    INVALID_TRADE_CONFIG = "INVALID_TRADE_CONFIG"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass
class TradeResult:
    """Result of one iteration of the trade loop."""
    index: int
    succeeded: bool
    submitted: bool = False
    error: Optional[str] = None
    discovery_method: Optional[str] = None
