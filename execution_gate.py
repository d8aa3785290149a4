#!/usr/bin/env python3
"""
Execution gate: process-wide pause switch, active-session flag and
per-instrument cooldown.

All cooldown state is owned here and only mutated through ``try_admit``,
``release``, ``resume_after``, ``resume`` and ``mark_executed``.

Admission flips ``paused`` and ``active`` synchronously, before the caller
gets a chance to await anything, so two racing admissions can never both
succeed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import threading
import time
from typing import Callable, Dict, Optional

from logging_utils import get_logger
from session_status import MUTATING_OUTCOMES, Outcome
from signal_models import Signal


DEFAULT_RESUME_DELAY_SEC = 35.0
DEFAULT_INSTRUMENT_COOLDOWN_SEC = 45.0
DEFAULT_INSTRUMENT_COOLDOWN_MAX_ENTRIES = 100


class GateDecision(str, Enum):
    ADMITTED = "admitted"
    SUPPRESSED = "suppressed"


@dataclass(frozen=True)
class CooldownState:
    """Snapshot of the gate.

    paused_until is a monotonic clock reading (``None`` while paused
    indefinitely, i.e. during an active session, or when not paused).
    """
    paused: bool
    paused_until: Optional[float]
    active: bool = False


class ExecutionGate:
    """Mutual exclusion and quiet period for execution sessions."""

    def __init__(
        self,
        resume_delay_sec: float = DEFAULT_RESUME_DELAY_SEC,
        resume_immediately_on_clean_failure: bool = True,
        instrument_cooldown_sec: float = DEFAULT_INSTRUMENT_COOLDOWN_SEC,
        instrument_cooldown_max_entries: int = DEFAULT_INSTRUMENT_COOLDOWN_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.resume_delay_sec = float(resume_delay_sec)
        self.resume_immediately_on_clean_failure = bool(resume_immediately_on_clean_failure)
        self.instrument_cooldown_sec = float(instrument_cooldown_sec)
        self.instrument_cooldown_max_entries = max(2, int(instrument_cooldown_max_entries))
        self._clock = clock
        self._lock = threading.RLock()

        self._paused = False
        self._paused_until: Optional[float] = None
        self._active = False
        self._active_signal_id: Optional[str] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._generation = 0
        self._instrument_until: Dict[str, float] = {}

        self.log = get_logger("dispatcher.gate")

    @classmethod
    def from_config(cls, cfg, clock: Callable[[], float] = time.monotonic) -> "ExecutionGate":
        """Build from a ``dispatch_config.GateConfig``."""
        return cls(
            resume_delay_sec=cfg.resume_delay_sec,
            resume_immediately_on_clean_failure=cfg.resume_immediately_on_clean_failure,
            instrument_cooldown_sec=cfg.instrument_cooldown_sec,
            instrument_cooldown_max_entries=cfg.instrument_cooldown_max_entries,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # State reads
    # ------------------------------------------------------------------

    def _lapse_if_due(self) -> None:
        """Resume lazily when a scheduled deadline passed without a timer."""
        if (
            self._paused
            and not self._active
            and self._paused_until is not None
            and self._clock() >= self._paused_until
        ):
            self._clear_pause("deadline lapsed")

    @property
    def state(self) -> CooldownState:
        with self._lock:
            self._lapse_if_due()
            return CooldownState(
                paused=self._paused,
                paused_until=self._paused_until,
                active=self._active,
            )

    @property
    def paused(self) -> bool:
        return self.state.paused

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active

    def resume_in(self) -> Optional[float]:
        """Seconds until a scheduled resume, or None when none is scheduled."""
        with self._lock:
            self._lapse_if_due()
            if self._paused_until is None:
                return None
            return max(0.0, self._paused_until - self._clock())

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def try_admit(self, signal: Signal) -> GateDecision:
        with self._lock:
            self._lapse_if_due()
            if self._active:
                self.log.info(f"Suppressed {signal.id}: session {self._active_signal_id} in progress")
                return GateDecision.SUPPRESSED
            if self._paused:
                remaining = self._remaining()
                hint = f" ({remaining:.0f}s left)" if remaining is not None else ""
                self.log.info(f"Suppressed {signal.id}: gate paused{hint}")
                return GateDecision.SUPPRESSED
            if self._instrument_cooling(signal.instrument):
                self.log.info(f"Suppressed {signal.id}: {signal.instrument} in post-trade cooldown")
                return GateDecision.SUPPRESSED

            self._cancel_timer()
            self._paused = True
            self._paused_until = None
            self._active = True
            self._active_signal_id = signal.id
            self.log.info(f"Admitted {signal.id} {signal.instrument} {signal.direction.value}; gate paused")
            return GateDecision.ADMITTED

    def release(self, outcome: Outcome, remote_mutated: bool = False) -> None:
        """Return the gate after a terminal session outcome.

        Never raises. A release without an active session is logged and
        ignored.
        """
        with self._lock:
            if not self._active:
                self.log.warning(f"Ignoring gate release ({outcome.value}): no active session")
                return
            signal_id = self._active_signal_id
            self._active = False
            self._active_signal_id = None

            if outcome in MUTATING_OUTCOMES or remote_mutated:
                self.log.info(
                    f"Released after {signal_id} ({outcome.value}); "
                    f"resuming in {self.resume_delay_sec:.0f}s"
                )
                self.resume_after(self.resume_delay_sec)
            elif self.resume_immediately_on_clean_failure:
                self.log.info(f"Released after {signal_id} ({outcome.value}); resuming now")
                self._clear_pause("clean failure")
            else:
                self.log.info(
                    f"Released after {signal_id} ({outcome.value}); "
                    f"resuming in {self.resume_delay_sec:.0f}s"
                )
                self.resume_after(self.resume_delay_sec)

    def resume_after(self, delay_sec: float) -> None:
        with self._lock:
            self._schedule_resume(delay_sec)

    def resume(self) -> bool:
        """Clear the pause now. Refused while a session is active."""
        with self._lock:
            if self._active:
                self.log.warning("Refusing to resume: session still active")
                return False
            self._clear_pause("manual resume")
            return True

    # ------------------------------------------------------------------
    # Per-instrument cooldown
    # ------------------------------------------------------------------

    def mark_executed(self, instrument: str) -> None:
        key = str(instrument or "").strip().upper()
        if not key:
            return
        with self._lock:
            self._instrument_until.pop(key, None)
            self._instrument_until[key] = self._clock() + self.instrument_cooldown_sec
            if len(self._instrument_until) > self.instrument_cooldown_max_entries:
                keep = self.instrument_cooldown_max_entries // 2
                for stale in list(self._instrument_until.keys())[:-keep]:
                    del self._instrument_until[stale]
        self.log.debug(f"Cooldown {key} for {self.instrument_cooldown_sec:.0f}s")

    def is_instrument_cooling(self, instrument: str) -> bool:
        with self._lock:
            return self._instrument_cooling(instrument)

    def _instrument_cooling(self, instrument: str) -> bool:
        key = str(instrument or "").strip().upper()
        until = self._instrument_until.get(key)
        if until is None:
            return False
        if self._clock() >= until:
            del self._instrument_until[key]
            return False
        return True

    # ------------------------------------------------------------------
    # Internals (lock held by caller)
    # ------------------------------------------------------------------

    def _remaining(self) -> Optional[float]:
        if self._paused_until is None:
            return None
        return max(0.0, self._paused_until - self._clock())

    def _schedule_resume(self, delay_sec: float) -> None:
        delay = max(0.0, float(delay_sec))
        self._cancel_timer()
        self._paused = True
        self._paused_until = self._clock() + delay
        self._generation += 1
        generation = self._generation
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.log.debug("No running loop; pause will lapse on next state read")
            return
        self._timer = loop.call_later(delay, self._on_timer, generation)

    def _on_timer(self, generation: int) -> None:
        with self._lock:
            self._timer = None
            if generation != self._generation or self._active:
                return
            self._clear_pause("resume timer")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _clear_pause(self, why: str) -> None:
        self._cancel_timer()
        self._generation += 1
        was_paused = self._paused
        self._paused = False
        self._paused_until = None
        if was_paused:
            self.log.info(f"Gate resumed ({why})")
