#!/usr/bin/env python3
"""
Status reporter: executor progress → observable status stream.

Each session produces an ordered stream of step events
``{step, message, timestamp}`` terminated by exactly one of:

    {"type": "success"}
    {"type": "partial", "succeeded": int, "total": int}
    {"type": "failed", "reason": str}

Events go to subscribed listeners (sync or async), an in-memory history and
an optional JSONL journal. Listener and journal failures are logged and
never reach the executor.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
import inspect
import itertools
import time
from typing import Any, Callable, Deque, Dict, List, Optional

from jsonl_io import append_jsonl
from logging_utils import get_logger


EVENT_STEP = "step"
EVENT_SUCCESS = "success"
EVENT_PARTIAL = "partial"
EVENT_FAILED = "failed"
TERMINAL_EVENTS = {EVENT_SUCCESS, EVENT_PARTIAL, EVENT_FAILED}

HEARTBEAT_STEP = "heartbeat"
HEARTBEAT_PHASES = (
    "Preparing session...",
    "Injecting strategy...",
    "Connecting to broker...",
    "Verifying interface...",
    "Initializing execution...",
)

HISTORY_SIZE = 500


@dataclass
class StatusEvent:
    type: str
    step: str = ""
    message: str = ""
    timestamp: float = field(default_factory=time.time)
    session_id: Optional[str] = None
    succeeded: Optional[int] = None
    total: Optional[int] = None
    reason: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "timestamp": self.timestamp}
        if self.session_id is not None:
            data["session_id"] = self.session_id
        if self.type == EVENT_STEP:
            data["step"] = self.step
            data["message"] = self.message
        elif self.type == EVENT_PARTIAL:
            data["succeeded"] = self.succeeded
            data["total"] = self.total
        elif self.type == EVENT_FAILED:
            data["reason"] = self.reason
            if self.message:
                data["message"] = self.message
        return data


StatusListener = Callable[[StatusEvent], Any]


class StatusReporter:
    """Fan-out of status events for the active session."""

    def __init__(
        self,
        journal_path: Optional[str] = None,
        heartbeat_enabled: bool = False,
        heartbeat_interval_sec: float = 2.0,
    ):
        self.journal_path = journal_path or None
        self.heartbeat_enabled = bool(heartbeat_enabled)
        self.heartbeat_interval_sec = float(heartbeat_interval_sec)
        self.history: Deque[StatusEvent] = deque(maxlen=HISTORY_SIZE)
        self._listeners: List[StatusListener] = []
        self._session_id: Optional[str] = None
        self._terminal_sent = False
        self._last_step_at = 0.0
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._pending: set = set()
        self.log = get_logger("dispatcher.status")

    @classmethod
    def from_config(cls, cfg) -> "StatusReporter":
        """Build from a ``dispatch_config.ReporterConfig``."""
        return cls(
            journal_path=cfg.journal_path,
            heartbeat_enabled=cfg.heartbeat_enabled,
            heartbeat_interval_sec=cfg.heartbeat_interval_sec,
        )

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def terminal_sent(self) -> bool:
        return self._terminal_sent

    def events_for(self, session_id: str) -> List[StatusEvent]:
        return [ev for ev in self.history if ev.session_id == session_id]

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def begin(self, session_id: str) -> None:
        self._stop_heartbeat()
        self._session_id = session_id
        self._terminal_sent = False
        self._last_step_at = time.monotonic()
        if self.heartbeat_enabled:
            try:
                self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat_loop())
            except RuntimeError:
                self._heartbeat_task = None

    def step(self, step: str, message: str) -> None:
        if self._terminal_sent:
            self.log.debug(f"Dropping step after terminal event: {step} {message}")
            return
        self._last_step_at = time.monotonic()
        self._publish(StatusEvent(type=EVENT_STEP, step=str(step), message=message, session_id=self._session_id))

    def success(self) -> bool:
        return self._terminal(StatusEvent(type=EVENT_SUCCESS, session_id=self._session_id))

    def partial(self, succeeded: int, total: int) -> bool:
        return self._terminal(
            StatusEvent(type=EVENT_PARTIAL, succeeded=int(succeeded), total=int(total), session_id=self._session_id)
        )

    def failed(self, reason: str, message: str = "") -> bool:
        return self._terminal(
            StatusEvent(type=EVENT_FAILED, reason=str(reason), message=message, session_id=self._session_id)
        )

    def _terminal(self, event: StatusEvent) -> bool:
        if self._terminal_sent:
            self.log.warning(f"Duplicate terminal event ignored: {event.type} (session {self._session_id})")
            return False
        self._terminal_sent = True
        self._stop_heartbeat()
        self._publish(event)
        return True

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _publish(self, event: StatusEvent) -> None:
        self.history.append(event)
        if event.type == EVENT_STEP:
            self.log.info(f"[{event.step}] {event.message}")
        else:
            self.log.info(f"Session {event.session_id} finished: {event.to_dict()}")
        if self.journal_path:
            append_jsonl(self.journal_path, event.to_dict())
        for listener in list(self._listeners):
            self._invoke_listener(listener, event)

    def _invoke_listener(self, listener: StatusListener, event: StatusEvent) -> None:
        try:
            result = listener(event)
        except Exception as exc:
            self.log.error(f"Status listener error: {exc}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(self._await_listener(result))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _await_listener(self, result) -> None:
        try:
            await result
        except Exception as exc:
            self.log.error(f"Status listener error: {exc}")

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def _heartbeat_loop(self) -> None:
        phases = itertools.cycle(HEARTBEAT_PHASES)
        while not self._terminal_sent:
            await asyncio.sleep(self.heartbeat_interval_sec)
            if self._terminal_sent:
                break
            if time.monotonic() - self._last_step_at >= self.heartbeat_interval_sec:
                self._publish(
                    StatusEvent(
                        type=EVENT_STEP,
                        step=HEARTBEAT_STEP,
                        message=next(phases),
                        session_id=self._session_id,
                    )
                )

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
