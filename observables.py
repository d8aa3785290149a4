#!/usr/bin/env python3
"""
Fire-and-poll verification helpers.

Execution hosts never return values from instructions; the only way to
learn whether something happened is to ask (send a probe) and watch the
inbound observations. ``await_observable`` is the single polling primitive
every executor step uses.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from hosts.base import (
    EVENT_AUTHENTICATION_FAILED,
    EVENT_CLOSED,
    EVENT_ERROR,
    EVENT_OBSERVATION,
    EVENT_READY,
    EVENT_STEP,
    EVENT_TRADE_REJECTED,
    HostEvent,
)
from logging_utils import get_logger


MaybeAwaitable = Union[Any, Awaitable[Any]]


class ObservationAborted(Exception):
    """Raised when a wait is cut short by the abort check."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


async def _resolve(value: MaybeAwaitable) -> Any:
    if asyncio.iscoroutine(value) or isinstance(value, asyncio.Future):
        return await value
    return value


async def await_observable(
    predicate: Callable[[], MaybeAwaitable],
    timeout: float,
    interval: float,
    *,
    poll: Optional[Callable[[], MaybeAwaitable]] = None,
    abort: Optional[Callable[[], Optional[str]]] = None,
) -> bool:
    """Wait until ``predicate()`` is truthy.

    ``poll`` runs before every sleep (typically sends a probe); ``abort``
    returning a non-empty string raises ObservationAborted. Returns False
    when ``timeout`` elapses.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(0.0, float(timeout))
    interval = max(0.0, float(interval))
    while True:
        if await _resolve(predicate()):
            return True
        if abort is not None:
            reason = abort()
            if reason:
                raise ObservationAborted(reason)
        remaining = deadline - loop.time()
        if remaining <= 0:
            return False
        if poll is not None:
            await _resolve(poll())
        await asyncio.sleep(min(interval, remaining))


class ObservationBoard:
    """Latest inbound state reported by one execution host."""

    def __init__(self, handle_id: Optional[int] = None):
        self.handle_id = handle_id
        self.ready = False
        self.closed = False
        self.authentication_failed: Optional[str] = None
        self.trade_rejections = 0
        self.last_message = ""
        self._observations: Dict[str, Any] = {}
        self.log = get_logger("dispatcher.host_events")

    def handle(self, event: HostEvent) -> None:
        etype = event.type
        if etype == EVENT_OBSERVATION and event.probe:
            self._observations[str(event.probe)] = event.value
        elif etype == EVENT_READY:
            self.ready = True
        elif etype == EVENT_AUTHENTICATION_FAILED:
            self.authentication_failed = event.message or "authentication failed"
            self.log.info(f"[host {self.handle_id}] authentication failed: {self.authentication_failed}")
        elif etype == EVENT_TRADE_REJECTED:
            self.trade_rejections += 1
            self.log.info(f"[host {self.handle_id}] trade rejected: {event.message}")
        elif etype == EVENT_CLOSED:
            self.closed = True
            self.log.debug(f"[host {self.handle_id}] closed: {event.message}")
        elif etype == EVENT_STEP:
            self.last_message = event.message
            self.log.debug(f"[host {self.handle_id}] {event.message}")
        elif etype == EVENT_ERROR:
            self.log.debug(f"[host {self.handle_id}] error: {event.message}")
        else:
            self.log.debug(f"[host {self.handle_id}] unhandled event {etype!r}")

    def observed(self, probe: str) -> bool:
        return bool(self._observations.get(probe))

    def forget(self, probe: str) -> None:
        self._observations.pop(probe, None)

    def reset_ready(self) -> None:
        self.ready = False

    def reset_authentication(self) -> None:
        self.authentication_failed = None
