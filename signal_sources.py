#!/usr/bin/env python3
"""
Signal source adapters.

Sources are independent producers: each one parses raw payloads into
``Signal`` values and pushes them to its registered callbacks. They know
nothing about each other, so duplicates and reordering across sources are
expected and resolved downstream by the dedup filter.

Polling endpoint (signals API):

    GET <base>/api/signals?phone_secret=<secret>
    → {"message": "accept", "data": {"id", "asset", "action", "price",
                                     "tp", "sl", "time", "latestupdate"}}

Any other ``message`` means "nothing new".
"""

from __future__ import annotations

import abc
import asyncio
from collections import deque
import inspect
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

import aiohttp

from logging_utils import get_logger
from signal_models import Signal, SignalParseError, parse_signal


SOURCE_FOREGROUND = "foreground"
SOURCE_BACKGROUND = "background"
SOURCE_PUSH = "push"

SIGNALS_ENDPOINT = "/api/signals"
RECENT_SIGNALS_MAX = 100

SignalCallback = Callable[[Signal], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[str], Union[None, Awaitable[None]]]


class SignalSource(abc.ABC):
    """Base class for signal source adapters."""

    def __init__(self, source_tag: str):
        self.source_tag = source_tag
        self._signal_callbacks: List[SignalCallback] = []
        self._error_callbacks: List[ErrorCallback] = []
        self.recent: Deque[Dict[str, Any]] = deque(maxlen=RECENT_SIGNALS_MAX)
        self.log = get_logger(f"dispatcher.source.{source_tag}")

    def on_signal(self, callback: SignalCallback) -> None:
        self._signal_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_callbacks.append(callback)

    @abc.abstractmethod
    async def start(self) -> None:
        """Begin producing signals (returns once the producer is running)."""
        raise NotImplementedError

    @abc.abstractmethod
    async def stop(self) -> None:
        raise NotImplementedError

    async def _invoke_callback(self, callback: Callable[..., Any], *args: Any, context: str) -> None:
        """Invoke callback supporting both sync and async handlers."""
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.log.error(f"{context}: {e}")

    async def _emit_payload(self, payload: Dict[str, Any]) -> Optional[Signal]:
        try:
            signal = parse_signal(payload, self.source_tag)
        except SignalParseError as exc:
            await self._emit_error(f"unparseable signal: {exc}")
            return None
        self.recent.append(signal.to_dict())
        for callback in list(self._signal_callbacks):
            await self._invoke_callback(callback, signal, context=f"on_signal callback error ({self.source_tag})")
        return signal

    async def _emit_error(self, reason: str) -> None:
        self.log.warning(reason)
        for callback in list(self._error_callbacks):
            await self._invoke_callback(callback, reason, context=f"on_error callback error ({self.source_tag})")


class PollingSignalSource(SignalSource):
    """Polls the signals API on a fixed interval."""

    def __init__(
        self,
        base_url: str,
        phone_secret: str,
        interval_sec: float,
        source_tag: str = SOURCE_FOREGROUND,
        request_timeout_sec: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        super().__init__(source_tag)
        self.base_url = base_url.rstrip("/")
        self.phone_secret = phone_secret
        self.interval_sec = float(interval_sec)
        self.request_timeout_sec = float(request_timeout_sec)
        self._session = session
        self._owns_session = session is None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.polls = 0

    @property
    def url(self) -> str:
        return f"{self.base_url}{SIGNALS_ENDPOINT}"

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout_sec)
            self._session = aiohttp.ClientSession(timeout=timeout)
        self.log.info(f"Polling {self.url} every {self.interval_sec:.0f}s ({self.source_tag})")
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _poll_loop(self) -> None:
        while self._running:
            await self.poll_once()
            await asyncio.sleep(self.interval_sec)

    async def poll_once(self) -> Optional[Signal]:
        """One GET against the signals API; errors go to on_error."""
        self.polls += 1
        try:
            payload = await self._fetch()
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            await self._emit_error(f"poll failed: {exc}")
            return None
        if not isinstance(payload, dict):
            await self._emit_error(f"unexpected response type {type(payload).__name__}")
            return None
        message = str(payload.get("message") or "").strip().lower()
        data = payload.get("data")
        if message != "accept" or not isinstance(data, dict):
            return None
        return await self._emit_payload(data)

    async def _fetch(self) -> Any:
        params = {"phone_secret": self.phone_secret}
        async with self._session.get(self.url, params=params) as resp:
            if resp.status != 200:
                text = await resp.text()
                raise aiohttp.ClientResponseError(
                    resp.request_info,
                    resp.history,
                    status=resp.status,
                    message=text[:200],
                )
            return await resp.json(content_type=None)
