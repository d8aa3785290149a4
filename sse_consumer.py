#!/usr/bin/env python3
"""
SSE push listener for trade signals.

Connects to the signals SSE stream and emits every ``signal`` event. Event
data is a single signal payload or a list of them, optionally wrapped in the
signals-API envelope and optionally compressed as ``GZIP:<base64>``.

Handles:
- GZIP decompression (base64 encoded)
- Reconnection with exponential backoff, resuming from ``Last-Event-ID``
- Read watchdog via the socket read timeout
"""

import asyncio
import base64
import binascii
import gzip
import json
import time
import zlib
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, List, Optional

import aiohttp

from signal_sources import SOURCE_PUSH, SignalSource

RECONNECT_MIN_DELAY = 2.0  # seconds
RECONNECT_MAX_DELAY = 30.0  # seconds
WATCHDOG_TIMEOUT = 60.0  # seconds without bytes before reconnecting

SIGNAL_EVENTS = ("signal", "message")


@dataclass
class SSEMessage:
    """One dispatched SSE event."""
    event_type: str
    data: str = ""
    event_id: Optional[str] = None
    received_at: float = field(default_factory=time.time)


class SSEDecoder:
    """Incremental ``text/event-stream`` decoder.

    ``feed`` accepts arbitrary byte chunks and returns the events completed
    by them; partial lines and events are buffered across calls.
    """

    def __init__(self) -> None:
        self._buffer = b""
        self._event: Optional[str] = None
        self._data: List[str] = []
        self._id: Optional[str] = None

    def feed(self, chunk: bytes) -> List[SSEMessage]:
        self._buffer += chunk
        messages: List[SSEMessage] = []
        while b"\n" in self._buffer:
            raw, self._buffer = self._buffer.split(b"\n", 1)
            message = self._line(raw.decode("utf-8").rstrip("\r"))
            if message is not None:
                messages.append(message)
        return messages

    def _line(self, line: str) -> Optional[SSEMessage]:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value.strip()
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            self._id = value.strip() or None
        return None

    def _dispatch(self) -> Optional[SSEMessage]:
        if not self._data:
            self._event = None
            return None
        message = SSEMessage(
            event_type=self._event or "message",
            data="\n".join(self._data),
            event_id=self._id,
        )
        self._event = None
        self._data = []
        return message


def decode_signal_payloads(data: str) -> List[Any]:
    """Unpack an SSE data field into raw signal payloads.

    Raises ValueError when the field is not valid (GZIP) JSON. A non-accept
    envelope decodes to an empty list.
    """
    text = data.strip()
    if text.startswith("GZIP:"):
        try:
            text = gzip.decompress(base64.b64decode(text[5:])).decode("utf-8")
        except (binascii.Error, OSError, EOFError, zlib.error) as exc:
            raise ValueError(f"GZIP decode failed: {exc}") from exc
    decoded = json.loads(text)

    # Signals API envelope: {"message": "accept", "data": {...}}
    if isinstance(decoded, dict) and "message" in decoded and "data" in decoded:
        if str(decoded.get("message") or "").strip().lower() != "accept":
            return []
        decoded = decoded["data"]

    if decoded is None:
        return []
    return decoded if isinstance(decoded, list) else [decoded]


class SignalSSEClient(SignalSource):
    """
    Push listener for the signals SSE stream.

    Usage:
        client = SignalSSEClient(url="https://signals.example/sse", phone_secret="...")
        client.on_signal(dispatcher.ingest)
        await client.start()
    """

    def __init__(self, url: str, phone_secret: str = "", source_tag: str = SOURCE_PUSH):
        super().__init__(source_tag)
        self.base_url = url
        self.phone_secret = phone_secret
        self.last_event_id: Optional[str] = None
        self.last_activity = 0.0
        self._connected = False
        self._task: Optional[asyncio.Task] = None
        self._response: Optional[aiohttp.ClientResponse] = None
        self._delay = RECONNECT_MIN_DELAY

    @property
    def url(self) -> str:
        if not self.phone_secret:
            return self.base_url
        sep = "&" if "?" in self.base_url else "?"
        return f"{self.base_url}{sep}phone_secret={self.phone_secret}"

    @property
    def connected(self) -> bool:
        return self._connected

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._connected = False
        if self._response is not None:
            self._response.close()
            self._response = None
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self.log.info("Disconnected from SSE server")

    def _next_delay(self) -> float:
        delay = self._delay
        self._delay = min(self._delay * 2, RECONNECT_MAX_DELAY)
        return delay

    async def _run(self) -> None:
        while True:
            try:
                await self._connect_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                await self._emit_error(f"SSE connection error: {exc}")
            finally:
                self._connected = False
                self._response = None
            delay = self._next_delay()
            self.log.info(f"Reconnecting in {delay:.1f}s...")
            await asyncio.sleep(delay)

    async def _connect_once(self) -> None:
        timeout = aiohttp.ClientTimeout(total=None, sock_read=WATCHDOG_TIMEOUT)
        headers = {"Accept": "text/event-stream"}
        if self.last_event_id:
            headers["Last-Event-ID"] = self.last_event_id
        async with aiohttp.ClientSession(timeout=timeout) as session:
            self.log.info(f"Connecting to {self.base_url}")
            async with session.get(self.url, headers=headers) as response:
                if response.status != 200:
                    body = await response.text()
                    raise ConnectionError(f"HTTP {response.status}: {body[:200]}")
                self._response = response
                self._connected = True
                self._delay = RECONNECT_MIN_DELAY
                self.log.info("Connected to SSE server")
                await self._process_stream(response.content.iter_any())

    async def _process_stream(self, chunks: AsyncIterable[bytes]) -> None:
        decoder = SSEDecoder()
        async for chunk in chunks:
            self.last_activity = time.time()
            for message in decoder.feed(chunk):
                await self._handle_message(message)

    async def _handle_message(self, message: SSEMessage) -> None:
        if message.event_id:
            self.last_event_id = message.event_id
        if message.event_type == "connected":
            self.log.info("SSE stream acknowledged")
            return
        if message.event_type == "heartbeat":
            self.log.debug("Heartbeat received")
            return
        if message.event_type not in SIGNAL_EVENTS:
            self.log.debug(f"Ignoring SSE event {message.event_type!r}")
            return

        try:
            payloads = decode_signal_payloads(message.data)
        except ValueError as exc:
            await self._emit_error(f"undecodable {message.event_type} event: {exc}")
            return
        for payload in payloads:
            if isinstance(payload, dict):
                await self._emit_payload(payload)
            else:
                await self._emit_error(f"signal payload must be an object, got {type(payload).__name__}")
