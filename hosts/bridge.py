#!/usr/bin/env python3
"""
WebSocket bridge execution host.

Each host owns its own websocket to the automation bridge, which runs one
sandboxed terminal per connection. Frames are JSON:

outbound: {"op": "create"|"load"|"action"|"destroy", "handle_id": int, ...}
inbound:  {"type": "ready"|"step"|"observation"|..., "message", "probe", "value"}
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp

from .base import EVENT_CLOSED, ActionDescriptor, ExecutionHost, HostCreationError, HostEvent


class BridgeHost(ExecutionHost):
    """Execution host backed by a remote automation bridge."""

    HEARTBEAT_INTERVAL = 15.0
    CONNECT_TIMEOUT = 10.0

    def __init__(self, handle_id: int, bridge_url: str):
        super().__init__(handle_id)
        self.bridge_url = bridge_url
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closed_emitted = False

    async def open(self) -> None:
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.CONNECT_TIMEOUT)
        self._session = aiohttp.ClientSession(timeout=timeout)
        try:
            self.log.info(f"[{self.handle_id}] Connecting to {self.bridge_url}")
            self._ws = await self._session.ws_connect(self.bridge_url, heartbeat=self.HEARTBEAT_INTERVAL)
            await self._send_frame({"op": "create"})
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            await self._close_transport()
            raise HostCreationError(f"bridge connect failed: {exc}") from exc
        self._reader_task = asyncio.create_task(self._consume_ws(self._ws))

    async def load(self, target: str) -> None:
        await self._send_frame({"op": "load", "target": target})

    async def send(self, action: ActionDescriptor) -> None:
        frame = {"op": "action"}
        frame.update(action.to_dict())
        await self._send_frame(frame)

    async def destroy(self) -> None:
        if self.destroyed:
            return
        self.destroyed = True
        try:
            await self._send_frame({"op": "destroy"})
        except Exception as exc:
            self.log.debug(f"[{self.handle_id}] destroy frame not delivered: {exc}")
        if self._reader_task:
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None
        await self._close_transport()
        self._emit_closed("destroyed")

    async def _send_frame(self, frame: Dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            self.log.debug(f"[{self.handle_id}] dropped {frame.get('op')} frame: socket closed")
            return
        frame.setdefault("handle_id", self.handle_id)
        await ws.send_str(json.dumps(frame))

    async def _consume_ws(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_text(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self.log.warning(f"[{self.handle_id}] WS error: {ws.exception()}")
                    break
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.CLOSING):
                    self.log.info(f"[{self.handle_id}] WS closed (type={msg.type})")
                    break
        finally:
            if not self.destroyed:
                self._emit_closed("bridge connection lost")

    def _handle_text(self, payload: str) -> None:
        try:
            data = json.loads(payload)
        except (TypeError, ValueError):
            self.log.debug(f"[{self.handle_id}] Skipping non-JSON WS message")
            return
        if not isinstance(data, dict):
            return
        event = HostEvent.from_dict(data)
        if not event.type:
            return
        self._emit(event)

    def _emit_closed(self, message: str) -> None:
        if self._closed_emitted:
            return
        self._closed_emitted = True
        self._emit(HostEvent(type=EVENT_CLOSED, message=message))

    async def _close_transport(self) -> None:
        if self._ws is not None and not self._ws.closed:
            try:
                await self._ws.close()
            except Exception as exc:
                self.log.debug(f"[{self.handle_id}] WS close error: {exc}")
        self._ws = None
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class BridgeHostFactory:
    def __init__(self, bridge_url: str):
        self.bridge_url = bridge_url

    def __call__(self, handle_id: int) -> BridgeHost:
        return BridgeHost(handle_id, self.bridge_url)
