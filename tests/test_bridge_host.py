#!/usr/bin/env python3
"""Tests for the websocket bridge host framing + event parsing."""

import asyncio
import json
from pathlib import Path
import sys
from types import SimpleNamespace

import aiohttp

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from hosts import ActionDescriptor, BridgeHost, BridgeHostFactory


class DummyWS:
    def __init__(self, messages=()):
        self._messages = list(messages)
        self.sent = []
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._messages:
            raise StopAsyncIteration
        return self._messages.pop(0)

    async def send_str(self, data):
        self.sent.append(json.loads(data))

    def exception(self):
        return None

    async def close(self):
        self.closed = True


def _text(payload) -> SimpleNamespace:
    return SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=json.dumps(payload))


def test_frames_carry_handle_id() -> None:
    host = BridgeHost(7, "ws://bridge.local/automation")
    ws = DummyWS()
    host._ws = ws

    async def scenario():
        await host.load("https://terminal.example")
        await host.send(ActionDescriptor(kind="fill", target="mt5.login.account", value="1001"))
        await host.destroy()

    asyncio.run(scenario())

    assert [frame["op"] for frame in ws.sent] == ["load", "action", "destroy"]
    assert all(frame["handle_id"] == 7 for frame in ws.sent)
    action = ws.sent[1]
    assert action["kind"] == "fill"
    assert action["target"] == "mt5.login.account"
    assert action["value"] == "1001"
    assert ws.closed is True
    assert host.destroyed is True


def test_inbound_messages_become_host_events() -> None:
    host = BridgeHost(3, "ws://bridge.local/automation")
    seen = []
    host.on_message(seen.append)
    ws = DummyWS(
        [
            _text({"type": "ready", "message": "loaded"}),
            SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data="not json"),
            _text({"type": "observation", "probe": "mt5.market_watch.visible", "value": True}),
            _text({"type": "TRADE_REJECTED", "message": "no money"}),
            _text(["not", "a", "dict"]),
        ]
    )

    asyncio.run(host._consume_ws(ws))

    assert [ev.type for ev in seen] == ["ready", "observation", "trade_rejected", "closed"]
    assert seen[1].probe == "mt5.market_watch.visible"
    assert seen[1].value is True
    assert seen[-1].message == "bridge connection lost"


def test_destroy_twice_emits_single_closed_event() -> None:
    host = BridgeHost(1, "ws://bridge.local/automation")
    host._ws = DummyWS()
    seen = []
    host.on_message(seen.append)

    async def scenario():
        await host.destroy()
        await host.destroy()

    asyncio.run(scenario())
    assert [ev.type for ev in seen] == ["closed"]


def test_frames_after_close_are_dropped() -> None:
    host = BridgeHost(2, "ws://bridge.local/automation")
    ws = DummyWS()
    ws.closed = True
    host._ws = ws

    asyncio.run(host.send(ActionDescriptor(kind="click", target="mt5.login.submit")))
    assert ws.sent == []


def test_factory_builds_hosts_per_handle() -> None:
    factory = BridgeHostFactory("ws://bridge.local/automation")
    a, b = factory(1), factory(2)
    assert (a.handle_id, b.handle_id) == (1, 2)
    assert a.bridge_url == "ws://bridge.local/automation"
