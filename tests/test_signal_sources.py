#!/usr/bin/env python3
"""Polling signal source against a stubbed signals API."""

import asyncio
from pathlib import Path
import sys
from types import SimpleNamespace

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from signal_models import Direction
from signal_sources import SOURCE_BACKGROUND, PollingSignalSource


class DummyResponse:
    def __init__(self, status=200, payload=None, text=""):
        self.status = status
        self._payload = payload
        self._text = text
        self.request_info = SimpleNamespace(real_url="http://signals.local/api/signals")
        self.history = ()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def json(self, content_type=None):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    async def text(self):
        return self._text


class DummySession:
    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []
        self.closed = False

    def get(self, url, params=None):
        self.calls.append((url, params))
        return self._responses.pop(0)

    async def close(self):
        self.closed = True


SIGNAL_PAYLOAD = {
    "message": "accept",
    "data": {
        "id": "1001",
        "asset": "EURUSD",
        "action": "SELL",
        "price": "1.0850",
        "tp": "1.0800",
        "sl": "1.0900",
        "time": "2026-10-18T09:30:00Z",
    },
}


def _source(session):
    return PollingSignalSource(
        "http://signals.local/",
        phone_secret="abc123",
        interval_sec=5,
        source_tag=SOURCE_BACKGROUND,
        session=session,
    )


def test_accept_response_emits_signal() -> None:
    session = DummySession([DummyResponse(payload=SIGNAL_PAYLOAD)])
    source = _source(session)
    received = []
    source.on_signal(received.append)

    sig = asyncio.run(source.poll_once())

    assert sig is not None
    assert received == [sig]
    assert sig.id == "1001"
    assert sig.direction is Direction.SELL
    assert sig.source_tag == SOURCE_BACKGROUND
    assert session.calls == [("http://signals.local/api/signals", {"phone_secret": "abc123"})]
    assert source.recent[-1]["id"] == "1001"


def test_no_signal_response_emits_nothing() -> None:
    session = DummySession([DummyResponse(payload={"message": "no signal", "data": None})])
    source = _source(session)
    received = []
    errors = []
    source.on_signal(received.append)
    source.on_error(errors.append)

    assert asyncio.run(source.poll_once()) is None
    assert received == []
    assert errors == []


def test_http_error_goes_to_on_error() -> None:
    session = DummySession([DummyResponse(status=500, text="boom")])
    source = _source(session)
    errors = []
    source.on_error(errors.append)

    assert asyncio.run(source.poll_once()) is None
    assert len(errors) == 1
    assert "poll failed" in errors[0]


def test_malformed_body_goes_to_on_error() -> None:
    session = DummySession([DummyResponse(payload=ValueError("bad json"))])
    source = _source(session)
    errors = []
    source.on_error(errors.append)

    asyncio.run(source.poll_once())
    assert errors and "bad json" in errors[0]


def test_unparseable_signal_goes_to_on_error() -> None:
    payload = {"message": "accept", "data": {"id": "7", "asset": "EURUSD", "action": "HOLD"}}
    session = DummySession([DummyResponse(payload=payload)])
    source = _source(session)
    received = []
    errors = []
    source.on_signal(received.append)
    source.on_error(errors.append)

    asyncio.run(source.poll_once())
    assert received == []
    assert errors and "unparseable" in errors[0]


def test_async_callbacks_and_callback_errors() -> None:
    session = DummySession([DummyResponse(payload=SIGNAL_PAYLOAD)])
    source = _source(session)
    seen = []

    def broken(signal):
        raise RuntimeError("consumer crashed")

    async def record(signal):
        seen.append(signal.id)

    source.on_signal(broken)
    source.on_signal(record)

    asyncio.run(source.poll_once())
    assert seen == ["1001"]


def test_start_stop_poll_loop_keeps_injected_session() -> None:
    session = DummySession([DummyResponse(payload={"message": "none"}) for _ in range(20)])
    source = PollingSignalSource("http://signals.local", "abc", interval_sec=0.01, session=session)

    async def scenario():
        await source.start()
        await asyncio.sleep(0.05)
        await source.stop()

    asyncio.run(scenario())
    assert source.polls >= 2
    assert session.closed is False
