#!/usr/bin/env python3
"""Dispatcher fan-in: filter → policy → gate → executor → gate release."""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from automation_executor import AutomationExecutor
from dispatch_config import (
    ExecutorConfig,
    ProtocolDelays,
    StaticCredentialsLookup,
    StepPolicy,
    TradeConfig,
    TradeConfigLookup,
    YamlTradeConfigLookup,
)
from dispatcher import SignalDispatcher, _demo_signal
from execution_gate import ExecutionGate
from host_lifecycle import HostLifecycleManager
from hosts import ProviderRouter, SimulatedHostFactory, SimulatedScenario
from session_status import FailureReason, Outcome
from signal_filter import SignalFilter
from signal_models import Direction, Signal
from signal_sources import SOURCE_BACKGROUND, SOURCE_FOREGROUND
from sse_consumer import SignalSSEClient
from status_reporter import StatusReporter

SYMBOLS = {
    "EURUSD": {"lot_size": "0.01", "order_count": 2, "direction": "BOTH"},
    "GBPUSD": {"lot_size": "0.02", "order_count": 1, "direction": "SELL"},
}
ACCOUNTS = {"mt5": {"login": "5550001", "password": "pw", "server": "Deriv-Demo"}}


def _fast_executor_config() -> ExecutorConfig:
    policy = StepPolicy(attempts=2, timeout_sec=0.05, interval_sec=0.005)
    return ExecutorConfig(
        session_timeout_sec=5,
        steps={
            "initializing": policy,
            "authenticating": policy,
            "locating_instrument": policy,
            "order_surface": StepPolicy(attempts=3, timeout_sec=0.05, interval_sec=0.005),
        },
        delays=ProtocolDelays.zero(),
    )


def _dispatcher(scenario=None, resume_delay_sec=0.3, accounts=ACCOUNTS, trade_configs=None):
    factory = SimulatedHostFactory(scenario or SimulatedScenario())
    executor = AutomationExecutor(
        lifecycle=HostLifecycleManager(factory),
        router=ProviderRouter(),
        reporter=StatusReporter(),
        config=_fast_executor_config(),
    )
    dispatcher = SignalDispatcher(
        signal_filter=SignalFilter(staleness_sec=30),
        gate=ExecutionGate(resume_delay_sec=resume_delay_sec, instrument_cooldown_sec=60),
        executor=executor,
        trade_configs=trade_configs or YamlTradeConfigLookup(SYMBOLS),
        credentials=StaticCredentialsLookup(accounts),
    )
    return dispatcher, factory


class ZeroOrderLookup(TradeConfigLookup):
    def resolve(self, instrument):
        return TradeConfig(instrument=instrument, lot_size="0.01", order_count=0)


def _signal(signal_id: str, instrument: str = "EURUSD", direction: Direction = Direction.BUY, source=SOURCE_FOREGROUND):
    return Signal(
        id=signal_id,
        instrument=instrument,
        direction=direction,
        issued_at=datetime.now(timezone.utc),
        source_tag=source,
    )


def test_end_to_end_two_trades_then_resume() -> None:
    dispatcher, factory = _dispatcher()
    events = []
    dispatcher.reporter.subscribe(events.append)

    async def scenario():
        task = dispatcher.ingest(_signal("42"))
        assert task is not None
        assert dispatcher.gate.paused is True
        # Same signal from another source while the session runs.
        assert dispatcher.ingest(_signal("42", source=SOURCE_BACKGROUND)) is None
        session = await task
        paused_after = dispatcher.gate.paused
        await asyncio.sleep(0.35)
        return session, paused_after

    session, paused_after = asyncio.run(scenario())

    assert session.outcome is Outcome.SUCCEEDED
    assert paused_after is True
    assert dispatcher.gate.paused is False
    assert [(o["side"], o["volume"]) for o in factory.orders] == [("BUY", "0.01"), ("BUY", "0.01")]
    assert [ev.type for ev in events if ev.terminal] == ["success"]
    assert dispatcher.gate.is_instrument_cooling("EURUSD") is True
    assert dispatcher.completed[-1]["outcome"] == "succeeded"


def test_signals_during_pause_do_not_consume_ledger() -> None:
    dispatcher, _ = _dispatcher(resume_delay_sec=0.05)

    async def scenario():
        task = dispatcher.ingest(_signal("1"))
        blocked = dispatcher.ingest(_signal("2", "GBPUSD", Direction.SELL))
        assert "2" not in dispatcher.signal_filter.ledger
        await task
        await asyncio.sleep(0.1)
        retry = dispatcher.ingest(_signal("2", "GBPUSD", Direction.SELL))
        if retry is not None:
            await retry
        return blocked, retry

    blocked, retry = asyncio.run(scenario())
    assert blocked is None
    assert retry is not None
    assert "2" in dispatcher.signal_filter.ledger


def test_step_failure_releases_gate_immediately() -> None:
    dispatcher, factory = _dispatcher(SimulatedScenario(fail_locate=True), resume_delay_sec=30)

    async def scenario():
        return await dispatcher.ingest(_signal("7"))

    session = asyncio.run(scenario())

    assert session.failure_reason is FailureReason.INSTRUMENT_NOT_FOUND
    assert dispatcher.gate.paused is False
    assert dispatcher.gate.is_instrument_cooling("EURUSD") is False
    assert factory.hosts[0].destroyed is True


@pytest.mark.parametrize(
    "kwargs, reason",
    [
        ({"scenario": SimulatedScenario(fail_create=True)}, FailureReason.HOST_CREATION_FAILED),
        ({"scenario": SimulatedScenario(never_ready=True)}, FailureReason.HOST_LOAD_TIMEOUT),
        ({"scenario": SimulatedScenario(auth_mode="silent")}, FailureReason.AUTH_VERIFICATION_TIMEOUT),
        ({"scenario": SimulatedScenario(auth_mode="rejected")}, FailureReason.AUTH_VERIFICATION_TIMEOUT),
        ({"scenario": SimulatedScenario(fail_locate=True)}, FailureReason.INSTRUMENT_NOT_FOUND),
        ({"accounts": {}}, FailureReason.MISSING_CREDENTIALS),
        ({"trade_configs": ZeroOrderLookup()}, FailureReason.INVALID_TRADE_CONFIG),
    ],
)
def test_clean_failures_release_gate_at_every_step(kwargs, reason) -> None:
    dispatcher, factory = _dispatcher(resume_delay_sec=30, **kwargs)
    events = []
    dispatcher.reporter.subscribe(events.append)

    session = asyncio.run(_run(dispatcher, _signal("20")))

    assert session.outcome is Outcome.FAILED
    assert session.failure_reason is reason
    assert session.remote_mutated is False
    assert dispatcher.gate.paused is False
    assert dispatcher.gate.active is False
    assert dispatcher.gate.is_instrument_cooling("EURUSD") is False
    assert all(host.destroyed for host in factory.hosts)
    assert [ev.reason for ev in events if ev.terminal] == [reason.value]


def test_rejected_trades_still_wait_resume_delay() -> None:
    dispatcher, _ = _dispatcher(SimulatedScenario(trade_outcomes=("reject", "reject")), resume_delay_sec=30)

    session = asyncio.run(_run(dispatcher, _signal("8")))

    assert session.failure_reason is FailureReason.NO_TRADES_SUCCEEDED
    assert session.remote_mutated is True
    assert dispatcher.gate.paused is True


async def _run(dispatcher, signal):
    return await dispatcher.ingest(signal)


def test_executor_crash_still_releases_gate(monkeypatch) -> None:
    dispatcher, _ = _dispatcher(resume_delay_sec=30)
    events = []
    dispatcher.reporter.subscribe(events.append)

    async def boom(session):
        raise RuntimeError("executor exploded")

    monkeypatch.setattr(dispatcher.executor, "run", boom)

    session = asyncio.run(_run(dispatcher, _signal("9")))

    assert session.outcome is Outcome.FAILED
    assert session.failure_reason is FailureReason.INTERNAL_ERROR
    assert dispatcher.gate.paused is False
    assert dispatcher.gate.active is False
    assert [ev.reason for ev in events if ev.terminal] == ["INTERNAL_ERROR"]


def test_unconfigured_instrument_and_direction_policy_are_dropped() -> None:
    dispatcher, factory = _dispatcher()

    async def scenario():
        return (
            dispatcher.ingest(_signal("10", "USDJPY")),
            dispatcher.ingest(_signal("11", "GBPUSD", Direction.BUY)),
        )

    no_config, wrong_side = asyncio.run(scenario())
    assert no_config is None
    assert wrong_side is None
    assert dispatcher.gate.paused is False
    assert factory.hosts == []


def test_stale_signal_never_reaches_gate() -> None:
    dispatcher, _ = _dispatcher()
    old = Signal(
        id="12",
        instrument="EURUSD",
        direction=Direction.BUY,
        issued_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
    )
    assert dispatcher.ingest(old) is None
    assert dispatcher.gate.paused is False


def test_stop_cancels_active_session() -> None:
    dispatcher, factory = _dispatcher(SimulatedScenario(never_ready=True))
    dispatcher.executor.config.steps["initializing"] = StepPolicy(attempts=1, timeout_sec=30, interval_sec=0.01)

    async def scenario():
        task = dispatcher.ingest(_signal("13"))
        await asyncio.sleep(0.05)
        await dispatcher.stop()
        return task.result()

    session = asyncio.run(scenario())
    assert session.failure_reason is FailureReason.CANCELLED
    assert factory.hosts[0].destroyed is True
    assert dispatcher.gate.active is False
    assert dispatcher.gate.paused is False


def test_status_snapshot() -> None:
    dispatcher, _ = _dispatcher()
    snap = dispatcher.status()
    assert snap["paused"] is False
    assert snap["active_session"] is None
    assert snap["ledger_size"] == 0


def test_build_from_config_wires_sources() -> None:
    cfg = {
        "config": {
            "sources": {
                "signals_url": "http://signals.local",
                "background_enabled": True,
                "sse_enabled": True,
                "sse_url": "http://signals.local/sse",
            },
            "hosts": {"kind": "simulated"},
            "symbols": SYMBOLS,
        }
    }
    dispatcher = SignalDispatcher.build(cfg, dry_run=True)
    tags = [s.source_tag for s in dispatcher.sources]
    assert tags == [SOURCE_FOREGROUND, SOURCE_BACKGROUND, "push"]
    assert isinstance(dispatcher.sources[-1], SignalSSEClient)
    # Dry run falls back to a demo account.
    assert dispatcher.credentials.resolve("MT5").login == "demo"


def test_demo_signal_parses_instrument_and_direction() -> None:
    sig = _demo_signal("XAUUSD:sell")
    assert sig.instrument == "XAUUSD"
    assert sig.direction is Direction.SELL
    assert sig.issued_at is not None
