#!/usr/bin/env python3
"""
Signal dispatcher service.

Single fan-in point for every signal source:

    sources → ingest() → [gate paused?] → filter → trade config → direction
            policy → gate.try_admit → executor task → status reporter

The session task releases the gate in a ``finally`` block, so every
terminal path (including unexpected exceptions and cancellation) returns
the gate.

Usage:
    python dispatcher.py --dry-run --demo-signal EURUSD:BUY
"""

from __future__ import annotations

import argparse
import asyncio
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from automation_executor import AutomationExecutor, ExecutionSession
from dispatch_config import (
    AccountCredentials,
    ExecutorConfig,
    FilterConfig,
    GateConfig,
    HostsConfig,
    Platform,
    ReporterConfig,
    SourcesConfig,
    StaticCredentialsLookup,
    TradeConfigLookup,
    YamlTradeConfigLookup,
    load_dispatch_config,
)
from env_utils import ensure_runtime_dir
from execution_gate import ExecutionGate, GateDecision
from host_lifecycle import HostLifecycleManager
from hosts import BridgeHostFactory, ProviderRouter, SimulatedHostFactory
from logging_utils import get_logger, setup_logging
from session_status import MUTATING_OUTCOMES, FailureReason, Outcome
from signal_filter import SignalFilter
from signal_models import Signal, parse_signal
from signal_sources import SOURCE_BACKGROUND, SOURCE_FOREGROUND, PollingSignalSource, SignalSource
from sse_consumer import SignalSSEClient
from status_reporter import StatusReporter


COMPLETED_SESSIONS_MAX = 50


class DryRunCredentials:
    """Configured credentials, or a demo account when none exist."""

    def __init__(self, inner: StaticCredentialsLookup):
        self.inner = inner

    def resolve(self, platform: Platform) -> Optional[AccountCredentials]:
        return self.inner.resolve(platform) or AccountCredentials(login="demo", password="demo", server="")


class SignalDispatcher:
    """Wires sources, filter, gate and executor together."""

    def __init__(
        self,
        signal_filter: SignalFilter,
        gate: ExecutionGate,
        executor: AutomationExecutor,
        trade_configs: TradeConfigLookup,
        credentials,
        sources: Optional[List[SignalSource]] = None,
        dry_run: bool = False,
    ):
        self.signal_filter = signal_filter
        self.gate = gate
        self.executor = executor
        self.trade_configs = trade_configs
        self.credentials = credentials
        self.sources: List[SignalSource] = list(sources or [])
        self.dry_run = dry_run
        self.completed: Deque[Dict[str, Any]] = deque(maxlen=COMPLETED_SESSIONS_MAX)
        self.source_errors = 0
        self._session_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False
        self.log = get_logger("dispatcher")

    @classmethod
    def build(
        cls,
        config: Optional[Dict[str, Any]] = None,
        *,
        dry_run: bool = False,
        host_factory=None,
    ) -> "SignalDispatcher":
        """Assemble a dispatcher from dispatch.yaml sections."""
        cfg = config if config is not None else load_dispatch_config()
        hosts_cfg = HostsConfig.load(cfg)
        if host_factory is None:
            if dry_run or hosts_cfg.kind == "simulated":
                host_factory = SimulatedHostFactory()
            else:
                host_factory = BridgeHostFactory(hosts_cfg.bridge_url)

        lifecycle = HostLifecycleManager(
            host_factory,
            clear_timeout_sec=hosts_cfg.clear_timeout_sec,
            destroy_timeout_sec=hosts_cfg.destroy_timeout_sec,
        )
        reporter_cfg = ReporterConfig.load(cfg)
        executor = AutomationExecutor(
            lifecycle=lifecycle,
            router=ProviderRouter(ea_name=hosts_cfg.ea_name),
            reporter=StatusReporter.from_config(reporter_cfg),
            config=ExecutorConfig.load(cfg),
        )
        credentials = StaticCredentialsLookup.load(cfg)
        dispatcher = cls(
            signal_filter=SignalFilter.from_config(FilterConfig.load(cfg)),
            gate=ExecutionGate.from_config(GateConfig.load(cfg)),
            executor=executor,
            trade_configs=YamlTradeConfigLookup.load(cfg),
            credentials=DryRunCredentials(credentials) if dry_run else credentials,
            dry_run=dry_run,
        )
        dispatcher.sources = dispatcher._build_sources(SourcesConfig.load(cfg))
        return dispatcher

    def _build_sources(self, cfg: SourcesConfig) -> List[SignalSource]:
        sources: List[SignalSource] = []
        if cfg.signals_url:
            sources.append(PollingSignalSource(
                cfg.signals_url,
                cfg.phone_secret,
                cfg.foreground_interval_sec,
                source_tag=SOURCE_FOREGROUND,
                request_timeout_sec=cfg.request_timeout_sec,
            ))
            if cfg.background_enabled:
                sources.append(PollingSignalSource(
                    cfg.signals_url,
                    cfg.phone_secret,
                    cfg.background_interval_sec,
                    source_tag=SOURCE_BACKGROUND,
                    request_timeout_sec=cfg.request_timeout_sec,
                ))
        if cfg.sse_enabled and cfg.sse_url:
            sources.append(SignalSSEClient(cfg.sse_url, phone_secret=cfg.phone_secret))
        return sources

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    @property
    def reporter(self) -> StatusReporter:
        return self.executor.reporter

    @property
    def session_task(self) -> Optional[asyncio.Task]:
        return self._session_task

    def ingest(self, signal: Signal) -> Optional[asyncio.Task]:
        """Fan-in for all sources. Returns the session task when admitted."""
        if self.gate.paused:
            self.log.debug(f"Gate paused; dropping {signal.id} ({signal.source_tag or '?'})")
            return None

        if not self.signal_filter.evaluate(signal).accepted:
            return None

        trade_config = self.trade_configs.resolve(signal.instrument)
        if trade_config is None:
            self.log.info(f"No trade configuration for {signal.instrument}; dropping {signal.id}")
            return None
        if not trade_config.direction_policy.allows(signal.direction):
            self.log.info(
                f"{signal.instrument} policy {trade_config.direction_policy.value} "
                f"excludes {signal.direction.value}; dropping {signal.id}"
            )
            return None

        if self.gate.try_admit(signal) is not GateDecision.ADMITTED:
            return None

        try:
            session = ExecutionSession(
                signal=signal,
                resolved_config=trade_config,
                credentials=self.credentials.resolve(trade_config.platform),
            )
            task = asyncio.get_running_loop().create_task(self._run_session(session))
        except Exception:
            self.gate.release(Outcome.FAILED, remote_mutated=False)
            raise
        self._session_task = task
        return task

    async def _run_session(self, session: ExecutionSession) -> ExecutionSession:
        try:
            await self.executor.run(session)
        except asyncio.CancelledError:
            self.log.warning(f"Session {session.session_id} task cancelled")
            raise
        except Exception as exc:
            self.log.exception(f"Executor crashed on {session.session_id}: {exc}")
            if session.outcome is Outcome.PENDING:
                session.outcome = Outcome.FAILED
                session.failure_reason = FailureReason.INTERNAL_ERROR
                session.failure_message = str(exc)
            if self.reporter.session_id != session.session_id:
                self.reporter.begin(session.session_id)
            if not self.reporter.terminal_sent:
                self.reporter.failed(FailureReason.INTERNAL_ERROR.value, str(exc))
        finally:
            outcome = session.outcome if session.outcome.terminal else Outcome.FAILED
            if outcome in MUTATING_OUTCOMES:
                self.gate.mark_executed(session.signal.instrument)
            self.gate.release(outcome, remote_mutated=session.remote_mutated)
            self.completed.append(session.to_dict())
            if self._session_task is asyncio.current_task():
                self._session_task = None
        return session

    def _on_source_signal(self, signal: Signal) -> None:
        self.ingest(signal)

    async def _on_source_error(self, reason: str) -> None:
        self.source_errors += 1
        self.log.debug(f"Source error #{self.source_errors}: {reason}")

    # ------------------------------------------------------------------
    # Service lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.log.info("=" * 60)
        self.log.info("Signal Dispatcher Starting")
        self.log.info(f"  Dry run: {self.dry_run}")
        self.log.info(f"  Sources: {', '.join(s.source_tag for s in self.sources) or 'none'}")
        self.log.info(f"  Staleness: {self.signal_filter.staleness_sec:.0f}s, resume delay: {self.gate.resume_delay_sec:.0f}s")
        self.log.info("=" * 60)
        self._running = True
        self._stop_event = asyncio.Event()
        for source in self.sources:
            source.on_signal(self._on_source_signal)
            source.on_error(self._on_source_error)
            await source.start()

    async def run_forever(self) -> None:
        if self._stop_event is None:
            await self.start()
        await self._stop_event.wait()

    def cancel_active(self, reason: str = "operator request") -> bool:
        return self.executor.cancel(reason)

    async def stop(self) -> None:
        self._running = False
        for source in self.sources:
            try:
                await source.stop()
            except Exception as exc:
                self.log.error(f"Error stopping {source.source_tag} source: {exc}")
        task = self._session_task
        if task is not None and not task.done():
            self.cancel_active("dispatcher stopping")
            await asyncio.gather(task, return_exceptions=True)
        await self.executor.lifecycle.shutdown()
        if self._stop_event is not None:
            self._stop_event.set()
        self.log.info("Signal dispatcher stopped")

    def status(self) -> Dict[str, Any]:
        state = self.gate.state
        active = self.executor.active_session
        return {
            "running": self._running,
            "paused": state.paused,
            "resume_in_sec": self.gate.resume_in(),
            "active_session": active.to_dict() if active else None,
            "ledger_size": len(self.signal_filter.ledger),
            "source_errors": self.source_errors,
            "completed": list(self.completed),
        }


def _demo_signal(value: str) -> Signal:
    instrument, _, direction = value.partition(":")
    now = datetime.now(timezone.utc)
    return parse_signal(
        {
            "id": f"demo-{int(now.timestamp())}",
            "asset": instrument.strip(),
            "action": (direction or "BUY").strip(),
            "time": now.isoformat(),
        },
        "demo",
    )


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Dispatch trade signals to remote terminal automation"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Use the simulated terminal instead of the automation bridge"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging"
    )
    parser.add_argument("--config", help="Path to dispatch.yaml")
    parser.add_argument("--log-file", help="Also log to this file")
    parser.add_argument(
        "--demo-signal",
        metavar="INSTRUMENT:DIRECTION",
        help="Inject one fresh signal after start (e.g. EURUSD:BUY)"
    )

    args = parser.parse_args()

    ensure_runtime_dir()
    log = setup_logging("dispatcher", log_file=args.log_file, verbose=args.verbose)
    config = load_dispatch_config(args.config) if args.config else load_dispatch_config()
    dispatcher = SignalDispatcher.build(config, dry_run=args.dry_run)

    try:
        await dispatcher.start()
        if args.demo_signal:
            task = dispatcher.ingest(_demo_signal(args.demo_signal))
            if task is not None:
                session = await task
                log.info(f"Demo session result: {session.to_dict()}")
        await dispatcher.run_forever()
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        await dispatcher.stop()


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
