#!/usr/bin/env python3
"""
Automation step executor.

Drives one execution host through the fixed protocol:

    INITIALIZING → AUTHENTICATING → LOCATING_INSTRUMENT → EXECUTING_TRADES × N → REPORTING

Every transition is driven by an inbound host message or a local timeout;
instructions are fire-and-forget and success is verified by polling probes
through ``await_observable``. Platform detail lives entirely in the
``ActionProvider`` chosen for the trade configuration's platform.

Error taxonomy:
- transient: retried inside a step up to its attempt ceiling
- step failure: aborts the session (no trades without verified login and
  instrument selection)
- per-trade failure: recorded, the loop continues
- fatal (host creation, cancellation, session timeout): immediate teardown

Nothing escapes ``run``: every path ends with exactly one terminal status
event and a released host.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import itertools
import time
from typing import Dict, List, Optional, Sequence

from dispatch_config import AccountCredentials, ExecutorConfig, TradeConfig
from host_lifecycle import HostHandle, HostLifecycleManager
from hosts.base import ActionDescriptor, ActionProvider, HostCreationError, probe_action
from hosts.router import ProviderRouter
from logging_utils import get_logger
from observables import ObservationAborted, ObservationBoard, await_observable
from session_status import FailureReason, Outcome, StepName, TradeResult
from signal_models import Signal
from status_reporter import StatusReporter


_session_ids = itertools.count(1)


class StepFailed(Exception):
    """Aborts the session with a terminal failure reason."""

    def __init__(self, reason: FailureReason, message: str = ""):
        super().__init__(message or reason.value)
        self.reason = reason
        self.message = message or reason.value


@dataclass
class ExecutionSession:
    """One executor run against one signal."""
    signal: Signal
    resolved_config: TradeConfig
    credentials: Optional[AccountCredentials] = None
    session_id: str = ""
    current_step: Optional[StepName] = None
    attempts_per_step: Dict[str, int] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    host_handle: Optional[HostHandle] = None
    outcome: Outcome = Outcome.PENDING
    failure_reason: Optional[FailureReason] = None
    failure_message: str = ""
    trade_results: List[TradeResult] = field(default_factory=list)
    remote_mutated: bool = False

    def __post_init__(self) -> None:
        if not self.session_id:
            self.session_id = f"{self.signal.id}#{next(_session_ids)}"

    @property
    def succeeded_count(self) -> int:
        return sum(1 for r in self.trade_results if r.succeeded)

    @property
    def total_trades(self) -> int:
        return int(self.resolved_config.order_count)

    @property
    def duration_sec(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def bump(self, step: str) -> int:
        self.attempts_per_step[step] = self.attempts_per_step.get(step, 0) + 1
        return self.attempts_per_step[step]

    def to_dict(self) -> Dict[str, object]:
        return {
            "session_id": self.session_id,
            "signal_id": self.signal.id,
            "instrument": self.signal.instrument,
            "direction": self.signal.direction.value,
            "platform": self.resolved_config.platform.value,
            "current_step": self.current_step.value if self.current_step else None,
            "attempts_per_step": dict(self.attempts_per_step),
            "outcome": self.outcome.value,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "succeeded": self.succeeded_count,
            "total": self.total_trades,
            "remote_mutated": self.remote_mutated,
            "handle_id": self.host_handle.handle_id if self.host_handle else None,
        }


def format_price(value: float) -> str:
    text = f"{float(value):.10f}".rstrip("0").rstrip(".")
    return text or "0"


class AutomationExecutor:
    """Runs execution sessions one at a time."""

    def __init__(
        self,
        lifecycle: HostLifecycleManager,
        router: ProviderRouter,
        reporter: StatusReporter,
        config: Optional[ExecutorConfig] = None,
    ):
        self.lifecycle = lifecycle
        self.router = router
        self.reporter = reporter
        self.config = config or ExecutorConfig()
        self._session: Optional[ExecutionSession] = None
        self._drive_task: Optional[asyncio.Task] = None
        self._cancel_requested = False
        self.log = get_logger("dispatcher.executor")

    @property
    def active_session(self) -> Optional[ExecutionSession]:
        return self._session

    def cancel(self, reason: str = "") -> bool:
        """Force the running session to FAILED(CANCELLED). Returns False when idle."""
        task = self._drive_task
        if self._session is None or task is None or task.done():
            return False
        self._cancel_requested = True
        self.log.warning(f"Cancelling session {self._session.session_id}{': ' + reason if reason else ''}")
        task.cancel()
        return True

    # ------------------------------------------------------------------
    # Session driver
    # ------------------------------------------------------------------

    async def run(self, session: ExecutionSession) -> ExecutionSession:
        """Drive a session to a terminal outcome. Never raises, except to
        propagate cancellation of the calling task itself."""
        self._session = session
        self._cancel_requested = False
        self.reporter.begin(session.session_id)
        self.log.info(
            f"Session {session.session_id}: {session.signal.instrument} {session.signal.direction.value} "
            f"x{session.total_trades} on {session.resolved_config.platform.value}"
        )
        external_cancel = False
        drive = asyncio.ensure_future(self._drive(session))
        self._drive_task = drive
        try:
            await asyncio.wait_for(drive, timeout=self.config.session_timeout_sec)
        except asyncio.TimeoutError:
            self._fail(session, FailureReason.SESSION_TIMEOUT,
                       f"session exceeded {self.config.session_timeout_sec:.0f}s")
        except asyncio.CancelledError:
            external_cancel = not self._cancel_requested
            self._fail(session, FailureReason.CANCELLED, "session cancelled")
        except Exception as exc:
            self.log.exception(f"Session {session.session_id} crashed: {exc}")
            self._fail(session, FailureReason.INTERNAL_ERROR, str(exc))
        finally:
            self._drive_task = None
            try:
                await self.lifecycle.release(session.host_handle)
            except Exception as exc:
                self.log.error(f"Host release failed for {session.session_id}: {exc}")
            if session.outcome is Outcome.PENDING:
                self._fail(session, FailureReason.INTERNAL_ERROR, "session ended without outcome")
            self._report(session)
            self._session = None
        if external_cancel:
            raise asyncio.CancelledError()
        return session

    async def _drive(self, session: ExecutionSession) -> None:
        try:
            provider = self.router.provider_for(session.resolved_config.platform)
            if session.total_trades < 1:
                raise StepFailed(FailureReason.INVALID_TRADE_CONFIG,
                                 f"invalid number of trades configured: {session.resolved_config.order_count}")
            if session.credentials is None or not session.credentials.complete:
                raise StepFailed(FailureReason.MISSING_CREDENTIALS,
                                 f"no {session.resolved_config.platform.value} account configured")
            try:
                handle = await self.lifecycle.acquire(provider)
            except HostCreationError as exc:
                raise StepFailed(FailureReason.HOST_CREATION_FAILED, str(exc)) from exc
            session.host_handle = handle

            board = ObservationBoard(handle.handle_id)
            handle.on_message(board.handle)

            await self._initialize(session, handle, provider, board)
            await self._authenticate(session, handle, provider, board)
            await self._locate_instrument(session, handle, provider, board)
            await self._execute_trades(session, handle, provider, board)
        except StepFailed as failure:
            self._fail(session, failure.reason, failure.message)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _enter(self, session: ExecutionSession, step: StepName, message: str) -> None:
        session.current_step = step
        self.reporter.step(step.value, message)

    @staticmethod
    def _closed_check(board: ObservationBoard):
        return lambda: "host closed" if board.closed else None

    async def _send_all(self, handle: HostHandle, actions: Sequence[ActionDescriptor], settle: float = 0.0) -> None:
        for idx, action in enumerate(actions):
            await handle.send(action)
            if settle and idx < len(actions) - 1:
                await asyncio.sleep(settle)

    async def _verify(
        self,
        handle: HostHandle,
        board: ObservationBoard,
        probe: str,
        policy,
        abort=None,
    ) -> bool:
        return await await_observable(
            lambda: board.observed(probe),
            policy.timeout_sec,
            policy.interval_sec,
            poll=lambda: handle.send(probe_action(probe)),
            abort=abort or self._closed_check(board),
        )

    async def _initialize(self, session, handle: HostHandle, provider: ActionProvider, board: ObservationBoard) -> None:
        policy = self.config.policy(StepName.INITIALIZING.value)
        target = provider.load_target(session.credentials)
        self._enter(session, StepName.INITIALIZING, f"Loading {provider.platform} terminal...")
        for attempt in range(1, policy.attempts + 1):
            session.bump(StepName.INITIALIZING.value)
            if attempt > 1:
                self.reporter.step(StepName.INITIALIZING.value, f"Reloading terminal (attempt {attempt}/{policy.attempts})...")
                await self.lifecycle.reset(handle)
            board.reset_ready()
            await handle.load(target)
            try:
                ready = await await_observable(
                    lambda: board.ready,
                    policy.timeout_sec,
                    policy.interval_sec,
                    abort=self._closed_check(board),
                )
            except ObservationAborted as exc:
                raise StepFailed(FailureReason.HOST_LOAD_TIMEOUT, exc.reason) from exc
            if ready:
                await asyncio.sleep(self.config.delays.post_load_sec)
                return
            self.log.info(f"Host {handle.handle_id} not ready after {policy.timeout_sec:.0f}s (attempt {attempt})")
        raise StepFailed(FailureReason.HOST_LOAD_TIMEOUT, "terminal never reported ready")

    async def _authenticate(self, session, handle: HostHandle, provider: ActionProvider, board: ObservationBoard) -> None:
        policy = self.config.policy(StepName.AUTHENTICATING.value)
        probe = provider.authenticated_probe
        creds = session.credentials
        self._enter(session, StepName.AUTHENTICATING, f"Authenticating account {creds.login}...")

        def abort() -> Optional[str]:
            if board.closed:
                return "host closed"
            return board.authentication_failed

        for attempt in range(1, policy.attempts + 1):
            session.bump(StepName.AUTHENTICATING.value)
            board.reset_authentication()
            board.forget(probe)
            await self._send_all(handle, provider.authenticate_actions(creds), self.config.delays.field_settle_sec)
            self.reporter.step(StepName.AUTHENTICATING.value, "Verifying authentication...")
            try:
                verified = await self._verify(handle, board, probe, policy, abort=abort)
            except ObservationAborted as exc:
                if board.closed:
                    raise StepFailed(FailureReason.AUTH_VERIFICATION_TIMEOUT, exc.reason) from exc
                self.log.info(f"Authentication attempt {attempt} rejected: {exc.reason}")
                verified = False
            if verified:
                self.reporter.step(StepName.AUTHENTICATING.value, "Account authenticated")
                await asyncio.sleep(self.config.delays.post_auth_sec)
                return
        raise StepFailed(
            FailureReason.AUTH_VERIFICATION_TIMEOUT,
            board.authentication_failed or "login never verified",
        )

    async def _locate_instrument(self, session, handle: HostHandle, provider: ActionProvider, board: ObservationBoard) -> None:
        policy = self.config.policy(StepName.LOCATING_INSTRUMENT.value)
        instrument = session.signal.instrument
        probe = provider.selected_probe(instrument)
        self._enter(session, StepName.LOCATING_INSTRUMENT, f"Searching for {instrument}...")
        for attempt in range(1, policy.attempts + 1):
            session.bump(StepName.LOCATING_INSTRUMENT.value)
            if attempt == 1:
                actions = provider.locate_actions(instrument)
            else:
                self.reporter.step(StepName.LOCATING_INSTRUMENT.value, f"Retrying {instrument} via alternate discovery...")
                actions = provider.locate_fallback_actions(instrument)
            board.forget(probe)
            await self._send_all(handle, actions, self.config.delays.field_settle_sec)
            await asyncio.sleep(self.config.delays.post_select_sec)
            try:
                if await self._verify(handle, board, probe, policy):
                    self.reporter.step(StepName.LOCATING_INSTRUMENT.value, f"{instrument} selected")
                    return
            except ObservationAborted as exc:
                raise StepFailed(FailureReason.INSTRUMENT_NOT_FOUND, exc.reason) from exc
        raise StepFailed(FailureReason.INSTRUMENT_NOT_FOUND, f"{instrument} not found")

    async def _execute_trades(self, session, handle: HostHandle, provider: ActionProvider, board: ObservationBoard) -> None:
        total = session.total_trades
        signal = session.signal
        self._enter(
            session,
            StepName.EXECUTING_TRADES,
            f"Executing {total} {signal.direction.value} trade(s) on {signal.instrument}",
        )
        delays = self.config.delays
        for index in range(1, total + 1):
            if index == 1:
                await asyncio.sleep(delays.first_trade_render_sec)
            session.bump(StepName.EXECUTING_TRADES.value)
            try:
                result = await self._place_trade(session, handle, provider, board, index)
            except (asyncio.CancelledError, StepFailed):
                raise
            except Exception as exc:
                self.log.error(f"Trade {index}/{total} crashed: {exc}")
                result = TradeResult(index=index, succeeded=False, error=str(exc))
            session.trade_results.append(result)
            if result.succeeded:
                self.reporter.step(StepName.EXECUTING_TRADES.value, f"Trade {index}/{total} placed")
            else:
                self.reporter.step(StepName.EXECUTING_TRADES.value, f"Trade {index}/{total} failed: {result.error}")
            if index < total:
                await asyncio.sleep(delays.between_trades_sec)

        succeeded = session.succeeded_count
        if succeeded == total:
            session.outcome = Outcome.SUCCEEDED
        elif succeeded > 0:
            session.outcome = Outcome.PARTIALLY_SUCCEEDED
        else:
            self._fail(session, FailureReason.NO_TRADES_SUCCEEDED, f"0/{total} trades placed")

    async def _place_trade(
        self,
        session: ExecutionSession,
        handle: HostHandle,
        provider: ActionProvider,
        board: ObservationBoard,
        index: int,
    ) -> TradeResult:
        total = session.total_trades
        signal = session.signal
        cfg = session.resolved_config
        delays = self.config.delays
        result = TradeResult(index=index, succeeded=False)

        # a. order surface
        policy = self.config.policy("order_surface")
        probe = provider.order_form_probe
        self.reporter.step(StepName.EXECUTING_TRADES.value, f"Opening order dialog for trade {index}/{total}...")
        opened = False
        for attempt in range(1, policy.attempts + 1):
            session.bump("order_surface")
            method, actions = provider.open_order_actions(attempt)
            board.forget(probe)
            await self._send_all(handle, actions, delays.field_settle_sec)
            try:
                opened = await self._verify(handle, board, probe, policy)
            except ObservationAborted as exc:
                result.error = exc.reason
                return result
            if opened:
                result.discovery_method = method
                break
            self.log.debug(f"Order dialog not found via {method} (trade {index}, attempt {attempt})")
        if not opened:
            result.error = "order dialog not found"
            return result

        # b. parameters
        fields = [("volume", cfg.lot_size)]
        if signal.stop_loss is not None:
            fields.append(("stop_loss", format_price(signal.stop_loss)))
        if signal.take_profit is not None:
            fields.append(("take_profit", format_price(signal.take_profit)))
        if provider.trade_tag:
            fields.append(("comment", provider.trade_tag))
        self.reporter.step(StepName.EXECUTING_TRADES.value, f"Filling order form for trade {index}/{total}...")
        for field_name, value in fields:
            await self._send_all(handle, provider.set_field_actions(field_name, value))
            await asyncio.sleep(delays.field_settle_sec)
        await asyncio.sleep(delays.params_settle_sec)

        # c. submit + best-effort confirm
        rejections_before = board.trade_rejections
        await self._send_all(handle, provider.submit_actions(signal.direction))
        session.remote_mutated = True
        result.submitted = True
        await asyncio.sleep(delays.submit_wait_sec)
        try:
            await self._send_all(handle, provider.confirm_actions())
        except Exception as exc:
            self.log.debug(f"Confirm dismissal skipped for trade {index}: {exc}")
        await asyncio.sleep(delays.confirm_wait_sec)

        if board.trade_rejections > rejections_before:
            result.error = "rejected by terminal"
            return result
        result.succeeded = True
        return result

    # ------------------------------------------------------------------
    # Terminal handling
    # ------------------------------------------------------------------

    def _fail(self, session: ExecutionSession, reason: FailureReason, message: str = "") -> None:
        if session.outcome is Outcome.FAILED:
            return
        session.outcome = Outcome.FAILED
        session.failure_reason = reason
        session.failure_message = message
        step = session.current_step.value if session.current_step else "-"
        self.log.warning(f"Session {session.session_id} failed at {step}: {reason.value} ({message})")

    def _report(self, session: ExecutionSession) -> None:
        session.finished_at = time.time()
        session.current_step = StepName.REPORTING
        succeeded, total = session.succeeded_count, session.total_trades
        if session.outcome is Outcome.SUCCEEDED:
            self.reporter.step(StepName.REPORTING.value, f"All {total} trade(s) placed")
            self.reporter.success()
        elif session.outcome is Outcome.PARTIALLY_SUCCEEDED:
            self.reporter.step(StepName.REPORTING.value, f"{succeeded}/{total} trade(s) placed")
            self.reporter.partial(succeeded, total)
        else:
            reason = session.failure_reason or FailureReason.INTERNAL_ERROR
            self.reporter.step(StepName.REPORTING.value, f"Execution failed: {session.failure_message or reason.value}")
            self.reporter.failed(reason.value, session.failure_message)
