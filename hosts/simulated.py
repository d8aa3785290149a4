#!/usr/bin/env python3
"""
In-process simulated execution host.

Understands the web-terminal vocabulary from ``hosts.providers`` and plays
the part of a remote terminal: readiness after load, login, symbol
selection, order dialog and order placement. Failures are injected through
``SimulatedScenario``. Used by ``dispatcher --dry-run`` and the tests.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .base import (
    ACTION_CLEAR_STATE,
    ACTION_CLICK,
    ACTION_DISMISS,
    ACTION_DOUBLE_CLICK,
    ACTION_FILL,
    ACTION_NAVIGATE,
    ACTION_PRESS,
    ACTION_PROBE,
    EVENT_AUTHENTICATION_FAILED,
    EVENT_CLOSED,
    EVENT_OBSERVATION,
    EVENT_READY,
    EVENT_STEP,
    EVENT_TRADE_REJECTED,
    ActionDescriptor,
    ExecutionHost,
    HostCreationError,
    HostEvent,
)

TRADE_OK = "ok"
TRADE_REJECT = "reject"


@dataclass
class SimulatedScenario:
    """Failure injection knobs shared by every host a factory creates.

    fail_create: host creation raises HostCreationError
    never_ready: load() never reports readiness
    auth_mode: 'ok' | 'silent' (never logs in) | 'rejected' (reports failure)
    fail_locate: the instrument can never be selected
    locate_needs_fallback: plain search fails, fallback discovery succeeds
    order_form_after_requests: dialog opens on the Nth request of each trade
    order_form_available: the order dialog never opens when False
    trade_outcomes: per-submit outcome, 'ok' or 'reject' (default ok)
    """
    fail_create: bool = False
    never_ready: bool = False
    auth_mode: str = "ok"
    fail_locate: bool = False
    locate_needs_fallback: bool = False
    order_form_after_requests: int = 1
    order_form_available: bool = True
    trade_outcomes: Sequence[str] = ()
    reply_delay_sec: float = 0.0
    ready_delay_sec: float = 0.0
    raise_on_send_kind: Optional[str] = None


class SimulatedHost(ExecutionHost):
    """Scripted terminal driven entirely through the action vocabulary."""

    def __init__(self, handle_id: int, scenario: Optional[SimulatedScenario] = None):
        super().__init__(handle_id)
        self.scenario = scenario or SimulatedScenario()
        self.loads: List[str] = []
        self.actions: List[ActionDescriptor] = []
        self.orders: List[Dict[str, Any]] = []
        self.rejected: List[Dict[str, Any]] = []
        self.clears = 0
        self.destroy_calls = 0
        self._reset_surface()

    def _reset_surface(self) -> None:
        self.fields: Dict[str, str] = {}
        self.logged_in = False
        self.selected: Optional[str] = None
        self.search_text = ""
        self.fallback_used = False
        self.form_open = False
        self.form_requests = 0
        self.result_dialog = False

    async def open(self) -> None:
        if self.scenario.fail_create:
            raise HostCreationError(f"simulated creation failure (handle {self.handle_id})")

    async def load(self, target: str) -> None:
        if self.destroyed:
            return
        self.loads.append(target)
        self.logged_in = False
        self.selected = None
        self.form_open = False
        if self.scenario.never_ready:
            self.log.debug(f"[{self.handle_id}] load {target} (never ready)")
            return
        self._post(HostEvent(type=EVENT_READY, message=f"loaded {target}"), self.scenario.ready_delay_sec)

    async def send(self, action: ActionDescriptor) -> None:
        if self.destroyed:
            self.log.debug(f"[{self.handle_id}] dropped {action.kind} after destroy")
            return
        if self.scenario.raise_on_send_kind and action.kind == self.scenario.raise_on_send_kind:
            raise RuntimeError(f"simulated send failure for {action.kind}")
        self.actions.append(action)
        handler = {
            ACTION_CLEAR_STATE: self._on_clear,
            ACTION_FILL: self._on_fill,
            ACTION_CLICK: self._on_click,
            ACTION_DOUBLE_CLICK: self._on_click,
            ACTION_PRESS: self._on_order_request,
            ACTION_DISMISS: self._on_dismiss,
            ACTION_PROBE: self._on_probe,
            ACTION_NAVIGATE: self._on_navigate,
        }.get(action.kind)
        if handler is not None:
            handler(action)

    async def destroy(self) -> None:
        self.destroy_calls += 1
        if self.destroyed:
            return
        self.destroyed = True
        self._emit(HostEvent(type=EVENT_CLOSED, message="destroyed"))

    # ------------------------------------------------------------------
    # Action handlers
    # ------------------------------------------------------------------

    def _on_clear(self, action: ActionDescriptor) -> None:
        self.clears += 1
        self._reset_surface()

    def _on_navigate(self, action: ActionDescriptor) -> None:
        self._reset_surface()

    def _on_fill(self, action: ActionDescriptor) -> None:
        self.fields[action.target] = action.value or ""
        if action.target.endswith("symbol_search.field"):
            self.search_text = (action.value or "").upper()

    def _on_click(self, action: ActionDescriptor) -> None:
        target = action.target
        if target.endswith("login.submit"):
            self._on_login()
        elif target.endswith(("economic_calendar.toggle", "market_watch.toggle", "market_watch.show_all")):
            self.fallback_used = True
        elif target.endswith(("symbol_search.result", "market_watch.row")):
            self._on_select(action.value or self.search_text)
        elif target.endswith(("_market",)) and ".order_form." in target:
            self._on_submit(target)
        elif target.endswith(("order_button", "toolbar.new_order", "context_menu.new_order", "order_form.volume", ".chart")):
            self._on_order_request(action)

    def _on_login(self) -> None:
        mode = self.scenario.auth_mode
        if mode == "ok":
            self.logged_in = True
            self._post(HostEvent(type=EVENT_STEP, message="Connected"))
        elif mode == "rejected":
            self._post(HostEvent(type=EVENT_AUTHENTICATION_FAILED, message="Invalid account"))

    def _on_select(self, instrument: str) -> None:
        if not self.logged_in or self.scenario.fail_locate:
            return
        if self.scenario.locate_needs_fallback and not self.fallback_used:
            return
        self.selected = str(instrument or "").upper() or None

    def _on_order_request(self, action: ActionDescriptor) -> None:
        if not self.selected or self.form_open or not self.scenario.order_form_available:
            return
        self.form_requests += 1
        if self.form_requests >= max(1, self.scenario.order_form_after_requests):
            self.form_open = True
            self.form_requests = 0

    def _on_submit(self, target: str) -> None:
        if not self.form_open:
            return
        side = "BUY" if target.endswith("buy_market") else "SELL"
        prefix = target.rsplit(".", 1)[0]
        order = {
            "handle_id": self.handle_id,
            "instrument": self.selected,
            "side": side,
            "volume": self.fields.get(f"{prefix}.volume"),
            "stop_loss": self.fields.get(f"{prefix}.stop_loss"),
            "take_profit": self.fields.get(f"{prefix}.take_profit"),
            "comment": self.fields.get(f"{prefix}.comment"),
        }
        index = len(self.orders) + len(self.rejected)
        outcomes = list(self.scenario.trade_outcomes)
        outcome = outcomes[index] if index < len(outcomes) else TRADE_OK
        self.form_open = False
        for key in ("volume", "stop_loss", "take_profit", "comment"):
            self.fields.pop(f"{prefix}.{key}", None)
        if outcome == TRADE_OK:
            self.orders.append(order)
            self.result_dialog = True
        else:
            self.rejected.append(order)
            self._post(HostEvent(type=EVENT_TRADE_REJECTED, message=f"{side} rejected"))

    def _on_dismiss(self, action: ActionDescriptor) -> None:
        self.result_dialog = False

    def _on_probe(self, action: ActionDescriptor) -> None:
        probe = action.target
        if probe.endswith("market_watch.visible"):
            value = self.logged_in
        elif ".symbol.selected." in probe:
            value = self.selected is not None and probe.rsplit(".", 1)[-1].upper() == self.selected
        elif probe.endswith("order_form.visible"):
            value = self.form_open
        else:
            value = False
        self._post(HostEvent(type=EVENT_OBSERVATION, probe=probe, value=bool(value)))

    # ------------------------------------------------------------------

    def _post(self, event: HostEvent, delay: Optional[float] = None) -> None:
        delay = self.scenario.reply_delay_sec if delay is None else delay

        def deliver() -> None:
            if not self.destroyed:
                self._emit(event)

        loop = asyncio.get_running_loop()
        if delay and delay > 0:
            loop.call_later(delay, deliver)
        else:
            loop.call_soon(deliver)


class SimulatedHostFactory:
    """Host factory that keeps every host it built for inspection."""

    def __init__(self, scenario: Optional[SimulatedScenario] = None):
        self.scenario = scenario or SimulatedScenario()
        self.hosts: List[SimulatedHost] = []

    def __call__(self, handle_id: int) -> SimulatedHost:
        host = SimulatedHost(handle_id, self.scenario)
        self.hosts.append(host)
        return host

    @property
    def orders(self) -> List[Dict[str, Any]]:
        return [order for host in self.hosts for order in host.orders]
