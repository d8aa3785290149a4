#!/usr/bin/env python3
"""
MetaTrader web-terminal action providers.

Targets are opaque vocabulary keys (``mt5.login.submit`` ...). The bridge
host maps them onto the live terminal; the simulated host understands them
directly. Nothing outside this module knows what a terminal looks like.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple
from urllib.parse import urlencode

from signal_models import Direction

from .base import (
    ACTION_CLEAR_STATE,
    ACTION_CLICK,
    ACTION_CONTEXT_MENU,
    ACTION_DISMISS,
    ACTION_DOUBLE_CLICK,
    ACTION_FILL,
    ACTION_PRESS,
    ActionDescriptor,
    ActionProvider,
)


DEFAULT_EA_NAME = "AutoTrader"

MT5_DEFAULT_SERVER = "RazorMarkets-Live"
MT5_BROKER_URLS: Dict[str, str] = {
    "RazorMarkets-Live": "https://webtrader.razormarkets.co.za/terminal/",
    "AccuMarkets-Live": "https://webterminal.accumarkets.co.za/terminal/",
    "RockWest-Server": "https://webtrader.rock-west.com/terminal",
    "MaonoGlobalMarkets-Live": "https://web.maonoglobalmarkets.com/terminal",
    "Deriv-Demo": "https://mt5-demo-web.deriv.com/terminal",
    "DerivSVG-Server": "https://mt5-real01-web-svg.deriv.com/terminal",
    "DerivSVG-Server-02": "https://mt5-real02-web-svg.deriv.com/terminal",
    "DerivSVG-Server-03": "https://mt5-real03-web-svg.deriv.com/terminal",
    "DerivBVI-Server": "https://mt5-real01-web-bvi.deriv.com/terminal",
    "DerivBVI-Server-02": "https://mt5-real02-web-bvi.deriv.com/terminal",
    "DerivBVI-Server-03": "https://mt5-real03-web-bvi.deriv.com/terminal",
    "RocketX-Live": "https://webtrader.rocketx.io:1950/terminal",
}

MT4_TERMINAL_URL = "https://metatraderweb.app/trade?version=4"

# Ordered order-dialog discovery methods; attempt k uses entry (k-1) % len.
ORDER_SURFACE_METHODS: Tuple[str, ...] = (
    "shortcut",
    "context_menu",
    "order_button",
    "toolbar",
    "chart_double_click",
    "direct_field",
)

# Order form fields in the order they are filled.
ORDER_FIELDS: Tuple[str, ...] = ("volume", "stop_loss", "take_profit", "comment")


def _act(kind: str, target: str = "", value: Optional[str] = None) -> ActionDescriptor:
    return ActionDescriptor(kind=kind, target=target, value=value)


class WebTerminalProvider(ActionProvider):
    """Shared MetaTrader web-terminal vocabulary.

    Subclasses set ``prefix`` and fill in login and discovery specifics.
    """

    prefix = ""

    def __init__(self, ea_name: str = DEFAULT_EA_NAME):
        self.ea_name = ea_name or DEFAULT_EA_NAME

    @property
    def trade_tag(self) -> str:
        return self.ea_name

    def key(self, *parts: str) -> str:
        return ".".join((self.prefix,) + parts)

    # -- state --------------------------------------------------------------

    def clear_state_actions(self) -> List[ActionDescriptor]:
        return [
            _act(ACTION_CLEAR_STATE, "local_storage"),
            _act(ACTION_CLEAR_STATE, "session_storage"),
            _act(ACTION_CLEAR_STATE, "indexed_db"),
            _act(ACTION_CLEAR_STATE, "cache_storage"),
            _act(ACTION_CLEAR_STATE, "service_workers"),
            _act(ACTION_CLEAR_STATE, "cookies"),
        ]

    # -- authentication -----------------------------------------------------

    @property
    def authenticated_probe(self) -> str:
        return self.key("market_watch", "visible")

    # -- instrument ---------------------------------------------------------

    def locate_actions(self, instrument: str) -> List[ActionDescriptor]:
        return [
            _act(ACTION_CLICK, self.key("symbol_search", "field")),
            _act(ACTION_FILL, self.key("symbol_search", "field"), instrument),
            _act(ACTION_CLICK, self.key("symbol_search", "result"), instrument),
        ]

    def selected_probe(self, instrument: str) -> str:
        return self.key("symbol", "selected", instrument.upper())

    # -- orders -------------------------------------------------------------

    def open_order_actions(self, attempt: int) -> Tuple[str, List[ActionDescriptor]]:
        method = ORDER_SURFACE_METHODS[(max(1, int(attempt)) - 1) % len(ORDER_SURFACE_METHODS)]
        return method, self._order_surface_actions(method)

    def _order_surface_actions(self, method: str) -> List[ActionDescriptor]:
        if method == "shortcut":
            return [_act(ACTION_PRESS, self.key("chart"), "F9")]
        if method == "context_menu":
            return [
                _act(ACTION_CONTEXT_MENU, self.key("chart")),
                _act(ACTION_CLICK, self.key("context_menu", "new_order")),
            ]
        if method == "order_button":
            return [_act(ACTION_CLICK, self.key("order_button"))]
        if method == "toolbar":
            return [_act(ACTION_CLICK, self.key("toolbar", "new_order"))]
        if method == "chart_double_click":
            return [_act(ACTION_DOUBLE_CLICK, self.key("chart"))]
        return [_act(ACTION_CLICK, self.key("order_form", "volume"))]

    @property
    def order_form_probe(self) -> str:
        return self.key("order_form", "visible")

    def set_field_actions(self, field_name: str, value: str) -> List[ActionDescriptor]:
        if field_name not in ORDER_FIELDS:
            raise ValueError(f"unknown order field {field_name!r}")
        target = self.key("order_form", field_name)
        return [
            _act(ACTION_FILL, target, ""),
            _act(ACTION_FILL, target, str(value)),
        ]

    def submit_actions(self, direction: Direction) -> List[ActionDescriptor]:
        side = Direction(direction).value.lower()
        return [_act(ACTION_CLICK, self.key("order_form", f"{side}_market"))]

    def confirm_actions(self) -> List[ActionDescriptor]:
        return [_act(ACTION_DISMISS, self.key("order_result", "ok"))]


class Mt5WebTerminalProvider(WebTerminalProvider):
    platform = "MT5"
    prefix = "mt5"

    def __init__(self, ea_name: str = DEFAULT_EA_NAME, broker_urls: Optional[Dict[str, str]] = None):
        super().__init__(ea_name)
        self.broker_urls = dict(broker_urls or MT5_BROKER_URLS)

    def load_target(self, credentials) -> str:
        server = (getattr(credentials, "server", "") or MT5_DEFAULT_SERVER).strip()
        base = self.broker_urls.get(server) or self.broker_urls[MT5_DEFAULT_SERVER]
        login = getattr(credentials, "login", "") or ""
        query = urlencode({"login": login, "server": server})
        sep = "&" if "?" in base else "?"
        return f"{base}{sep}{query}"

    def authenticate_actions(self, credentials) -> List[ActionDescriptor]:
        return [
            _act(ACTION_CLICK, self.key("disclaimer", "accept")),
            _act(ACTION_CLICK, self.key("connection", "remove_existing")),
            _act(ACTION_FILL, self.key("login", "account"), str(credentials.login)),
            _act(ACTION_FILL, self.key("login", "password"), str(credentials.password)),
            _act(ACTION_CLICK, self.key("login", "submit")),
        ]

    def locate_fallback_actions(self, instrument: str) -> List[ActionDescriptor]:
        return [
            _act(ACTION_CLICK, self.key("economic_calendar", "toggle")),
            _act(ACTION_CLICK, self.key("market_watch", "toggle")),
        ] + self.locate_actions(instrument) + [
            _act(ACTION_DOUBLE_CLICK, self.key("symbol_search", "result"), instrument),
        ]


class Mt4WebTerminalProvider(WebTerminalProvider):
    platform = "MT4"
    prefix = "mt4"

    def __init__(self, ea_name: str = DEFAULT_EA_NAME, terminal_url: str = MT4_TERMINAL_URL):
        super().__init__(ea_name)
        self.terminal_url = terminal_url

    def load_target(self, credentials) -> str:
        query = urlencode({
            "login": getattr(credentials, "login", "") or "",
            "trade_server": getattr(credentials, "server", "") or "",
        })
        return f"{self.terminal_url}&{query}"

    def authenticate_actions(self, credentials) -> List[ActionDescriptor]:
        return [
            _act(ACTION_CLICK, self.key("menu", "file")),
            _act(ACTION_CLICK, self.key("menu", "login_to_trade_account")),
            _act(ACTION_FILL, self.key("login", "account"), str(credentials.login)),
            _act(ACTION_FILL, self.key("login", "password"), str(credentials.password)),
            _act(ACTION_FILL, self.key("login", "server"), str(credentials.server or "")),
            _act(ACTION_CLICK, self.key("login", "submit")),
        ]

    def locate_fallback_actions(self, instrument: str) -> List[ActionDescriptor]:
        return [
            _act(ACTION_CONTEXT_MENU, self.key("market_watch", "table")),
            _act(ACTION_CLICK, self.key("market_watch", "show_all")),
            _act(ACTION_CLICK, self.key("market_watch", "row"), instrument),
        ]
