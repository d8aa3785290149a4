#!/usr/bin/env python3
"""
dispatch.yaml loader and typed configuration objects.

YAML-first: values come from dispatch.yaml, with a small whitelist of env
overrides applied by config_env. Every loader falls back to sane defaults so
unit tests and dry runs work without a config file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from config_env import apply_env_overrides, get_path
from env_utils import DISPATCH_CONFIG_FILE, DISPATCH_RUNTIME_DIR
from logging_utils import get_logger
from signal_models import Direction


_CONFIG_CACHE: Dict[str, Dict[str, Any]] = {}


def load_dispatch_config(path: Optional[str] = None, *, refresh: bool = False) -> Dict[str, Any]:
    """Load dispatch.yaml (cached per path) and apply env overrides."""
    cfg_path = str(path or DISPATCH_CONFIG_FILE)
    if not refresh and cfg_path in _CONFIG_CACHE:
        return _CONFIG_CACHE[cfg_path]
    raw: Dict[str, Any] = {}
    p = Path(cfg_path)
    if p.exists():
        try:
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            get_logger("dispatcher.config").error(f"Invalid YAML in {cfg_path}: {exc}")
            raw = {}
        if not isinstance(raw, dict):
            raw = {}
    cfg = apply_env_overrides(raw)
    _CONFIG_CACHE[cfg_path] = cfg
    return cfg


def _section(cfg: Optional[Mapping[str, Any]], *path: str) -> Dict[str, Any]:
    if cfg is None:
        cfg = load_dispatch_config()
    value = get_path(dict(cfg), ("config",) + tuple(path), {})
    return value if isinstance(value, dict) else {}


def _as_float(value: Any, default: float, *, min_value: Optional[float] = None) -> float:
    try:
        val = float(value) if value is not None else float(default)
    except (TypeError, ValueError):
        val = float(default)
    if min_value is not None and val < float(min_value):
        return float(default)
    return val


def _as_int(value: Any, default: int, *, min_value: Optional[int] = None) -> int:
    try:
        val = int(value) if value is not None else int(default)
    except (TypeError, ValueError):
        val = int(default)
    if min_value is not None and val < int(min_value):
        return int(default)
    return val


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in {"1", "true", "yes", "y", "on"}:
            return True
        if raw in {"0", "false", "no", "n", "off"}:
            return False
    return bool(default)


# ============================================================================
# Component configs
# ============================================================================

@dataclass
class FilterConfig:
    """Dedup & staleness filter knobs."""
    staleness_sec: float = 30.0
    ledger_capacity: int = 1000
    ledger_retain: int = 500

    @classmethod
    def load(cls, cfg: Optional[Mapping[str, Any]] = None) -> "FilterConfig":
        sec = _section(cfg, "filter")
        capacity = _as_int(sec.get("ledger_capacity"), 1000, min_value=1)
        retain = _as_int(sec.get("ledger_retain"), 500, min_value=1)
        return cls(
            staleness_sec=_as_float(sec.get("staleness_sec"), 30.0, min_value=0.0),
            ledger_capacity=capacity,
            ledger_retain=min(retain, capacity),
        )


@dataclass
class GateConfig:
    """Execution gate knobs."""
    resume_delay_sec: float = 35.0
    resume_immediately_on_clean_failure: bool = True
    instrument_cooldown_sec: float = 45.0
    instrument_cooldown_max_entries: int = 100

    @classmethod
    def load(cls, cfg: Optional[Mapping[str, Any]] = None) -> "GateConfig":
        sec = _section(cfg, "gate")
        return cls(
            resume_delay_sec=_as_float(sec.get("resume_delay_sec"), 35.0, min_value=0.0),
            resume_immediately_on_clean_failure=_as_bool(
                sec.get("resume_immediately_on_clean_failure"), True
            ),
            instrument_cooldown_sec=_as_float(sec.get("instrument_cooldown_sec"), 45.0, min_value=0.0),
            instrument_cooldown_max_entries=_as_int(
                sec.get("instrument_cooldown_max_entries"), 100, min_value=2
            ),
        )


@dataclass
class StepPolicy:
    """Retry policy for one executor step.

    attempts: attempt ceiling
    timeout_sec: per-attempt verification window
    interval_sec: polling interval inside the window
    """
    attempts: int
    timeout_sec: float
    interval_sec: float

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], default: "StepPolicy") -> "StepPolicy":
        return cls(
            attempts=_as_int(raw.get("attempts"), default.attempts, min_value=1),
            timeout_sec=_as_float(raw.get("timeout_sec"), default.timeout_sec, min_value=0.0),
            interval_sec=_as_float(raw.get("interval_sec"), default.interval_sec, min_value=0.0),
        )


DEFAULT_STEP_POLICIES: Dict[str, StepPolicy] = {
    "initializing": StepPolicy(attempts=2, timeout_sec=30.0, interval_sec=0.5),
    # Slowest surface: login round-trips through the broker server.
    "authenticating": StepPolicy(attempts=3, timeout_sec=45.0, interval_sec=1.0),
    "locating_instrument": StepPolicy(attempts=3, timeout_sec=8.0, interval_sec=0.5),
    "order_surface": StepPolicy(attempts=6, timeout_sec=4.0, interval_sec=0.5),
}


@dataclass
class ProtocolDelays:
    """Settling delays required by the remote surface between mutations."""
    post_load_sec: float = 3.0
    post_auth_sec: float = 2.0
    post_select_sec: float = 1.0
    first_trade_render_sec: float = 1.5
    field_settle_sec: float = 0.3
    params_settle_sec: float = 1.5
    submit_wait_sec: float = 2.5
    confirm_wait_sec: float = 1.0
    between_trades_sec: float = 2.5

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "ProtocolDelays":
        base = cls()
        values = {}
        for name in base.__dataclass_fields__:
            values[name] = _as_float(raw.get(name), getattr(base, name), min_value=0.0)
        return cls(**values)

    @classmethod
    def zero(cls) -> "ProtocolDelays":
        return cls(**{name: 0.0 for name in cls.__dataclass_fields__})


@dataclass
class ExecutorConfig:
    """Automation step executor configuration."""
    session_timeout_sec: float = 240.0
    steps: Dict[str, StepPolicy] = field(default_factory=lambda: dict(DEFAULT_STEP_POLICIES))
    delays: ProtocolDelays = field(default_factory=ProtocolDelays)

    def policy(self, name: str) -> StepPolicy:
        return self.steps.get(name) or DEFAULT_STEP_POLICIES[name]

    @classmethod
    def load(cls, cfg: Optional[Mapping[str, Any]] = None) -> "ExecutorConfig":
        sec = _section(cfg, "executor")
        raw_steps = sec.get("steps") if isinstance(sec.get("steps"), dict) else {}
        steps = {
            name: StepPolicy.from_mapping(raw_steps.get(name) or {}, default)
            for name, default in DEFAULT_STEP_POLICIES.items()
        }
        raw_delays = sec.get("delays") if isinstance(sec.get("delays"), dict) else {}
        return cls(
            session_timeout_sec=_as_float(sec.get("session_timeout_sec"), 240.0, min_value=1.0),
            steps=steps,
            delays=ProtocolDelays.from_mapping(raw_delays),
        )


@dataclass
class HostsConfig:
    kind: str = "bridge"
    bridge_url: str = "ws://127.0.0.1:8765/automation"
    clear_timeout_sec: float = 2.0
    destroy_timeout_sec: float = 5.0
    ea_name: str = "AutoTrader"

    @classmethod
    def load(cls, cfg: Optional[Mapping[str, Any]] = None) -> "HostsConfig":
        sec = _section(cfg, "hosts")
        return cls(
            kind=str(sec.get("kind") or "bridge").strip().lower(),
            bridge_url=str(sec.get("bridge_url") or cls.bridge_url).strip(),
            clear_timeout_sec=_as_float(sec.get("clear_timeout_sec"), 2.0, min_value=0.0),
            destroy_timeout_sec=_as_float(sec.get("destroy_timeout_sec"), 5.0, min_value=0.0),
            ea_name=str(sec.get("ea_name") or "AutoTrader").strip() or "AutoTrader",
        )


@dataclass
class SourcesConfig:
    signals_url: str = "http://127.0.0.1:8081"
    phone_secret: str = ""
    foreground_interval_sec: float = 5.0
    background_interval_sec: float = 10.0
    background_enabled: bool = True
    sse_enabled: bool = False
    sse_url: str = ""
    request_timeout_sec: float = 10.0

    @classmethod
    def load(cls, cfg: Optional[Mapping[str, Any]] = None) -> "SourcesConfig":
        sec = _section(cfg, "sources")
        return cls(
            signals_url=str(sec.get("signals_url") or cls.signals_url).strip(),
            phone_secret=str(sec.get("phone_secret") or "").strip(),
            foreground_interval_sec=_as_float(sec.get("foreground_interval_sec"), 5.0, min_value=0.1),
            background_interval_sec=_as_float(sec.get("background_interval_sec"), 10.0, min_value=0.1),
            background_enabled=_as_bool(sec.get("background_enabled"), True),
            sse_enabled=_as_bool(sec.get("sse_enabled"), False),
            sse_url=str(sec.get("sse_url") or "").strip(),
            request_timeout_sec=_as_float(sec.get("request_timeout_sec"), 10.0, min_value=0.1),
        )


@dataclass
class ReporterConfig:
    journal_path: str = ""
    heartbeat_enabled: bool = True
    heartbeat_interval_sec: float = 2.0

    @classmethod
    def load(cls, cfg: Optional[Mapping[str, Any]] = None) -> "ReporterConfig":
        sec = _section(cfg, "reporter")
        journal = str(sec.get("journal_path") or "").strip()
        if not journal:
            journal = str(Path(DISPATCH_RUNTIME_DIR) / "status_events.jsonl")
        return cls(
            journal_path=journal,
            heartbeat_enabled=_as_bool(sec.get("heartbeat_enabled"), True),
            heartbeat_interval_sec=_as_float(sec.get("heartbeat_interval_sec"), 2.0, min_value=0.1),
        )


# ============================================================================
# Trade configuration + credentials lookups
# ============================================================================

class DirectionPolicy(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    BOTH = "BOTH"

    def allows(self, direction: Direction) -> bool:
        return self is DirectionPolicy.BOTH or self.value == direction.value


class Platform(str, Enum):
    MT4 = "MT4"
    MT5 = "MT5"


@dataclass(frozen=True)
class TradeConfig:
    """Resolved execution parameters for one instrument."""
    instrument: str
    lot_size: str
    order_count: int
    direction_policy: DirectionPolicy = DirectionPolicy.BOTH
    platform: Platform = Platform.MT5

    @classmethod
    def from_mapping(cls, instrument: str, raw: Mapping[str, Any]) -> "TradeConfig":
        policy_raw = str(raw.get("direction") or raw.get("direction_policy") or "BOTH").strip().upper()
        platform_raw = str(raw.get("platform") or "MT5").strip().upper()
        try:
            policy = DirectionPolicy(policy_raw)
        except ValueError:
            raise ValueError(f"{instrument}: invalid direction policy {policy_raw!r}") from None
        try:
            platform = Platform(platform_raw)
        except ValueError:
            raise ValueError(f"{instrument}: invalid platform {platform_raw!r}") from None
        return cls(
            instrument=instrument,
            lot_size=str(raw.get("lot_size") or raw.get("lotSize") or "0.01").strip(),
            order_count=_as_int(
                raw.get("order_count", raw.get("numberOfTrades")), 1, min_value=1
            ),
            direction_policy=policy,
            platform=platform,
        )


class TradeConfigLookup:
    """Synchronous, read-only instrument → TradeConfig lookup."""

    def resolve(self, instrument: str) -> Optional[TradeConfig]:
        raise NotImplementedError


class YamlTradeConfigLookup(TradeConfigLookup):
    """TradeConfig lookup backed by the ``config.symbols`` section."""

    def __init__(self, symbols: Mapping[str, Any]):
        self.log = get_logger("dispatcher.config")
        self._configs: Dict[str, TradeConfig] = {}
        for name, raw in (symbols or {}).items():
            if not name or not isinstance(raw, Mapping):
                continue
            try:
                tc = TradeConfig.from_mapping(str(name).strip(), raw)
            except ValueError as exc:
                self.log.warning(f"Skipping trade config: {exc}")
                continue
            self._configs[tc.instrument.upper()] = tc

    @classmethod
    def load(cls, cfg: Optional[Mapping[str, Any]] = None) -> "YamlTradeConfigLookup":
        return cls(_section(cfg, "symbols"))

    def resolve(self, instrument: str) -> Optional[TradeConfig]:
        return self._configs.get(str(instrument or "").strip().upper())

    def instruments(self) -> Tuple[str, ...]:
        return tuple(tc.instrument for tc in self._configs.values())


@dataclass(frozen=True)
class AccountCredentials:
    login: str
    password: str = field(repr=False)
    server: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.login and self.password)


class StaticCredentialsLookup:
    """Platform → AccountCredentials from the ``config.accounts`` section."""

    def __init__(self, accounts: Mapping[str, Any]):
        self._accounts: Dict[Platform, AccountCredentials] = {}
        for key, raw in (accounts or {}).items():
            if not isinstance(raw, Mapping):
                continue
            try:
                platform = Platform(str(key).strip().upper())
            except ValueError:
                continue
            self._accounts[platform] = AccountCredentials(
                login=str(raw.get("login") or "").strip(),
                password=str(raw.get("password") or ""),
                server=str(raw.get("server") or "").strip(),
            )

    @classmethod
    def load(cls, cfg: Optional[Mapping[str, Any]] = None) -> "StaticCredentialsLookup":
        return cls(_section(cfg, "accounts"))

    def resolve(self, platform: Platform) -> Optional[AccountCredentials]:
        creds = self._accounts.get(platform)
        if creds is None or not creds.complete:
            return None
        return creds
