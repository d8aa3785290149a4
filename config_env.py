"""Apply env overrides to dispatch.yaml config."""

from __future__ import annotations

from copy import deepcopy
import os
from typing import Any, Dict, Tuple

from env_utils import env_bool, env_float, env_int, env_present, env_str
from logging_utils import get_logger


PathKey = Tuple[str, ...]

# (yaml path, env name, kind). Env overrides cover connectivity, credentials
# and runtime plumbing only; protocol timings and trade configuration come
# from dispatch.yaml.
ENV_OVERRIDES: Tuple[Tuple[PathKey, str, str], ...] = (
    (("config", "sources", "signals_url"), "DISPATCH_SIGNALS_URL", "str"),
    (("config", "sources", "phone_secret"), "DISPATCH_PHONE_SECRET", "str"),
    (("config", "sources", "sse_url"), "DISPATCH_SSE_URL", "str"),
    (("config", "sources", "sse_enabled"), "DISPATCH_SSE_ENABLED", "bool"),
    (("config", "sources", "background_enabled"), "DISPATCH_BACKGROUND_POLL_ENABLED", "bool"),
    (("config", "hosts", "bridge_url"), "DISPATCH_BRIDGE_URL", "str"),
    (("config", "hosts", "kind"), "DISPATCH_HOST_KIND", "str"),
    (("config", "hosts", "ea_name"), "DISPATCH_EA_NAME", "str"),
    (("config", "reporter", "journal_path"), "DISPATCH_STATUS_JOURNAL", "str"),
) + tuple(
    (("config", "accounts", platform, key), f"DISPATCH_{platform.upper()}_{key.upper()}", "str")
    for platform in ("mt4", "mt5")
    for key in ("login", "password", "server")
)

ALLOWED_ENV_OVERRIDES = frozenset(name for _, name, _ in ENV_OVERRIDES)

# Read directly by env_utils / logging_utils rather than mapped into YAML.
_PROCESS_ENV_NAMES = frozenset({
    "DISPATCH_ROOT",
    "DISPATCH_RUNTIME_DIR",
    "DISPATCH_CONFIG_FILE",
    "DISPATCH_LOG_LEVEL",
})

_warned_ignored = False


def _warn_ignored_once(names: set[str]) -> None:
    global _warned_ignored
    if _warned_ignored or not names:
        return
    _warned_ignored = True
    get_logger("dispatcher.config").warning(
        "Ignoring non-whitelisted DISPATCH env overrides (YAML-first mode): "
        + ", ".join(sorted(names))
    )


def get_path(cfg: Dict[str, Any], path: PathKey, default: Any = None) -> Any:
    cur: Any = cfg
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return default
        cur = cur[key]
    return cur


def set_path(cfg: Dict[str, Any], path: PathKey, value: Any) -> None:
    cur: Any = cfg
    for key in path[:-1]:
        if not isinstance(cur.get(key), dict):
            cur[key] = {}
        cur = cur[key]
    cur[path[-1]] = value


def _read(env_name: str, kind: str, current: Any) -> Any:
    if kind == "bool":
        return env_bool(env_name, bool(current))
    if kind == "int":
        return env_int(env_name, current if isinstance(current, int) else 0)
    if kind == "float":
        return env_float(env_name, float(current or 0.0))
    return env_str(env_name, "" if current is None else str(current))


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``config`` with whitelisted DISPATCH_* env applied."""
    cfg = deepcopy(config) if config else {}
    applied = []
    for path, env_name, kind in ENV_OVERRIDES:
        if not env_present(env_name):
            continue
        set_path(cfg, path, _read(env_name, kind, get_path(cfg, path)))
        applied.append(env_name)

    _warn_ignored_once({
        name
        for name in os.environ
        if name.startswith("DISPATCH_")
        and name not in ALLOWED_ENV_OVERRIDES
        and name not in _PROCESS_ENV_NAMES
        and env_present(name)
    })

    if applied:
        get_logger("dispatcher.config").debug(f"Applied env overrides: {', '.join(sorted(applied))}")
    return cfg
