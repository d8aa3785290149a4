"""Environment helpers for the signal dispatcher (loads .env + typed accessors)."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Optional, TypeVar

from dotenv import load_dotenv


# Load .env before any DISPATCH_* name is read.
load_dotenv(Path(__file__).parent / ".env")

T = TypeVar("T")

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def _raw(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def env_present(name: str) -> bool:
    """True when the variable is set to a non-blank value."""
    return _raw(name) is not None


def _typed(name: str, default: T, convert: Callable[[str], T]) -> T:
    raw = _raw(name)
    if raw is None:
        return default
    try:
        return convert(raw)
    except (TypeError, ValueError):
        return default


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = _raw(name)
    return default if raw is None else raw


def env_int(name: str, default: int) -> int:
    return _typed(name, default, int)


def env_float(name: str, default: float) -> float:
    return _typed(name, default, float)


def env_bool(name: str, default: bool) -> bool:
    raw = (_raw(name) or "").lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    return default


def env_path(name: str, default: Path, base: Optional[Path] = None) -> Path:
    """Path from env, expanded; relative values resolve against ``base``."""
    path = Path(env_str(name) or str(default)).expanduser()
    if not path.is_absolute() and base is not None:
        path = (base / path).resolve()
    return path


_DEFAULT_ROOT = Path(__file__).resolve().parent
_ROOT_PATH = env_path("DISPATCH_ROOT", _DEFAULT_ROOT, base=_DEFAULT_ROOT)

DISPATCH_ROOT = str(_ROOT_PATH)
DISPATCH_RUNTIME_DIR = str(env_path("DISPATCH_RUNTIME_DIR", _ROOT_PATH / "state", base=_ROOT_PATH))
DISPATCH_CONFIG_FILE = str(env_path("DISPATCH_CONFIG_FILE", _ROOT_PATH / "dispatch.yaml", base=_ROOT_PATH))


def ensure_runtime_dir() -> Path:
    """Create the runtime directory (logs, status journal) if needed."""
    path = Path(DISPATCH_RUNTIME_DIR)
    path.mkdir(parents=True, exist_ok=True)
    return path
