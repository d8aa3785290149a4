#!/usr/bin/env python3
"""config_env YAML-first guard regressions."""

import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config_env import apply_env_overrides, get_path, set_path


def _set_env(updates: dict[str, str | None]) -> dict[str, str | None]:
    prev: dict[str, str | None] = {}
    for key, value in updates.items():
        prev[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return prev


def _restore_env(prev: dict[str, str | None]) -> None:
    for key, value in prev.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def test_protocol_timings_are_not_env_overridable() -> None:
    cfg = {"config": {"gate": {"resume_delay_sec": 35}, "filter": {"staleness_sec": 30}}}
    prev = _set_env(
        {
            "DISPATCH_RESUME_DELAY_SEC": "1",
            "DISPATCH_STALENESS_SEC": "999",
        }
    )
    try:
        out = apply_env_overrides(cfg)
    finally:
        _restore_env(prev)

    assert out["config"]["gate"]["resume_delay_sec"] == 35
    assert out["config"]["filter"]["staleness_sec"] == 30


def test_credentials_and_connectivity_are_overridable() -> None:
    cfg = {"config": {"sources": {"sse_enabled": False}, "accounts": {"mt5": {"login": ""}}}}
    prev = _set_env(
        {
            "DISPATCH_MT5_LOGIN": "5550001",
            "DISPATCH_MT5_PASSWORD": "hunter2",
            "DISPATCH_SIGNALS_URL": "https://signals.example",
            "DISPATCH_SSE_ENABLED": "true",
        }
    )
    try:
        out = apply_env_overrides(cfg)
    finally:
        _restore_env(prev)

    assert out["config"]["accounts"]["mt5"]["login"] == "5550001"
    assert out["config"]["accounts"]["mt5"]["password"] == "hunter2"
    assert out["config"]["sources"]["signals_url"] == "https://signals.example"
    assert out["config"]["sources"]["sse_enabled"] is True


def test_overrides_do_not_mutate_input() -> None:
    cfg = {"config": {"hosts": {"kind": "bridge"}}}
    prev = _set_env({"DISPATCH_HOST_KIND": "simulated"})
    try:
        out = apply_env_overrides(cfg)
    finally:
        _restore_env(prev)

    assert out["config"]["hosts"]["kind"] == "simulated"
    assert cfg["config"]["hosts"]["kind"] == "bridge"


def test_get_and_set_path() -> None:
    cfg: dict = {}
    set_path(cfg, ("config", "reporter", "journal_path"), "/tmp/x.jsonl")
    assert get_path(cfg, ("config", "reporter", "journal_path")) == "/tmp/x.jsonl"
    assert get_path(cfg, ("config", "missing", "key"), "fallback") == "fallback"
