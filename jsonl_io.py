#!/usr/bin/env python3
"""JSONL journal helpers for status events."""

from __future__ import annotations

from collections import deque
import json
from pathlib import Path
from typing import Any, Dict, List

from logging_utils import get_logger


def append_jsonl(path: str, record: Dict[str, Any]) -> bool:
    """Best-effort JSONL append with parent directory creation.

    Returns False (and logs) instead of raising on I/O errors.
    """
    try:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        with p.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, separators=(",", ":"), ensure_ascii=False, default=str) + "\n")
        return True
    except (OSError, TypeError, ValueError) as exc:
        get_logger("dispatcher.journal").debug(f"Journal append to {path} failed: {exc}")
        return False


def read_jsonl_tail(path: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Last ``limit`` well-formed records of a JSONL file (missing file → [])."""
    p = Path(path)
    if not p.exists():
        return []
    tail: deque = deque(maxlen=max(1, int(limit)))
    with p.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(record, dict):
                tail.append(record)
    return list(tail)
