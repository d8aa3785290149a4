#!/usr/bin/env python3
"""
Shared execution host interface and dataclasses.

An execution host is an opaque, sandboxed automation surface (a remote
web terminal in production). It is driven exclusively by message passing:
- ``load(target)`` points it at a target context
- ``send(action)`` is fire-and-forget
- inbound ``HostEvent`` messages report readiness, probe observations and
  diagnostics

``ActionProvider`` supplies the per-platform action vocabulary so the
executor state machine never encodes platform detail.
"""

from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass, field
import itertools
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from logging_utils import get_logger


# Inbound event types
EVENT_READY = "ready"
EVENT_STEP = "step"
EVENT_OBSERVATION = "observation"
EVENT_AUTHENTICATION_FAILED = "authentication_failed"
EVENT_TRADE_REJECTED = "trade_rejected"
EVENT_ERROR = "error"
EVENT_CLOSED = "closed"

# Action kinds understood by hosts
ACTION_NAVIGATE = "navigate"
ACTION_CLICK = "click"
ACTION_DOUBLE_CLICK = "double_click"
ACTION_CONTEXT_MENU = "context_menu"
ACTION_FILL = "fill"
ACTION_PRESS = "press"
ACTION_DISMISS = "dismiss"
ACTION_CLEAR_STATE = "clear_state"
ACTION_PROBE = "probe"

_action_ids = itertools.count(1)


class HostCreationError(RuntimeError):
    """Raised when an execution host cannot be created or opened."""


@dataclass
class ActionDescriptor:
    """One opaque instruction for an execution host.

    ``target`` is a vocabulary key the host maps onto its own surface; the
    core never interprets it.
    """
    kind: str
    target: str = ""
    value: Optional[str] = None
    action_id: int = field(default_factory=lambda: next(_action_ids))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "action_id": self.action_id,
            "kind": self.kind,
            "target": self.target,
        }
        if self.value is not None:
            data["value"] = self.value
        return data


def probe_action(probe: str) -> ActionDescriptor:
    """Ask the host to report the current value of an observable."""
    return ActionDescriptor(kind=ACTION_PROBE, target=probe)


@dataclass
class HostEvent:
    """Inbound message from an execution host."""
    type: str
    message: str = ""
    probe: Optional[str] = None
    value: Any = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HostEvent":
        ts = data.get("timestamp")
        try:
            ts = float(ts) if ts is not None else time.time()
        except (TypeError, ValueError):
            ts = time.time()
        return cls(
            type=str(data.get("type") or "").strip().lower(),
            message=str(data.get("message") or ""),
            probe=data.get("probe"),
            value=data.get("value"),
            timestamp=ts,
        )


HostListener = Callable[[HostEvent], Any]


class ExecutionHost(abc.ABC):
    """Base class for execution hosts."""

    def __init__(self, handle_id: int):
        self.handle_id = int(handle_id)
        self._listeners: List[HostListener] = []
        self.destroyed = False
        self.log = get_logger(f"dispatcher.host.{self.name.lower()}")

    @property
    def name(self) -> str:
        return self.__class__.__name__

    def on_message(self, callback: HostListener) -> None:
        self._listeners.append(callback)

    async def open(self) -> None:
        """Create the underlying surface. Raises HostCreationError."""
        return None

    @abc.abstractmethod
    async def load(self, target: str) -> None:
        """Point the host at a target context. Readiness arrives as an event."""
        raise NotImplementedError

    @abc.abstractmethod
    async def send(self, action: ActionDescriptor) -> None:
        """Deliver one instruction without waiting for its effect."""
        raise NotImplementedError

    @abc.abstractmethod
    async def destroy(self) -> None:
        """Tear the host down. Must be safe to call more than once."""
        raise NotImplementedError

    def _emit(self, event: HostEvent) -> None:
        for callback in list(self._listeners):
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    asyncio.ensure_future(result)
            except Exception as exc:
                self.log.error(f"Host listener error (handle {self.handle_id}): {exc}")


HostFactory = Callable[[int], ExecutionHost]


class ActionProvider(abc.ABC):
    """Per-platform action vocabulary and verification probes."""

    platform: str = ""

    @property
    def trade_tag(self) -> str:
        """Comment attached to placed orders ('' skips the field)."""
        return ""

    @abc.abstractmethod
    def load_target(self, credentials) -> str:
        """Target context the host should load for these credentials."""
        raise NotImplementedError

    @abc.abstractmethod
    def clear_state_actions(self) -> List[ActionDescriptor]:
        """Wipe storage, cached credentials and sessions on the host."""
        raise NotImplementedError

    @abc.abstractmethod
    def authenticate_actions(self, credentials) -> List[ActionDescriptor]:
        """Clear any prior session, fill credentials, submit."""
        raise NotImplementedError

    @property
    @abc.abstractmethod
    def authenticated_probe(self) -> str:
        """Observable that only exists once logged in."""
        raise NotImplementedError

    @abc.abstractmethod
    def locate_actions(self, instrument: str) -> List[ActionDescriptor]:
        raise NotImplementedError

    @abc.abstractmethod
    def locate_fallback_actions(self, instrument: str) -> List[ActionDescriptor]:
        """Alternate discovery used after a failed selection."""
        raise NotImplementedError

    @abc.abstractmethod
    def selected_probe(self, instrument: str) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    def open_order_actions(self, attempt: int) -> Tuple[str, List[ActionDescriptor]]:
        """Returns (discovery method name, actions) for the 1-based attempt."""
        raise NotImplementedError

    @property
    @abc.abstractmethod
    def order_form_probe(self) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    def set_field_actions(self, field_name: str, value: str) -> List[ActionDescriptor]:
        raise NotImplementedError

    @abc.abstractmethod
    def submit_actions(self, direction) -> List[ActionDescriptor]:
        raise NotImplementedError

    @abc.abstractmethod
    def confirm_actions(self) -> List[ActionDescriptor]:
        """Best-effort dismissal of a post-submit dialog."""
        raise NotImplementedError
