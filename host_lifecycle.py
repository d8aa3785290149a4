#!/usr/bin/env python3
"""
Execution host lifecycle manager.

Every session gets a freshly created host with a new, monotonically
increasing handle id. Handles are never recycled: release always destroys
the host after a best-effort state wipe, even when the wipe times out.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import itertools
import time
from typing import Dict, List, Optional

from hosts.base import ActionDescriptor, ActionProvider, ExecutionHost, HostCreationError, HostFactory
from logging_utils import get_logger


DEFAULT_CLEAR_TIMEOUT_SEC = 2.0
DEFAULT_DESTROY_TIMEOUT_SEC = 5.0


@dataclass
class HostHandle:
    """Owned reference to one execution host for one session."""
    handle_id: int
    host: ExecutionHost
    provider: ActionProvider
    created_at: float = field(default_factory=time.time)
    tainted: bool = False
    released: bool = False
    instructions: int = 0

    async def load(self, target: str) -> None:
        self.tainted = True
        self.instructions += 1
        await self.host.load(target)

    async def send(self, action: ActionDescriptor) -> None:
        self.tainted = True
        self.instructions += 1
        await self.host.send(action)

    def on_message(self, callback) -> None:
        self.host.on_message(callback)


class HostLifecycleManager:
    """Creates, resets and destroys execution hosts."""

    def __init__(
        self,
        host_factory: HostFactory,
        clear_timeout_sec: float = DEFAULT_CLEAR_TIMEOUT_SEC,
        destroy_timeout_sec: float = DEFAULT_DESTROY_TIMEOUT_SEC,
    ):
        self.host_factory = host_factory
        self.clear_timeout_sec = float(clear_timeout_sec)
        self.destroy_timeout_sec = float(destroy_timeout_sec)
        self._ids = itertools.count(1)
        self._live: Dict[int, HostHandle] = {}
        self.log = get_logger("dispatcher.hosts")

    @property
    def live_handles(self) -> List[HostHandle]:
        return list(self._live.values())

    async def acquire(self, provider: ActionProvider) -> HostHandle:
        """Create a fresh host and wipe its state before first use.

        Raises:
            HostCreationError: creation, connection or the initial wipe failed
        """
        handle_id = next(self._ids)
        host: Optional[ExecutionHost] = None
        try:
            host = self.host_factory(handle_id)
            await host.open()
        except Exception as exc:
            self.log.error(f"Host {handle_id} creation failed: {exc}")
            if host is not None:
                await self._destroy(HostHandle(handle_id=handle_id, host=host, provider=provider))
            if isinstance(exc, HostCreationError):
                raise
            raise HostCreationError(str(exc)) from exc

        handle = HostHandle(handle_id=handle_id, host=host, provider=provider)
        self._live[handle_id] = handle

        if not await self._clear(handle):
            await self._destroy(handle)
            self._live.pop(handle_id, None)
            raise HostCreationError(f"host {handle_id} could not be cleared before use")

        self.log.info(f"Acquired host {handle_id} ({host.name}, {provider.platform or '?'})")
        return handle

    async def reset(self, handle: HostHandle) -> bool:
        """Best-effort wipe of a live handle's state. Returns True when sent."""
        if handle.released:
            self.log.warning(f"Reset ignored: host {handle.handle_id} already released")
            return False
        return await self._clear(handle)

    async def release(self, handle: Optional[HostHandle]) -> None:
        """Wipe (best effort) then destroy. Releasing twice is a no-op."""
        if handle is None or handle.released:
            return
        handle.released = True
        try:
            await self._clear(handle)
        finally:
            try:
                await asyncio.shield(self._destroy(handle))
            finally:
                self._live.pop(handle.handle_id, None)
        self.log.info(
            f"Released host {handle.handle_id} "
            f"(tainted={handle.tainted}, instructions={handle.instructions})"
        )

    async def shutdown(self) -> None:
        for handle in list(self._live.values()):
            await self.release(handle)

    async def _clear(self, handle: HostHandle) -> bool:
        async def wipe() -> None:
            for action in handle.provider.clear_state_actions():
                await handle.host.send(action)

        try:
            await asyncio.wait_for(wipe(), timeout=self.clear_timeout_sec)
            return True
        except asyncio.TimeoutError:
            self.log.warning(f"Host {handle.handle_id} clear timed out after {self.clear_timeout_sec:.1f}s")
        except Exception as exc:
            self.log.warning(f"Host {handle.handle_id} clear failed: {exc}")
        return False

    async def _destroy(self, handle: HostHandle) -> None:
        try:
            await asyncio.wait_for(handle.host.destroy(), timeout=self.destroy_timeout_sec)
        except asyncio.TimeoutError:
            self.log.error(f"Host {handle.handle_id} destroy timed out after {self.destroy_timeout_sec:.1f}s")
        except Exception as exc:
            self.log.error(f"Host {handle.handle_id} destroy failed: {exc}")
