#!/usr/bin/env python3
"""Provider router for platform-based action provider selection."""

from __future__ import annotations

from typing import Dict, Optional

from .base import ActionProvider
from .providers import DEFAULT_EA_NAME, Mt4WebTerminalProvider, Mt5WebTerminalProvider


class ProviderRoutingError(RuntimeError):
    """Raised when no action provider serves a platform."""


class ProviderRouter:
    """Routes trade platforms (MT4/MT5) to action providers."""

    def __init__(
        self,
        providers: Optional[Dict[str, ActionProvider]] = None,
        ea_name: str = DEFAULT_EA_NAME,
        log=None,
    ) -> None:
        self.log = log
        if providers is None:
            providers = {
                "MT4": Mt4WebTerminalProvider(ea_name=ea_name),
                "MT5": Mt5WebTerminalProvider(ea_name=ea_name),
            }
        self._providers: Dict[str, ActionProvider] = {
            str(platform).strip().upper(): provider for platform, provider in providers.items()
        }

    @staticmethod
    def _key(platform) -> str:
        return str(getattr(platform, "value", platform) or "").strip().upper()

    def provider_for(self, platform) -> ActionProvider:
        key = self._key(platform)
        provider = self._providers.get(key)
        if provider is None:
            raise ProviderRoutingError(f"No action provider for platform '{key or platform}'")
        return provider

    def platforms(self):
        return sorted(self._providers.keys())
