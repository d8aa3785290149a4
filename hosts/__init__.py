"""Execution hosts, action providers and router."""

from .base import (
    ActionDescriptor,
    ActionProvider,
    ExecutionHost,
    HostCreationError,
    HostEvent,
    HostFactory,
    probe_action,
)
from .bridge import BridgeHost, BridgeHostFactory
from .providers import (
    DEFAULT_EA_NAME,
    MT4_TERMINAL_URL,
    MT5_BROKER_URLS,
    MT5_DEFAULT_SERVER,
    Mt4WebTerminalProvider,
    Mt5WebTerminalProvider,
)
from .router import ProviderRouter, ProviderRoutingError
from .simulated import SimulatedHost, SimulatedHostFactory, SimulatedScenario

__all__ = [
    "ActionDescriptor",
    "ActionProvider",
    "ExecutionHost",
    "HostCreationError",
    "HostEvent",
    "HostFactory",
    "probe_action",
    "BridgeHost",
    "BridgeHostFactory",
    "DEFAULT_EA_NAME",
    "MT4_TERMINAL_URL",
    "MT5_BROKER_URLS",
    "MT5_DEFAULT_SERVER",
    "Mt4WebTerminalProvider",
    "Mt5WebTerminalProvider",
    "ProviderRouter",
    "ProviderRoutingError",
    "SimulatedHost",
    "SimulatedHostFactory",
    "SimulatedScenario",
]
