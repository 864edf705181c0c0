"""
SignalDesk — Client core for a custodial signal-trading dashboard.

Confirms time-boxed trading signals, tracks each commitment through its
off-process settlement, and reconciles the outcome into wallet and history.
"""

from signaldesk.connectors import AsyncPlatformClient, PlatformConnector
from signaldesk.core import AsyncioScheduler, EventBus, ManualScheduler, get_event_bus
from signaldesk.models import (
    Commitment,
    CommitmentStatus,
    Outcome,
    Signal,
    WalletSnapshot,
)
from signaldesk.trading import LifecycleState, Phase, TradeLifecycleOrchestrator

__all__ = [
    # Remote API
    "AsyncPlatformClient",
    "PlatformConnector",
    # Runtime
    "AsyncioScheduler",
    "ManualScheduler",
    "EventBus",
    "get_event_bus",
    # Models
    "Commitment",
    "CommitmentStatus",
    "Outcome",
    "Signal",
    "WalletSnapshot",
    # Lifecycle
    "LifecycleState",
    "Phase",
    "TradeLifecycleOrchestrator",
]
