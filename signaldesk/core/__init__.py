"""
SignalDesk Core — Runtime primitives shared by the trade lifecycle.

  - Scheduler: timer abstraction (``AsyncioScheduler`` for real time,
    ``ManualScheduler`` for virtual time)
  - EventBus: typed pub/sub between the lifecycle and its views
"""

from signaldesk.core.bus import BusMessage, EventBus, get_event_bus, reset_event_bus
from signaldesk.core.scheduler import (
    AsyncioScheduler,
    ManualScheduler,
    Scheduler,
    TimerHandle,
)

__all__ = [
    # Timers
    "Scheduler",
    "TimerHandle",
    "AsyncioScheduler",
    "ManualScheduler",
    # Bus
    "BusMessage",
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
