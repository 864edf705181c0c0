"""
EventBus — Typed in-process pub/sub between the trade lifecycle and its views.

The orchestrator never calls into UI code; it publishes events and any
binding (CLI renderer, dashboard adapter, test) subscribes:

  - ``trade.phase_changed``   phase transition with a state summary
  - ``trade.countdown``       remaining seconds while WAITING
  - ``trade.catalog_updated`` a fresh signal list (or a load failure)
  - ``trade.result``          a terminal outcome, published exactly once
  - ``trade.poll_exhausted``  polling stopped within its bound, still PENDING
  - ``trade.confirm_failed``  inline confirmation error

Key features:
  - Typed messages via ``BusMessage`` (Pydantic)
  - Wildcard topic matching (``"trade.*"`` → ``"trade.result"``)
  - Dead-letter isolation: handler errors never block others
  - Per-topic ring-buffer history for replay/debug
  - ``wait_for()`` to await the next message on a topic

Usage::

    bus = get_event_bus()

    async def on_result(msg: BusMessage) -> None:
        print(msg.payload["outcome"])

    sub = bus.subscribe("trade.result", on_result)
    await bus.publish("trade.result", {"outcome": "PROFIT"}, sender="reconciler")
    bus.unsubscribe(sub)
"""

from __future__ import annotations

import asyncio
import fnmatch
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

import structlog
from opentelemetry import trace
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  BusMessage — Typed envelope for bus messages
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class BusMessage(BaseModel):
    """
    Typed message envelope for the Event Bus.

    Attributes:
        topic: The topic this message was published to.
        sender: Identifier of the publishing component.
        payload: Arbitrary data payload.
        timestamp: UTC ISO-8601 timestamp of publication.
        correlation_id: Id for tracing related messages (e.g. a commitment id).
    """

    topic: str
    sender: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    correlation_id: str = Field(default_factory=lambda: uuid4().hex[:16])


MessageHandler = Callable[[BusMessage], Awaitable[None]]


@dataclass(frozen=True)
class Subscription:
    """
    Opaque handle returned by ``EventBus.subscribe()``.

    Pass this to ``EventBus.unsubscribe()`` to remove the subscription.
    """

    id: str = field(default_factory=lambda: uuid4().hex[:12])
    topic_pattern: str = ""
    handler: MessageHandler | None = field(default=None, repr=False)


_DEFAULT_HISTORY_LIMIT = 100


class EventBus:
    """
    In-memory event bus.

    Features:
      - **Topic wildcards**: ``"trade.*"`` matches ``"trade.result"``
      - **Dead-letter logging**: handler exceptions are logged, not propagated
      - **Per-topic history**: ring buffer for replay/debug
      - **Concurrent dispatch**: handlers run via ``asyncio.gather``
    """

    def __init__(self, *, history_limit: int = _DEFAULT_HISTORY_LIMIT) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._history: dict[str, deque[BusMessage]] = {}
        self._history_limit = history_limit
        self._stats = {"published": 0, "delivered": 0, "errors": 0}

    # ── Subscribe ────────────────────────────────────────────────────

    def subscribe(self, topic_pattern: str, handler: MessageHandler) -> Subscription:
        """
        Register an async handler for messages matching a topic pattern.

        Args:
            topic_pattern: Topic string, may include wildcards
                           (``*`` matches anything, ``?`` matches one char).
            handler: Async callable ``(BusMessage) -> None``.
        """
        sub = Subscription(topic_pattern=topic_pattern, handler=handler)
        self._subscriptions[sub.id] = sub
        logger.debug("bus_subscribed", sub_id=sub.id, topic_pattern=topic_pattern)
        return sub

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove a subscription. Returns ``True`` if it was registered."""
        removed = self._subscriptions.pop(subscription.id, None)
        if removed:
            logger.debug("bus_unsubscribed", sub_id=subscription.id)
        return removed is not None

    # ── Publish ──────────────────────────────────────────────────────

    async def publish(
        self,
        topic: str,
        payload: dict[str, Any] | None = None,
        *,
        sender: str = "",
        correlation_id: str | None = None,
    ) -> BusMessage:
        """
        Publish a typed message to a topic.

        Builds a ``BusMessage``, records it in history, then dispatches to
        all handlers whose ``topic_pattern`` matches.
        """
        msg = BusMessage(
            topic=topic,
            sender=sender,
            payload=payload or {},
            **({"correlation_id": correlation_id} if correlation_id else {}),
        )

        if topic not in self._history:
            self._history[topic] = deque(maxlen=self._history_limit)
        self._history[topic].append(msg)
        self._stats["published"] += 1

        matching: list[MessageHandler] = [
            sub.handler
            for sub in list(self._subscriptions.values())
            if sub.handler is not None and fnmatch.fnmatch(topic, sub.topic_pattern)
        ]

        with tracer.start_as_current_span(
            "bus.publish",
            attributes={
                "topic": topic,
                "sender": sender,
                "subscribers": len(matching),
                "correlation_id": msg.correlation_id,
            },
        ) as span:
            if not matching:
                logger.debug("bus_no_subscribers", topic=topic, sender=sender)
                span.set_attribute("delivered", 0)
                return msg

            results = await asyncio.gather(
                *(self._safe_invoke(handler, msg) for handler in matching),
                return_exceptions=True,
            )

            delivered = sum(1 for r in results if r is None)
            errors = len(results) - delivered
            self._stats["delivered"] += delivered
            self._stats["errors"] += errors

            logger.debug(
                "bus_published",
                topic=topic,
                sender=sender,
                handlers=len(matching),
                delivered=delivered,
                errors=errors,
            )
            span.set_attribute("delivered", delivered)
            span.set_attribute("errors", errors)

        return msg

    async def wait_for(self, topic_pattern: str, *, timeout: float | None = None) -> BusMessage:
        """Wait for the next message matching ``topic_pattern``.

        Raises:
            asyncio.TimeoutError: If nothing arrives within ``timeout`` seconds.
        """
        future: asyncio.Future[BusMessage] = asyncio.get_running_loop().create_future()

        async def _capture(msg: BusMessage) -> None:
            if not future.done():
                future.set_result(msg)

        sub = self.subscribe(topic_pattern, _capture)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            self.unsubscribe(sub)

    # ── History ──────────────────────────────────────────────────────

    def history(self, topic: str, *, limit: int = 50) -> list[BusMessage]:
        """Return recent messages on an exact topic, newest first."""
        buf = self._history.get(topic)
        if buf is None:
            return []
        return list(buf)[-limit:][::-1]

    # ── Introspection ────────────────────────────────────────────────

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    @property
    def stats(self) -> dict[str, int]:
        """Bus-level statistics (published, delivered, errors)."""
        return dict(self._stats)

    def clear(self) -> None:
        """Remove all subscriptions and history. Useful for tests."""
        self._subscriptions.clear()
        self._history.clear()
        self._stats = {"published": 0, "delivered": 0, "errors": 0}
        logger.debug("bus_cleared")

    # ── Internals ────────────────────────────────────────────────────

    @staticmethod
    async def _safe_invoke(handler: MessageHandler, msg: BusMessage) -> None:
        """
        Invoke a handler with dead-letter isolation.

        If the handler raises, the exception is logged but not propagated
        to other subscribers.
        """
        with tracer.start_as_current_span(
            "bus.handler",
            attributes={
                "topic": msg.topic,
                "handler": getattr(handler, "__name__", str(handler)),
            },
        ) as span:
            try:
                await handler(msg)
            except Exception as exc:
                logger.error(
                    "bus_handler_error",
                    topic=msg.topic,
                    sender=msg.sender,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                span.record_exception(exc)
                span.set_status(trace.StatusCode.ERROR, str(exc))
                raise  # Re-raise so asyncio.gather can collect it

    def __repr__(self) -> str:
        return f"EventBus(subscriptions={self.subscription_count}, stats={self._stats})"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Singleton
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get or create the global EventBus singleton."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus singleton. For testing only."""
    global _event_bus
    if _event_bus is not None:
        _event_bus.clear()
    _event_bus = None


__all__ = [
    "BusMessage",
    "EventBus",
    "MessageHandler",
    "Subscription",
    "get_event_bus",
    "reset_event_bus",
]
