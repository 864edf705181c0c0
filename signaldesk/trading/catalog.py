"""
SignalCatalog — The list of signals the account may confirm right now.

Fetched on every entry into READY and refreshed on an interval while
READY. A signal's ``time_remaining`` is a server figure as of the fetch;
it is counted down locally for at most one refresh interval and then
treated as stale until the next fetch replaces it.
"""

from __future__ import annotations

import structlog

from signaldesk.core.scheduler import Scheduler
from signaldesk.models import CatalogSnapshot, Signal, SignalKind

logger = structlog.get_logger(__name__)


class SignalCatalog:
    """Loads eligible signals and answers lookups against the last fetch."""

    def __init__(self, client, scheduler: Scheduler, *, max_age: float = 30.0) -> None:
        self._client = client
        self._scheduler = scheduler
        self._max_age = max_age
        self._snapshot: CatalogSnapshot | None = None

    @property
    def snapshot(self) -> CatalogSnapshot | None:
        return self._snapshot

    async def list_eligible(self) -> CatalogSnapshot:
        """Fetch the catalog. Connector errors propagate to the caller."""
        fetched_at = self._scheduler.now()
        snapshot = await self._client.list_eligible_signals()
        snapshot = snapshot.model_copy(update={"fetched_at": fetched_at})
        self._snapshot = snapshot
        logger.info(
            "catalog_loaded",
            signals=len(snapshot.signals),
            daily_remaining=snapshot.limits.daily_signals_remaining,
            referral_remaining=snapshot.limits.referral_signals_remaining,
        )
        return snapshot

    def find(self, signal_id: str) -> Signal | None:
        if self._snapshot is None:
            return None
        return self._snapshot.find(signal_id)

    def grouped(self) -> dict[SignalKind, list[Signal]]:
        """Signals split by kind, in display order."""
        if self._snapshot is None:
            return {kind: [] for kind in SignalKind}
        return {kind: self._snapshot.by_kind(kind) for kind in SignalKind}

    def time_remaining(self, signal: Signal) -> float | None:
        """Seconds left to confirm ``signal``, or ``None`` once the fetch is stale."""
        snapshot = self._snapshot
        if snapshot is None or snapshot.fetched_at is None:
            return None
        age = (self._scheduler.now() - snapshot.fetched_at).total_seconds()
        if age > self._max_age:
            return None
        return max(0.0, signal.time_remaining - age)


__all__ = ["SignalCatalog"]
