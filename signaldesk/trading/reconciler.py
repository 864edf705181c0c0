"""
OutcomeReconciler — Folds a terminal settlement into local state, once.

Applying a terminal ``CommitmentStatus`` is one unit:

  1. finalise the tracked commitment with the server's result
  2. overlay ``movementBalanceAfter`` onto the wallet (no refetch)
  3. upsert the settled entry at the head of trade history
  4. publish ``trade.result``

Applying the same ``(commitment id, outcome)`` twice is a no-op.
"""

from __future__ import annotations

from typing import Callable, Iterable

import structlog

from signaldesk.core.bus import EventBus
from signaldesk.core.scheduler import Scheduler
from signaldesk.models import Commitment, CommitmentStatus, Outcome
from signaldesk.observability import SETTLEMENTS, trace_operation
from signaldesk.trading.state import LifecycleState, Phase, show_result

logger = structlog.get_logger(__name__)


# ── Trade history read model ─────────────────────────────────────────


def upsert_history(
    history: Iterable[Commitment], entry: Commitment
) -> tuple[Commitment, ...]:
    """Put ``entry`` at the head, replacing any older row with the same id."""
    return (entry, *(item for item in history if item.id != entry.id))


def pending_entries(history: Iterable[Commitment]) -> list[Commitment]:
    """PENDING rows, newest confirmation first."""
    return sorted(
        (item for item in history if item.is_pending),
        key=lambda item: item.confirmed_at,
        reverse=True,
    )


# ── Reconciler ───────────────────────────────────────────────────────


class OutcomeReconciler:
    def __init__(self, bus: EventBus, scheduler: Scheduler) -> None:
        self._bus = bus
        self._scheduler = scheduler
        self._applied: set[tuple[str, Outcome]] = set()

    def already_applied(self, commitment_id: str, outcome: Outcome) -> bool:
        return (commitment_id, outcome) in self._applied

    async def apply(
        self,
        state: LifecycleState,
        status: CommitmentStatus,
        *,
        commit: Callable[[LifecycleState], None] | None = None,
    ) -> LifecycleState:
        """Return ``state`` with the outcome applied, or unchanged if it does not apply.

        ``commit`` receives the new state before ``trade.result`` goes out, so
        subscribers reading the owner's state already see the result.
        """
        commitment = state.commitment
        if self.already_applied(status.id, status.outcome):
            logger.debug("reconcile_duplicate", usage_id=status.id, outcome=status.outcome.value)
            return state
        if not status.terminal:
            logger.debug("reconcile_not_terminal", usage_id=status.id)
            return state
        if commitment is None or commitment.id != status.id or state.phase is not Phase.SETTLING:
            logger.warning(
                "reconcile_discarded",
                usage_id=status.id,
                tracked=commitment.id if commitment else None,
                phase=state.phase.value,
            )
            return state

        with trace_operation("reconcile", usage_id=status.id, outcome=status.outcome.value):
            settled = commitment.settle(status)

            wallet = state.wallet
            if status.movement_balance_after is not None and wallet is not None:
                wallet = wallet.overlay_movement(
                    status.movement_balance_after, as_of=self._scheduler.now()
                )

            new_state = show_result(
                state,
                settled,
                wallet=wallet,
                history=upsert_history(state.history, settled),
            )
            self._applied.add((status.id, status.outcome))

        if commit is not None:
            commit(new_state)

        SETTLEMENTS.labels(outcome=status.outcome.value).inc()
        logger.info(
            "commitment_settled",
            usage_id=settled.id,
            outcome=settled.outcome.value,
            result_amount=settled.result_amount,
            movement_balance_after=settled.movement_balance_after,
        )
        await self._bus.publish(
            "trade.result",
            {
                "commitment_id": settled.id,
                "signal_id": settled.signal_id,
                "outcome": settled.outcome.value,
                "committed_amount": settled.committed_amount,
                "result_amount": settled.result_amount,
                "profit_percent": settled.profit_percent,
                "movement_balance_after": settled.movement_balance_after,
            },
            sender="reconciler",
            correlation_id=settled.id,
        )
        return new_state


__all__ = ["OutcomeReconciler", "upsert_history", "pending_entries"]
