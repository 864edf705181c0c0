"""
LifecycleState — Immutable snapshot of the trade lifecycle.

The orchestrator never mutates state in place. Every change goes through a
pure transition function that returns a new ``LifecycleState``:

    READY ──confirm──▶ WAITING ──expiry──▶ SETTLING ──outcome──▶ RESULT_SHOWN
      ▲                                                              │
      └─────────────────────────── acknowledge ──────────────────────┘

Reattachment enters WAITING or SETTLING directly from READY.

Illegal phase changes raise ``LifecycleError``. Each phase entry bumps
``generation`` so late responses from an earlier phase can be recognised
and discarded.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from signaldesk.errors import LifecycleError
from signaldesk.models import (
    AccountProfile,
    CatalogSnapshot,
    Commitment,
    WalletSnapshot,
)


class Phase(str, Enum):
    READY = "READY"
    WAITING = "WAITING"
    SETTLING = "SETTLING"
    RESULT_SHOWN = "RESULT_SHOWN"


_ALLOWED: dict[Phase, frozenset[Phase]] = {
    Phase.READY: frozenset({Phase.WAITING, Phase.SETTLING}),
    Phase.WAITING: frozenset({Phase.SETTLING}),
    Phase.SETTLING: frozenset({Phase.RESULT_SHOWN}),
    Phase.RESULT_SHOWN: frozenset({Phase.READY}),
}


class LifecycleState(BaseModel):
    """Everything a view needs to render the trade panel."""

    model_config = ConfigDict(frozen=True)

    phase: Phase = Phase.READY
    generation: int = 0
    commitment: Commitment | None = None
    remaining: float = 0.0
    poll_exhausted: bool = False
    wallet: WalletSnapshot | None = None
    profile: AccountProfile | None = None
    catalog: CatalogSnapshot | None = None
    catalog_error: str | None = None
    history: tuple[Commitment, ...] = ()
    # False until the server history has been read once; a PENDING row may be hiding.
    history_loaded: bool = False
    last_error: str | None = None

    @property
    def has_active(self) -> bool:
        """True while a PENDING commitment is tracked."""
        return self.commitment is not None and self.commitment.is_pending

    @property
    def account_active(self) -> bool:
        return bool(self.profile and self.profile.is_trading_active)

    def summary(self) -> dict[str, Any]:
        """Flat payload for ``trade.phase_changed`` events."""
        c = self.commitment
        return {
            "phase": self.phase.value,
            "generation": self.generation,
            "commitment_id": c.id if c else None,
            "outcome": c.outcome.value if c else None,
            "committed_amount": c.committed_amount if c else None,
            "remaining": round(self.remaining, 3),
            "poll_exhausted": self.poll_exhausted,
            "history_loaded": self.history_loaded,
            "movement_balance": self.wallet.movement_balance if self.wallet else None,
        }


# ── Phase transitions ────────────────────────────────────────────────


def _advance(state: LifecycleState, target: Phase, **updates: Any) -> LifecycleState:
    if target not in _ALLOWED[state.phase]:
        raise LifecycleError(
            f"Cannot move from {state.phase.value} to {target.value}",
            phase=state.phase.value,
        )
    return state.model_copy(
        update={"phase": target, "generation": state.generation + 1, **updates}
    )


def enter_waiting(
    state: LifecycleState, commitment: Commitment, remaining: float
) -> LifecycleState:
    if not commitment.is_pending:
        raise LifecycleError(
            f"Commitment {commitment.id} is already {commitment.outcome.value}",
            phase=state.phase.value,
        )
    return _advance(
        state,
        Phase.WAITING,
        commitment=commitment,
        remaining=max(0.0, remaining),
        poll_exhausted=False,
        last_error=None,
    )


def tick(state: LifecycleState, remaining: float) -> LifecycleState:
    """Update the countdown. Not a phase change, so ``generation`` is kept."""
    if state.phase is not Phase.WAITING:
        raise LifecycleError("Countdown tick outside WAITING", phase=state.phase.value)
    return state.model_copy(update={"remaining": max(0.0, remaining)})


def enter_settling(
    state: LifecycleState, commitment: Commitment | None = None
) -> LifecycleState:
    commitment = commitment or state.commitment
    if commitment is None or not commitment.is_pending:
        raise LifecycleError("No pending commitment to settle", phase=state.phase.value)
    return _advance(
        state,
        Phase.SETTLING,
        commitment=commitment,
        remaining=0.0,
        poll_exhausted=False,
    )


def mark_poll_exhausted(state: LifecycleState, exhausted: bool = True) -> LifecycleState:
    if state.phase is not Phase.SETTLING:
        raise LifecycleError("Polling only runs in SETTLING", phase=state.phase.value)
    return state.model_copy(update={"poll_exhausted": exhausted})


def show_result(
    state: LifecycleState,
    settled: Commitment,
    *,
    wallet: WalletSnapshot | None,
    history: tuple[Commitment, ...],
) -> LifecycleState:
    if settled.is_pending:
        raise LifecycleError(
            f"Commitment {settled.id} has no outcome yet", phase=state.phase.value
        )
    return _advance(
        state,
        Phase.RESULT_SHOWN,
        commitment=settled,
        wallet=wallet,
        history=history,
        poll_exhausted=False,
    )


def acknowledge(state: LifecycleState) -> LifecycleState:
    return _advance(state, Phase.READY, commitment=None, remaining=0.0)


# ── Data updates (phase-independent) ─────────────────────────────────


def with_wallet(state: LifecycleState, wallet: WalletSnapshot) -> LifecycleState:
    """Apply a wallet snapshot unless the held one is newer."""
    current = state.wallet
    if (
        current is not None
        and current.as_of is not None
        and wallet.as_of is not None
        and wallet.as_of < current.as_of
    ):
        return state
    return state.model_copy(update={"wallet": wallet})


def with_profile(state: LifecycleState, profile: AccountProfile) -> LifecycleState:
    return state.model_copy(update={"profile": profile})


def with_catalog(state: LifecycleState, catalog: CatalogSnapshot) -> LifecycleState:
    return state.model_copy(update={"catalog": catalog, "catalog_error": None})


def with_catalog_error(state: LifecycleState, message: str) -> LifecycleState:
    return state.model_copy(update={"catalog_error": message})


def with_history(
    state: LifecycleState, history: tuple[Commitment, ...], *, loaded: bool = True
) -> LifecycleState:
    """Replace the history. ``loaded=False`` keeps it marked as not yet read from the server."""
    return state.model_copy(update={"history": tuple(history), "history_loaded": loaded})


def with_error(state: LifecycleState, message: str | None) -> LifecycleState:
    return state.model_copy(update={"last_error": message})


__all__ = [
    "Phase",
    "LifecycleState",
    "enter_waiting",
    "tick",
    "enter_settling",
    "mark_poll_exhausted",
    "show_result",
    "acknowledge",
    "with_wallet",
    "with_profile",
    "with_catalog",
    "with_catalog_error",
    "with_history",
    "with_error",
]
