"""
TradeLifecycleOrchestrator — Owns one session's trade lifecycle.

Phases and their entry side effects:

  ┌──────────────┬───────────────────────────────┬──────────────────────────────┐
  │ Phase        │ Entered when                  │ On entry                     │
  ├──────────────┼───────────────────────────────┼──────────────────────────────┤
  │ READY        │ start, result acknowledged    │ load catalog (+ history),    │
  │              │                               │ start catalog refresh        │
  │ WAITING      │ confirm / reattach, time left │ start CountdownClock         │
  │ SETTLING     │ countdown expired / reattach  │ start SettlementPoller       │
  │              │ after settles_at              │                              │
  │ RESULT_SHOWN │ terminal outcome              │ OutcomeReconciler applied    │
  └──────────────┴───────────────────────────────┴──────────────────────────────┘

At most one of countdown, poller or catalog refresh runs at a time; each is
cancelled when its phase is left. Views never get callbacks: they subscribe
to ``trade.*`` topics on the event bus and read ``orchestrator.state``.

Usage::

    async with PlatformConnector() as platform:
        orchestrator = TradeLifecycleOrchestrator(platform.client)
        await orchestrator.start()
        await orchestrator.confirm(signal_id)
        ...
        await orchestrator.close()
"""

from __future__ import annotations

import asyncio

import structlog

from signaldesk.config import SignalDeskSettings, get_settings
from signaldesk.core.bus import EventBus, get_event_bus
from signaldesk.core.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from signaldesk.errors import (
    CommitmentActiveError,
    ConfirmationError,
    ConnectorError,
    IneligibleError,
    LifecycleError,
)
from signaldesk.models import Commitment, CommitmentStatus
from signaldesk.trading import state as fsm
from signaldesk.trading.catalog import SignalCatalog
from signaldesk.trading.confirmer import CommitmentConfirmer, display_stake
from signaldesk.trading.countdown import CountdownClock
from signaldesk.trading.eligibility import (
    Eligibility,
    EligibilityCode,
    can_commit,
    limit_reached,
)
from signaldesk.trading.poller import RetryPolicy, SettlementPoller
from signaldesk.trading.reconciler import OutcomeReconciler, pending_entries, upsert_history
from signaldesk.trading.state import LifecycleState, Phase

logger = structlog.get_logger(__name__)

_SENDER = "orchestrator"


class TradeLifecycleOrchestrator:
    """Drives READY → WAITING → SETTLING → RESULT_SHOWN for one session."""

    def __init__(
        self,
        client,
        *,
        scheduler: Scheduler | None = None,
        bus: EventBus | None = None,
        settings: SignalDeskSettings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._owns_scheduler = scheduler is None
        self._scheduler = scheduler or AsyncioScheduler()
        self._bus = bus or get_event_bus()

        self._catalog = SignalCatalog(
            client, self._scheduler, max_age=self._settings.catalog_refresh_seconds
        )
        self._confirmer = CommitmentConfirmer(
            client, self._scheduler, min_balance=self._settings.min_movement_balance
        )
        self._countdown = CountdownClock(
            self._scheduler, tick=self._settings.countdown_tick_seconds
        )
        self._poller = SettlementPoller(
            client, self._scheduler, RetryPolicy.from_settings(self._settings)
        )
        self._reconciler = OutcomeReconciler(self._bus, self._scheduler)

        self._state = LifecycleState()
        self._refresh_handle: TimerHandle | None = None
        self._confirming = False
        self._started = False
        self._closed = False

    # ── Read model ───────────────────────────────────────────────────

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def catalog(self) -> SignalCatalog:
        return self._catalog

    @property
    def poller(self) -> SettlementPoller:
        return self._poller

    def eligibility(self) -> Eligibility:
        """Gate result for the current wallet, profile and tracked commitment."""
        s = self._state
        return can_commit(
            s.wallet,
            s.account_active,
            has_active=s.has_active,
            history_known=s.history_loaded,
            min_balance=self._settings.min_movement_balance,
        )

    def display_stake(self, signal_id: str) -> float | None:
        """Stake to show before confirming, or ``None`` for an unknown signal."""
        signal = self._catalog.find(signal_id)
        if signal is None:
            return None
        return display_stake(self._state.wallet, signal)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self, resume: Commitment | None = None) -> LifecycleState:
        """Load account data and enter READY, or reattach to a pending commitment.

        The newest PENDING history entry (or ``resume``, when given) becomes
        the tracked commitment. Its remaining time is recomputed from the
        absolute ``settles_at``.

        A failed history load leaves ``history_loaded`` False: confirming is
        blocked and every READY refresh tick retries the load until a
        PENDING row can be ruled out or reattached.
        """
        if self._started:
            raise LifecycleError("Orchestrator already started", phase=self._state.phase.value)
        self._started = True

        issued = self._scheduler.now()
        results = await asyncio.gather(
            self._client.get_wallet_snapshot(),
            self._client.get_profile(),
            self._client.list_history(1, self._settings.history_page_size),
            return_exceptions=True,
        )
        for label, result in zip(("wallet", "profile", "history"), results):
            if isinstance(result, ConnectorError):
                logger.warning("startup_load_failed", resource=label, error=str(result))
            elif isinstance(result, BaseException):
                raise result
        wallet, profile, history = results

        state = self._state
        if not isinstance(wallet, BaseException):
            state = fsm.with_wallet(state, wallet.model_copy(update={"as_of": issued}))
        if not isinstance(profile, BaseException):
            state = fsm.with_profile(state, profile)
        if not isinstance(history, BaseException):
            state = fsm.with_history(state, tuple(history.items))
        if resume is not None:
            state = fsm.with_history(
                state, upsert_history(state.history, resume), loaded=state.history_loaded
            )
        self._state = state

        pending = pending_entries(state.history)
        active = resume if resume is not None and resume.is_pending else (pending[0] if pending else None)
        if active is not None:
            await self._reattach(active, pending)
        else:
            await self._enter_ready(load_history=False)
        return self._state

    async def confirm(self, signal_id: str) -> Commitment | None:
        """Confirm a catalog signal and start tracking the commitment.

        Returns ``None`` when the API rate-limited the request (state unchanged).

        Raises:
            CommitmentActiveError: A commitment is already tracked (no network call).
            IneligibleError: Gate or quota rejected the signal.
            ConfirmationError: The API refused the confirmation.
            LifecycleError: Not in READY for another reason.
        """
        state = self._state
        if state.phase is not Phase.READY:
            if state.has_active:
                raise CommitmentActiveError(
                    "A commitment is already in progress",
                    signal_id=signal_id,
                    reason_code=EligibilityCode.COMMITMENT_ACTIVE.value,
                )
            raise LifecycleError(
                f"Cannot confirm while {state.phase.value}", phase=state.phase.value
            )

        try:
            if self._confirming:
                raise ConfirmationError("A confirmation is already in flight", signal_id=signal_id)
            if not state.history_loaded:
                await self._load_history()
                state = self._state
                if state.has_active:
                    raise CommitmentActiveError(
                        "A commitment is already in progress",
                        signal_id=signal_id,
                        reason_code=EligibilityCode.COMMITMENT_ACTIVE.value,
                    )
                if not state.history_loaded:
                    raise IneligibleError(
                        "Trade history could not be loaded. Please try again shortly.",
                        signal_id=signal_id,
                        reason_code=EligibilityCode.HISTORY_UNKNOWN.value,
                    )
            signal = self._catalog.find(signal_id)
            if signal is None:
                raise ConfirmationError("Signal is no longer available", signal_id=signal_id)
            if limit_reached(signal, state.catalog.limits if state.catalog else None):
                raise IneligibleError(
                    f"{signal.kind.value.lower()} signal limit reached",
                    signal_id=signal_id,
                    reason_code=EligibilityCode.LIMIT_REACHED.value,
                )

            self._confirming = True
            try:
                commitment = await self._confirmer.confirm(signal, has_active=state.has_active)
            finally:
                self._confirming = False
        except ConfirmationError as e:
            self._apply_confirmer_reads()
            self._state = fsm.with_error(self._state, str(e))
            await self._bus.publish(
                "trade.confirm_failed",
                {"signal_id": signal_id, **e.to_dict()},
                sender=_SENDER,
            )
            raise

        if commitment is None:
            return None

        self._apply_confirmer_reads()
        self._state = fsm.with_history(
            fsm.with_error(self._state, None),
            upsert_history(self._state.history, commitment),
            loaded=self._state.history_loaded,
        )
        if self._closed:
            # Committed server-side; the next start() reattaches from history.
            logger.warning("commitment_confirmed_after_close", usage_id=commitment.id)
            return commitment

        await self._track(commitment)
        return commitment

    async def refresh_catalog(self) -> LifecycleState:
        """Reload the signal list. Only meaningful in READY; a no-op otherwise."""
        state = self._state
        if state.phase is not Phase.READY or self._closed:
            logger.debug("catalog_refresh_skipped", phase=state.phase.value)
            return state

        generation = state.generation
        try:
            snapshot = await self._catalog.list_eligible()
        except ConnectorError as e:
            if self._is_stale(generation):
                return self._state
            logger.warning("catalog_load_failed", error=str(e), error_code=e.error_code)
            self._state = fsm.with_catalog_error(self._state, str(e))
            await self._bus.publish(
                "trade.catalog_updated",
                {"ok": False, "error": str(e)},
                sender=_SENDER,
            )
            return self._state

        if self._is_stale(generation):
            logger.debug("catalog_response_discarded", generation=generation)
            return self._state

        self._state = fsm.with_catalog(self._state, snapshot)
        await self._bus.publish(
            "trade.catalog_updated",
            {
                "ok": True,
                "signals": [s.id for s in snapshot.signals],
                "daily_remaining": snapshot.limits.daily_signals_remaining,
                "referral_remaining": snapshot.limits.referral_signals_remaining,
            },
            sender=_SENDER,
        )
        return self._state

    async def refresh_wallet(self) -> LifecycleState:
        """Fetch the wallet. A response issued before a newer overlay is ignored."""
        if self._closed:
            return self._state
        issued = self._scheduler.now()
        try:
            wallet = await self._client.get_wallet_snapshot()
        except ConnectorError as e:
            logger.warning("wallet_load_failed", error=str(e), error_code=e.error_code)
            return self._state
        self._state = fsm.with_wallet(self._state, wallet.model_copy(update={"as_of": issued}))
        if self._state.wallet is not None and self._state.wallet.as_of != issued:
            logger.debug("wallet_response_discarded", issued=issued.isoformat())
        return self._state

    async def resume_polling(self) -> LifecycleState:
        """Restart settlement polling with a fresh budget (SETTLING only)."""
        state = self._state
        if state.phase is not Phase.SETTLING:
            raise LifecycleError(
                f"Nothing to poll while {state.phase.value}", phase=state.phase.value
            )
        if self._poller.active:
            return state
        self._state = fsm.mark_poll_exhausted(state, False)
        self._start_polling()
        return self._state

    async def acknowledge(self) -> LifecycleState:
        """Dismiss the result and return to READY."""
        state = self._state
        if state.phase is not Phase.RESULT_SHOWN:
            raise LifecycleError(
                f"No result to acknowledge while {state.phase.value}", phase=state.phase.value
            )
        await self._set_state(fsm.acknowledge(state))
        await self._enter_ready(load_history=True)
        return self._state

    async def close(self) -> None:
        """Cancel every timer. A pending commitment stays pending server-side."""
        if self._closed:
            return
        self._closed = True
        self._cancel_refresh()
        self._countdown.stop()
        self._poller.stop()
        if self._owns_scheduler and isinstance(self._scheduler, AsyncioScheduler):
            await self._scheduler.aclose()
        logger.info("orchestrator_closed", phase=self._state.phase.value)

    async def __aenter__(self) -> "TradeLifecycleOrchestrator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ── Phase entry ──────────────────────────────────────────────────

    async def _set_state(self, new: LifecycleState) -> None:
        previous = self._state
        self._state = new
        if new.phase is not previous.phase:
            logger.info(
                "phase_changed",
                phase_from=previous.phase.value,
                phase_to=new.phase.value,
                generation=new.generation,
            )
            await self._publish_phase()

    async def _publish_phase(self) -> None:
        c = self._state.commitment
        await self._bus.publish(
            "trade.phase_changed",
            self._state.summary(),
            sender=_SENDER,
            correlation_id=c.id if c else None,
        )

    async def _enter_ready(self, *, load_history: bool) -> None:
        await self.refresh_catalog()
        if load_history:
            if self._state.wallet is None:
                await self.refresh_wallet()
            await self._load_history()
        self._schedule_refresh()

    async def _reattach(self, active: Commitment, pending: list[Commitment]) -> None:
        others = [c.id for c in pending if c.id != active.id]
        if others:
            logger.warning("multiple_pending_commitments", tracked=active.id, untracked=others)
        logger.info("commitment_reattached", usage_id=active.id, settles_at=active.settles_at.isoformat())
        await self._track(active)

    def _apply_confirmer_reads(self) -> None:
        if self._confirmer.last_wallet is not None:
            self._state = fsm.with_wallet(self._state, self._confirmer.last_wallet)
        if self._confirmer.last_profile is not None:
            self._state = fsm.with_profile(self._state, self._confirmer.last_profile)

    async def _track(self, commitment: Commitment) -> None:
        self._cancel_refresh()
        remaining = commitment.remaining(self._scheduler.now())
        if remaining > 0:
            await self._set_state(fsm.enter_waiting(self._state, commitment, remaining))
            self._countdown.start(
                commitment.settles_at, on_tick=self._on_tick, on_expire=self._on_expire
            )
        else:
            await self._set_state(fsm.enter_settling(self._state, commitment))
            self._start_polling()

    def _start_polling(self) -> None:
        self._poller.start(
            self._state.commitment,
            on_settled=self._on_settled,
            on_exhausted=self._on_poll_exhausted,
        )

    async def _load_history(self) -> None:
        generation = self._state.generation
        try:
            page = await self._client.list_history(1, self._settings.history_page_size)
        except ConnectorError as e:
            logger.warning("history_load_failed", error=str(e))
            return
        if self._is_stale(generation):
            return
        # A row settled here outranks a lagging server copy still marked PENDING.
        settled = {c.id: c for c in self._state.history if not c.is_pending}
        history = tuple(settled.get(c.id, c) if c.is_pending else c for c in page.items)
        self._state = fsm.with_history(self._state, history)
        pending = pending_entries(self._state.history)
        if pending:
            await self._reattach(pending[0], pending)

    # ── Timer callbacks ──────────────────────────────────────────────

    async def _on_tick(self, remaining: float) -> None:
        if self._state.phase is not Phase.WAITING:
            return
        self._state = fsm.tick(self._state, remaining)
        c = self._state.commitment
        await self._bus.publish(
            "trade.countdown",
            {"commitment_id": c.id, "remaining": round(remaining, 3)},
            sender=_SENDER,
            correlation_id=c.id,
        )

    async def _on_expire(self) -> None:
        if self._state.phase is not Phase.WAITING or self._closed:
            return
        await self._set_state(fsm.enter_settling(self._state))
        self._start_polling()

    async def _on_settled(self, status: CommitmentStatus) -> None:
        previous = self._state
        await self._reconciler.apply(previous, status, commit=self._store)
        if self._state.phase is Phase.RESULT_SHOWN and self._state.wallet is None:
            # Nothing to overlay the server's balance onto; read it once instead.
            await self.refresh_wallet()
        if self._state.phase is not previous.phase:
            logger.info(
                "phase_changed",
                phase_from=previous.phase.value,
                phase_to=self._state.phase.value,
                generation=self._state.generation,
            )
            await self._publish_phase()

    async def _on_poll_exhausted(self) -> None:
        if self._state.phase is not Phase.SETTLING:
            return
        self._state = fsm.mark_poll_exhausted(self._state)
        c = self._state.commitment
        await self._bus.publish(
            "trade.poll_exhausted",
            {"commitment_id": c.id, "attempts": self._poller.attempts},
            sender=_SENDER,
            correlation_id=c.id,
        )

    def _schedule_refresh(self) -> None:
        if self._closed or self._state.phase is not Phase.READY:
            return
        self._cancel_refresh()
        self._refresh_handle = self._scheduler.schedule(
            self._settings.catalog_refresh_seconds, self._refresh_tick, name="catalog_refresh"
        )

    async def _refresh_tick(self) -> None:
        self._refresh_handle = None
        if self._state.phase is not Phase.READY or self._closed:
            return
        if self._state.wallet is None:
            await self.refresh_wallet()
        if not self._state.history_loaded:
            await self._load_history()
        await self.refresh_catalog()
        if self._refresh_handle is None:
            self._schedule_refresh()

    def _cancel_refresh(self) -> None:
        if self._refresh_handle is not None:
            self._scheduler.cancel(self._refresh_handle)
            self._refresh_handle = None

    # ── Helpers ──────────────────────────────────────────────────────

    def _store(self, state: LifecycleState) -> None:
        self._state = state

    def _is_stale(self, generation: int) -> bool:
        return (
            self._closed
            or self._state.generation != generation
            or self._state.phase is not Phase.READY
        )


__all__ = ["TradeLifecycleOrchestrator"]
