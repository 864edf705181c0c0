"""
Tests for signaldesk.trading.orchestrator — the trade lifecycle end to end.

Runs against a scripted API client on virtual time:
  - confirm → countdown → settlement poll → result → acknowledge
  - single active commitment, rejected before any network call
  - no polling before settles_at; rate-limit backoff
  - reattachment into WAITING / SETTLING after leaving
  - poll exhaustion and manual resume
  - catalog refresh only while READY
  - unread history blocks confirming; late wallet reads lose to settlement
"""

import asyncio
from datetime import timedelta

import pytest

from signaldesk.errors import (
    CommitmentActiveError,
    ConfirmationError,
    ConnectorError,
    ConnectorRateLimitError,
    ConnectorUnavailableError,
    IneligibleError,
    LifecycleError,
)
from signaldesk.models import AccountProfile, Outcome, SignalLimits
from signaldesk.trading.eligibility import EligibilityCode
from signaldesk.trading.orchestrator import TradeLifecycleOrchestrator
from signaldesk.trading.state import Phase

from factories import T0, WINDOW, make_commitment, make_receipt, make_wallet, profit_status

SETTLE_S = WINDOW.total_seconds()


@pytest.fixture
def orchestrator(fake_client, scheduler, bus, settings):
    return TradeLifecycleOrchestrator(fake_client, scheduler=scheduler, bus=bus, settings=settings)


@pytest.fixture
def events(bus):
    seen = []

    async def record(msg):
        seen.append(msg)

    bus.subscribe("trade.*", record)
    return seen


def topics(events, name):
    return [m for m in events if m.topic == name]


def phases(events):
    return [m.payload["phase"] for m in topics(events, "trade.phase_changed")]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Startup & READY
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestStart:
    @pytest.mark.asyncio
    async def test_enters_ready_with_catalog(self, orchestrator, fake_client):
        state = await orchestrator.start()
        assert state.phase is Phase.READY
        assert state.catalog.find("sig-1") is not None
        assert state.wallet.movement_balance == 1000
        assert state.wallet.as_of == T0
        assert state.account_active
        assert fake_client.count("list_eligible_signals") == 1

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, orchestrator):
        await orchestrator.start()
        with pytest.raises(LifecycleError):
            await orchestrator.start()

    @pytest.mark.asyncio
    async def test_catalog_failure_is_surfaced(self, orchestrator, fake_client, events):
        fake_client.errors["list_eligible_signals"] = ConnectorUnavailableError("down")
        state = await orchestrator.start()
        assert state.phase is Phase.READY
        assert state.catalog_error == "down"
        assert topics(events, "trade.catalog_updated")[0].payload["ok"] is False

        del fake_client.errors["list_eligible_signals"]
        state = await orchestrator.refresh_catalog()
        assert state.catalog_error is None
        assert state.catalog is not None

    @pytest.mark.asyncio
    async def test_partial_startup_failure_is_tolerated(self, orchestrator, fake_client):
        fake_client.errors["get_profile"] = ConnectorUnavailableError("down")
        state = await orchestrator.start()
        assert state.phase is Phase.READY
        assert state.profile is None
        assert orchestrator.eligibility().reason == "not activated"

    @pytest.mark.asyncio
    async def test_catalog_refreshes_while_ready(self, orchestrator, fake_client, scheduler):
        await orchestrator.start()
        await scheduler.advance(95)
        assert fake_client.count("list_eligible_signals") == 4

    @pytest.mark.asyncio
    async def test_eligibility_and_stake(self, orchestrator, fake_client):
        fake_client.wallet = make_wallet(200)
        await orchestrator.start()
        assert orchestrator.eligibility().code.value == "INSUFFICIENT_BALANCE"
        assert orchestrator.display_stake("sig-1") == 20.0
        assert orchestrator.display_stake("missing") is None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Confirm → settle → acknowledge
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestFullCycle:
    @pytest.mark.asyncio
    async def test_profit_updates_wallet_and_history(self, orchestrator, fake_client, scheduler, events):
        await orchestrator.start()
        assert orchestrator.display_stake("sig-1") == 100.0

        commitment = await orchestrator.confirm("sig-1")
        assert commitment.committed_amount == 100.0
        assert orchestrator.state.phase is Phase.WAITING
        assert orchestrator.state.remaining == SETTLE_S

        fake_client.statuses = [profit_status()]
        await scheduler.advance(SETTLE_S)

        state = orchestrator.state
        assert state.phase is Phase.RESULT_SHOWN
        assert state.commitment.outcome is Outcome.PROFIT
        assert state.wallet.movement_balance == 1012.5
        settled = [c for c in state.history if c.outcome is Outcome.PROFIT]
        assert len(settled) == 1
        assert settled[0].result_amount == 12.5
        assert len(topics(events, "trade.result")) == 1
        assert phases(events) == ["WAITING", "SETTLING", "RESULT_SHOWN"]

        fake_client.history = list(state.history)
        await orchestrator.acknowledge()
        assert orchestrator.state.phase is Phase.READY
        assert orchestrator.state.commitment is None
        assert phases(events)[-1] == "READY"

    @pytest.mark.asyncio
    async def test_countdown_events(self, orchestrator, scheduler, events):
        await orchestrator.start()
        await orchestrator.confirm("sig-1")
        await scheduler.advance(3)
        remaining = [m.payload["remaining"] for m in topics(events, "trade.countdown")]
        assert remaining == [SETTLE_S - 1, SETTLE_S - 2, SETTLE_S - 3]
        assert orchestrator.state.remaining == SETTLE_S - 3

    @pytest.mark.asyncio
    async def test_committed_amount_stays_frozen(self, orchestrator, fake_client, scheduler):
        fake_client.receipt = make_receipt(committed=97.5)
        await orchestrator.start()
        await orchestrator.confirm("sig-1")
        fake_client.wallet = make_wallet(5000)
        await scheduler.advance(SETTLE_S / 2)
        assert orchestrator.state.commitment.committed_amount == 97.5

    @pytest.mark.asyncio
    async def test_no_poll_before_settlement(self, orchestrator, fake_client, scheduler):
        await orchestrator.start()
        await orchestrator.confirm("sig-1")
        await scheduler.advance(SETTLE_S - 1)
        assert fake_client.count("get_commitment_status") == 0
        await scheduler.advance(1)
        assert fake_client.poll_times == [T0 + WINDOW]

    @pytest.mark.asyncio
    async def test_rate_limited_polls_back_off(self, orchestrator, fake_client, scheduler):
        await orchestrator.start()
        await orchestrator.confirm("sig-1")
        rate_limited = ConnectorRateLimitError("Too many requests")
        fake_client.statuses = [rate_limited, rate_limited, rate_limited, profit_status()]

        await scheduler.advance(SETTLE_S + 44)
        assert orchestrator.state.phase is Phase.SETTLING
        await scheduler.advance(1)
        assert orchestrator.state.phase is Phase.RESULT_SHOWN
        offsets = [(t - (T0 + WINDOW)).total_seconds() for t in fake_client.poll_times]
        assert offsets == [0, 15, 30, 45]

    @pytest.mark.asyncio
    async def test_catalog_refresh_paused_until_ready(self, orchestrator, fake_client, scheduler):
        await orchestrator.start()
        await orchestrator.confirm("sig-1")
        loads = fake_client.count("list_eligible_signals")
        await scheduler.advance(SETTLE_S - 10)
        assert fake_client.count("list_eligible_signals") == loads
        assert orchestrator.state.phase is Phase.WAITING
        assert await orchestrator.refresh_catalog() is orchestrator.state
        assert fake_client.count("list_eligible_signals") == loads


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Confirmation failures
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestConfirmFailures:
    @pytest.mark.asyncio
    async def test_second_confirm_rejected_before_network(self, orchestrator, fake_client):
        await orchestrator.start()
        await orchestrator.confirm("sig-1")
        calls = list(fake_client.calls)
        with pytest.raises(CommitmentActiveError):
            await orchestrator.confirm("sig-1")
        assert fake_client.calls == calls

    @pytest.mark.asyncio
    async def test_server_refusal_stays_ready(self, orchestrator, fake_client, events):
        fake_client.receipt = ConnectorError("Signal has expired")
        await orchestrator.start()
        with pytest.raises(ConfirmationError, match="Signal has expired"):
            await orchestrator.confirm("sig-1")
        assert orchestrator.state.phase is Phase.READY
        assert orchestrator.state.last_error == "Signal has expired"
        failed = topics(events, "trade.confirm_failed")
        assert failed[0].payload["signal_id"] == "sig-1"

    @pytest.mark.asyncio
    async def test_rate_limited_confirm_changes_nothing(self, orchestrator, fake_client, scheduler):
        fake_client.receipt = ConnectorRateLimitError("Too many requests")
        await orchestrator.start()
        before = orchestrator.state
        assert await orchestrator.confirm("sig-1") is None
        assert orchestrator.state is before
        assert orchestrator.state.phase is Phase.READY

    @pytest.mark.asyncio
    async def test_unknown_signal(self, orchestrator, fake_client):
        await orchestrator.start()
        with pytest.raises(ConfirmationError, match="no longer available"):
            await orchestrator.confirm("nope")
        assert fake_client.count("confirm_signal") == 0

    @pytest.mark.asyncio
    async def test_daily_limit_reached(self, orchestrator, fake_client):
        fake_client.catalog = fake_client.catalog.model_copy(
            update={"limits": SignalLimits(daily_signals_remaining=0, max_daily_signals=2)}
        )
        await orchestrator.start()
        with pytest.raises(IneligibleError) as exc_info:
            await orchestrator.confirm("sig-1")
        assert exc_info.value.reason_code == "LIMIT_REACHED"
        assert fake_client.count("confirm_signal") == 0

    @pytest.mark.asyncio
    async def test_acknowledge_requires_result(self, orchestrator):
        await orchestrator.start()
        with pytest.raises(LifecycleError):
            await orchestrator.acknowledge()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Reattachment, exhaustion, teardown
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestReattach:
    @pytest.mark.asyncio
    async def test_return_after_settlement_polls_immediately(
        self, fake_client, scheduler, bus, settings
    ):
        first = TradeLifecycleOrchestrator(fake_client, scheduler=scheduler, bus=bus, settings=settings)
        await first.start()
        commitment = await first.confirm("sig-1")
        fake_client.history = [commitment]
        await scheduler.advance(60)
        await first.close()

        await scheduler.advance(SETTLE_S)  # away past settles_at
        assert fake_client.count("get_commitment_status") == 0

        second = TradeLifecycleOrchestrator(fake_client, scheduler=scheduler, bus=bus, settings=settings)
        fake_client.statuses = [profit_status()]
        state = await second.start()
        assert state.phase is Phase.SETTLING
        assert state.commitment.id == commitment.id

        await scheduler.advance(0)
        assert fake_client.poll_times == [T0 + timedelta(seconds=60 + SETTLE_S)]
        assert second.state.phase is Phase.RESULT_SHOWN

    @pytest.mark.asyncio
    async def test_return_before_settlement_resumes_countdown(self, orchestrator, fake_client, scheduler):
        pending = make_commitment(confirmed_at=T0 - timedelta(seconds=600))
        fake_client.history = [pending]
        state = await orchestrator.start()
        assert state.phase is Phase.WAITING
        assert state.remaining == 600
        assert fake_client.count("list_eligible_signals") == 0

        await scheduler.advance(600)
        assert orchestrator.state.phase is Phase.SETTLING
        assert fake_client.poll_times == [T0 + timedelta(seconds=600)]

    @pytest.mark.asyncio
    async def test_resume_argument(self, orchestrator, fake_client):
        state = await orchestrator.start(resume=make_commitment())
        assert state.phase is Phase.WAITING
        assert state.history[0].id == "usage-1"

    @pytest.mark.asyncio
    async def test_newest_pending_is_tracked(self, orchestrator, fake_client):
        older = make_commitment("old", confirmed_at=T0 - timedelta(seconds=900))
        newer = make_commitment("new", confirmed_at=T0 - timedelta(seconds=60))
        fake_client.history = [older, newer]
        state = await orchestrator.start()
        assert state.commitment.id == "new"

    @pytest.mark.asyncio
    async def test_reattach_survives_wallet_and_profile_failure(self, orchestrator, fake_client):
        fake_client.history = [make_commitment(confirmed_at=T0 - timedelta(seconds=600))]
        fake_client.errors["get_wallet_snapshot"] = ConnectorUnavailableError("down")
        fake_client.errors["get_profile"] = ConnectorUnavailableError("down")
        state = await orchestrator.start()
        assert state.phase is Phase.WAITING
        assert state.remaining == 600
        assert state.wallet is None
        assert state.profile is None

    @pytest.mark.asyncio
    async def test_history_outage_blocks_confirm_then_reattaches(
        self, orchestrator, fake_client, scheduler
    ):
        fake_client.history = [make_commitment(confirmed_at=T0 - timedelta(seconds=1500))]
        fake_client.errors["list_history"] = ConnectorUnavailableError("down")
        state = await orchestrator.start()
        assert state.phase is Phase.READY
        assert not state.history_loaded
        assert orchestrator.eligibility().code is EligibilityCode.HISTORY_UNKNOWN

        with pytest.raises(IneligibleError) as exc_info:
            await orchestrator.confirm("sig-1")
        assert exc_info.value.reason_code == "HISTORY_UNKNOWN"
        assert fake_client.count("confirm_signal") == 0

        del fake_client.errors["list_history"]
        await scheduler.advance(30)
        state = orchestrator.state
        assert state.history_loaded
        assert state.phase is Phase.SETTLING
        assert state.commitment.id == "usage-1"
        assert fake_client.poll_times == [T0 + timedelta(seconds=30)]

    @pytest.mark.asyncio
    async def test_confirm_rereads_history_and_finds_pending(self, orchestrator, fake_client):
        fake_client.history = [make_commitment(confirmed_at=T0 - timedelta(seconds=60))]
        fake_client.errors["list_history"] = ConnectorUnavailableError("down")
        await orchestrator.start()

        del fake_client.errors["list_history"]
        with pytest.raises(CommitmentActiveError):
            await orchestrator.confirm("sig-1")
        assert orchestrator.state.phase is Phase.WAITING
        assert orchestrator.state.commitment.id == "usage-1"
        assert fake_client.count("confirm_signal") == 0

    @pytest.mark.asyncio
    async def test_confirm_loads_missing_history_first(self, orchestrator, fake_client):
        fake_client.errors["list_history"] = ConnectorUnavailableError("down")
        await orchestrator.start()

        del fake_client.errors["list_history"]
        commitment = await orchestrator.confirm("sig-1")
        assert commitment.id == "usage-1"
        assert orchestrator.state.history_loaded
        assert orchestrator.state.phase is Phase.WAITING
        assert fake_client.count("list_history") == 2

    @pytest.mark.asyncio
    async def test_lagging_history_does_not_reattach_settled_commitment(
        self, orchestrator, fake_client, scheduler
    ):
        await orchestrator.start()
        commitment = await orchestrator.confirm("sig-1")
        fake_client.history = [commitment]  # server copy still PENDING
        fake_client.statuses = [profit_status()]
        await scheduler.advance(SETTLE_S)

        state = await orchestrator.acknowledge()
        assert state.phase is Phase.READY
        assert state.history[0].outcome is Outcome.PROFIT


class TestAccountReads:
    @pytest.mark.asyncio
    async def test_settlement_without_wallet_refetches_balance(
        self, orchestrator, fake_client, scheduler
    ):
        fake_client.history = [make_commitment(confirmed_at=T0 - timedelta(seconds=1500))]
        fake_client.errors["get_wallet_snapshot"] = ConnectorUnavailableError("down")
        fake_client.statuses = [profit_status()]
        state = await orchestrator.start()
        assert state.phase is Phase.SETTLING
        assert state.wallet is None

        del fake_client.errors["get_wallet_snapshot"]
        fake_client.wallet = make_wallet(1012.5)
        await scheduler.advance(0)

        state = orchestrator.state
        assert state.phase is Phase.RESULT_SHOWN
        assert state.commitment.movement_balance_after == 1012.5
        assert state.wallet.movement_balance == 1012.5
        assert state.wallet.as_of == T0

    @pytest.mark.asyncio
    async def test_missing_wallet_refetched_while_ready(self, orchestrator, fake_client, scheduler):
        fake_client.errors["get_wallet_snapshot"] = ConnectorUnavailableError("down")
        state = await orchestrator.start()
        assert state.wallet is None

        del fake_client.errors["get_wallet_snapshot"]
        await scheduler.advance(30)
        wallet = orchestrator.state.wallet
        assert wallet.movement_balance == 1000
        assert wallet.as_of == T0 + timedelta(seconds=30)
        assert orchestrator.eligibility().allowed

    @pytest.mark.asyncio
    async def test_late_wallet_read_does_not_undo_settlement(
        self, orchestrator, fake_client, scheduler
    ):
        await orchestrator.start()
        await orchestrator.confirm("sig-1")
        await scheduler.advance(SETTLE_S - 100)

        fake_client.wallet = make_wallet(900)
        fake_client.wallet_gate = asyncio.Event()
        slow_read = asyncio.create_task(orchestrator.refresh_wallet())
        await asyncio.sleep(0)
        assert fake_client.calls[-1] == "get_wallet_snapshot"

        fake_client.statuses = [profit_status()]
        await scheduler.advance(100)
        assert orchestrator.state.phase is Phase.RESULT_SHOWN
        assert orchestrator.state.wallet.movement_balance == 1012.5

        fake_client.wallet_gate.set()
        await slow_read
        wallet = orchestrator.state.wallet
        assert wallet.movement_balance == 1012.5
        assert wallet.as_of == T0 + WINDOW

        fake_client.wallet_gate = None
        fake_client.wallet = make_wallet(1020)
        await scheduler.advance(5)
        state = await orchestrator.refresh_wallet()
        assert state.wallet.movement_balance == 1020

    @pytest.mark.asyncio
    async def test_activation_after_start_is_seen_at_confirm(self, orchestrator, fake_client):
        fake_client.profile = AccountProfile(id="user-1", is_trading_active=False)
        await orchestrator.start()
        assert orchestrator.eligibility().code is EligibilityCode.NOT_ACTIVATED

        fake_client.profile = AccountProfile(id="user-1", is_trading_active=True)
        commitment = await orchestrator.confirm("sig-1")
        assert commitment.id == "usage-1"
        assert orchestrator.state.account_active

    @pytest.mark.asyncio
    async def test_deactivation_after_start_blocks_confirm(self, orchestrator, fake_client):
        await orchestrator.start()
        fake_client.profile = AccountProfile(id="user-1", is_trading_active=False)
        with pytest.raises(IneligibleError) as exc_info:
            await orchestrator.confirm("sig-1")
        assert exc_info.value.reason_code == "NOT_ACTIVATED"
        assert not orchestrator.state.account_active
        assert fake_client.count("confirm_signal") == 0


class TestExhaustion:
    @pytest.mark.asyncio
    async def test_exhausted_then_resumed(self, orchestrator, fake_client, scheduler, events):
        await orchestrator.start()
        await orchestrator.confirm("sig-1")
        await scheduler.advance(SETTLE_S + 600)

        state = orchestrator.state
        assert state.phase is Phase.SETTLING
        assert state.poll_exhausted
        assert state.commitment.is_pending
        assert len(topics(events, "trade.poll_exhausted")) == 1
        assert scheduler.pending == 0

        fake_client.statuses = [profit_status()]
        state = await orchestrator.resume_polling()
        assert not state.poll_exhausted
        await scheduler.advance(0)
        assert orchestrator.state.phase is Phase.RESULT_SHOWN

    @pytest.mark.asyncio
    async def test_resume_polling_outside_settling(self, orchestrator):
        await orchestrator.start()
        with pytest.raises(LifecycleError):
            await orchestrator.resume_polling()


class TestClose:
    @pytest.mark.asyncio
    async def test_close_cancels_every_timer(self, orchestrator, fake_client, scheduler):
        await orchestrator.start()
        await orchestrator.confirm("sig-1")
        await scheduler.advance(5)
        await orchestrator.close()
        assert scheduler.pending == 0
        await scheduler.advance(SETTLE_S * 2)
        assert fake_client.count("get_commitment_status") == 0

    @pytest.mark.asyncio
    async def test_close_while_ready(self, orchestrator, scheduler):
        await orchestrator.start()
        async with orchestrator:
            pass
        assert scheduler.pending == 0
