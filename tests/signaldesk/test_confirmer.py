"""
Tests for signaldesk.trading.confirmer — stake display and confirmation.
"""

import pytest

from signaldesk.errors import (
    CommitmentActiveError,
    ConfirmationError,
    ConnectorError,
    ConnectorRateLimitError,
    ConnectorUnavailableError,
    IneligibleError,
)
from signaldesk.models import AccountProfile
from signaldesk.trading.confirmer import CommitmentConfirmer, display_stake

from factories import T0, make_receipt, make_signal, make_wallet


@pytest.fixture
def confirmer(fake_client, scheduler):
    return CommitmentConfirmer(fake_client, scheduler, min_balance=250)


class TestDisplayStake:
    def test_percentage_of_movement_balance(self):
        assert display_stake(make_wallet(1000), make_signal(percent=10)) == 100.0

    def test_rounds_to_cents(self):
        assert display_stake(make_wallet(333.33), make_signal(percent=7.5)) == 25.0

    def test_no_wallet(self):
        assert display_stake(None, make_signal()) == 0.0


class TestConfirm:
    @pytest.mark.asyncio
    async def test_returns_pending_commitment(self, confirmer, fake_client):
        c = await confirmer.confirm(make_signal())
        assert c.id == "usage-1"
        assert c.is_pending
        assert c.committed_amount == 100.0
        assert c.signal_id == "sig-1"
        assert fake_client.calls == ["get_wallet_snapshot", "get_profile", "confirm_signal"]
        assert confirmer.last_wallet.as_of == T0

    @pytest.mark.asyncio
    async def test_server_amount_is_kept_on_drift(self, confirmer, fake_client):
        fake_client.receipt = make_receipt(committed=95.0)
        c = await confirmer.confirm(make_signal(percent=10))
        assert c.committed_amount == 95.0

    @pytest.mark.asyncio
    async def test_active_commitment_rejected_before_network(self, confirmer, fake_client):
        with pytest.raises(CommitmentActiveError) as exc_info:
            await confirmer.confirm(make_signal(), has_active=True)
        assert exc_info.value.reason_code == "COMMITMENT_ACTIVE"
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_fresh_wallet_rechecked(self, confirmer, fake_client):
        fake_client.wallet = make_wallet(100)
        with pytest.raises(IneligibleError) as exc_info:
            await confirmer.confirm(make_signal())
        assert exc_info.value.reason_code == "INSUFFICIENT_BALANCE"
        assert fake_client.count("confirm_signal") == 0

    @pytest.mark.asyncio
    async def test_not_activated(self, confirmer, fake_client):
        fake_client.profile = AccountProfile(id="user-1", is_trading_active=False)
        with pytest.raises(IneligibleError) as exc_info:
            await confirmer.confirm(make_signal())
        assert exc_info.value.reason_code == "NOT_ACTIVATED"
        assert fake_client.count("confirm_signal") == 0

    @pytest.mark.asyncio
    async def test_profile_failure(self, confirmer, fake_client):
        fake_client.errors["get_profile"] = ConnectorUnavailableError("Server error: 503")
        with pytest.raises(ConfirmationError, match="Server error"):
            await confirmer.confirm(make_signal())
        assert fake_client.count("confirm_signal") == 0

    @pytest.mark.asyncio
    async def test_rate_limited_profile_returns_none(self, confirmer, fake_client):
        fake_client.errors["get_profile"] = ConnectorRateLimitError("Too many requests")
        assert await confirmer.confirm(make_signal()) is None
        assert fake_client.count("confirm_signal") == 0

    @pytest.mark.asyncio
    async def test_rate_limited_confirm_returns_none(self, confirmer, fake_client):
        fake_client.receipt = ConnectorRateLimitError("Too many requests")
        assert await confirmer.confirm(make_signal()) is None

    @pytest.mark.asyncio
    async def test_rate_limited_wallet_returns_none(self, confirmer, fake_client):
        fake_client.errors["get_wallet_snapshot"] = ConnectorRateLimitError("Too many requests")
        assert await confirmer.confirm(make_signal()) is None
        assert fake_client.count("confirm_signal") == 0

    @pytest.mark.asyncio
    async def test_server_refusal_carries_message(self, confirmer, fake_client):
        fake_client.receipt = ConnectorError("Signal has expired")
        with pytest.raises(ConfirmationError, match="Signal has expired") as exc_info:
            await confirmer.confirm(make_signal("sig-7"))
        assert exc_info.value.signal_id == "sig-7"
        assert not isinstance(exc_info.value, IneligibleError)
