"""
CommitmentConfirmer — Turns a selected signal into a frozen commitment.

Sequence for one confirmation:

  1. reject if a commitment is already tracked (no network call)
  2. fetch a fresh wallet and profile together, then re-run the gate
  3. POST the confirmation
  4. freeze the server's ``committedAmount`` into a PENDING ``Commitment``

The locally displayed stake is for the user's eyes only; when the server's
figure differs it is logged and the server's figure is kept.
"""

from __future__ import annotations

import asyncio

import structlog

from signaldesk.core.scheduler import Scheduler
from signaldesk.errors import (
    CommitmentActiveError,
    ConfirmationError,
    ConnectorError,
    ConnectorRateLimitError,
    IneligibleError,
)
from signaldesk.models import AccountProfile, Commitment, Signal, WalletSnapshot
from signaldesk.observability import CONFIRMATIONS, trace_operation
from signaldesk.trading.eligibility import DEFAULT_MIN_BALANCE, EligibilityCode, can_commit

logger = structlog.get_logger(__name__)

# Half a cent: anything smaller is rounding noise.
_DRIFT_TOLERANCE = 0.005


def display_stake(wallet: WalletSnapshot | None, signal: Signal) -> float:
    """Stake shown before confirming: ``movement_balance × commit_percent / 100``."""
    movement = wallet.movement_balance if wallet is not None else 0.0
    return round(movement * signal.commit_percent / 100, 2)


class CommitmentConfirmer:
    """Confirms signals against the remote API.

    ``last_wallet`` and ``last_profile`` hold what was fetched for the most
    recent attempt. The wallet is stamped with the instant the fetch was issued.
    """

    def __init__(
        self,
        client,
        scheduler: Scheduler,
        *,
        min_balance: float = DEFAULT_MIN_BALANCE,
    ) -> None:
        self._client = client
        self._scheduler = scheduler
        self._min_balance = min_balance
        self.last_wallet: WalletSnapshot | None = None
        self.last_profile: AccountProfile | None = None

    async def confirm(
        self,
        signal: Signal,
        *,
        has_active: bool = False,
    ) -> Commitment | None:
        """Confirm ``signal``.

        Returns:
            The PENDING commitment, or ``None`` when the API rate-limited
            the request (nothing was committed; the user may retry).

        Raises:
            CommitmentActiveError: A commitment is already tracked.
            IneligibleError: The gate rejected the fresh wallet or profile.
            ConfirmationError: The API refused or failed the confirmation.
        """
        if has_active:
            CONFIRMATIONS.labels(status="rejected").inc()
            raise CommitmentActiveError(
                "A commitment is already in progress",
                signal_id=signal.id,
                reason_code=EligibilityCode.COMMITMENT_ACTIVE.value,
            )

        with trace_operation("confirm", signal_id=signal.id):
            issued = self._scheduler.now()
            wallet, profile = await asyncio.gather(
                self._client.get_wallet_snapshot(),
                self._client.get_profile(),
                return_exceptions=True,
            )
            fetched = (wallet, profile)
            if any(isinstance(r, ConnectorRateLimitError) for r in fetched):
                logger.warning("confirm_rate_limited", signal_id=signal.id, stage="account")
                CONFIRMATIONS.labels(status="rate_limited").inc()
                return None
            for result in fetched:
                if isinstance(result, ConnectorError):
                    CONFIRMATIONS.labels(status="failed").inc()
                    raise ConfirmationError(str(result), signal_id=signal.id) from result
                if isinstance(result, BaseException):
                    raise result
            wallet = wallet.model_copy(update={"as_of": issued})
            self.last_wallet = wallet
            self.last_profile = profile

            gate = can_commit(
                wallet,
                profile.is_trading_active,
                min_balance=self._min_balance,
            )
            if not gate.allowed:
                CONFIRMATIONS.labels(status="rejected").inc()
                logger.info("confirm_ineligible", signal_id=signal.id, code=gate.code.value)
                raise IneligibleError(
                    gate.reason, signal_id=signal.id, reason_code=gate.code.value
                )

            expected = display_stake(wallet, signal)
            try:
                receipt = await self._client.confirm_signal(signal.id)
            except ConnectorRateLimitError:
                logger.warning("confirm_rate_limited", signal_id=signal.id, stage="confirm")
                CONFIRMATIONS.labels(status="rate_limited").inc()
                return None
            except ConnectorError as e:
                CONFIRMATIONS.labels(status="failed").inc()
                logger.info("confirm_failed", signal_id=signal.id, error=str(e))
                raise ConfirmationError(str(e), signal_id=signal.id) from e

        if abs(receipt.committed_amount - expected) > _DRIFT_TOLERANCE:
            logger.warning(
                "stake_drift_detected",
                signal_id=signal.id,
                usage_id=receipt.usage_id,
                displayed=expected,
                committed=receipt.committed_amount,
            )

        commitment = receipt.to_commitment(signal, confirmed_at=self._scheduler.now())
        CONFIRMATIONS.labels(status="confirmed").inc()
        logger.info(
            "commitment_confirmed",
            usage_id=commitment.id,
            signal_id=signal.id,
            committed_amount=commitment.committed_amount,
            settles_at=commitment.settles_at.isoformat(),
        )
        return commitment


__all__ = ["CommitmentConfirmer", "display_stake"]
