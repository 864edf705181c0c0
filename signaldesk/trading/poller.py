"""
SettlementPoller — Bounded, rate-limit-aware polling for a commitment's outcome.

Two layers:

  - ``RetryPolicy`` + ``PollUntilTerminal``: a generic poll-until-terminal
    primitive. It knows nothing about commitments; it calls a probe,
    asks the policy whether the value is terminal and how long to wait,
    and stops when the attempt or wall-clock budget runs out.
  - ``SettlementPoller``: wires the primitive to
    ``GET /signals/usage/{id}`` and classifies each response.

Delay rules (per attempt, no accumulation):

    rate-limited response        → backoff_interval
    anything else non-terminal   → base_interval

Usage::

    poller = SettlementPoller(client, scheduler, RetryPolicy.from_settings())
    poller.start(commitment, on_settled=handle_status, on_exhausted=handle_timeout)
    ...
    poller.stop()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

import structlog

from signaldesk.config import SignalDeskSettings, get_settings
from signaldesk.core.scheduler import Scheduler, TimerHandle
from signaldesk.errors import ConnectorError, ConnectorRateLimitError
from signaldesk.models import Commitment, CommitmentStatus
from signaldesk.observability import POLL_ATTEMPTS

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _status_is_terminal(value: Any) -> bool:
    return bool(getattr(value, "terminal", False))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Generic poll primitive
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass(frozen=True)
class PollResult(Generic[T]):
    """Outcome of one probe.

    Exactly one of these holds: ``status`` is set, ``rate_limited`` is
    True, or ``error`` describes why there is no usable status.
    """

    status: T | None = None
    terminal: bool = False
    rate_limited: bool = False
    error: str | None = None


RATE_LIMITED: PollResult = PollResult(rate_limited=True)


@dataclass(frozen=True)
class RetryPolicy:
    """Budget and cadence for a poll-until-terminal loop."""

    max_attempts: int = 40
    base_interval: float = 5.0
    backoff_interval: float = 15.0
    max_elapsed: float = 180.0
    is_terminal: Callable[[Any], bool] = field(default=_status_is_terminal, compare=False)

    @classmethod
    def from_settings(cls, settings: SignalDeskSettings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            max_attempts=settings.poll_max_attempts,
            base_interval=settings.poll_interval_seconds,
            backoff_interval=settings.poll_backoff_seconds,
            max_elapsed=settings.poll_max_elapsed_seconds,
        )

    def next_delay(self, result: PollResult) -> float:
        return self.backoff_interval if result.rate_limited else self.base_interval


class PollUntilTerminal(Generic[T]):
    """Drive ``probe`` on a scheduler until the policy calls a value terminal.

    ``on_terminal`` receives the terminal value; ``on_exhausted`` is called
    once if the budget runs out first. ``cancel()`` stops the loop at once
    and any probe response that arrives afterwards is dropped.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        policy: RetryPolicy,
        probe: Callable[[], Awaitable[PollResult[T]]],
        *,
        name: str = "poll",
    ) -> None:
        self._scheduler = scheduler
        self._policy = policy
        self._probe = probe
        self._name = name
        self._handle: TimerHandle | None = None
        self._run = 0
        self._on_terminal: Callable[[T], Awaitable[None]] | None = None
        self._on_exhausted: Callable[[], Awaitable[None]] | None = None
        self.attempts = 0
        self.started_at = None

    @property
    def active(self) -> bool:
        return self._on_terminal is not None

    def start(
        self,
        *,
        on_terminal: Callable[[T], Awaitable[None]],
        on_exhausted: Callable[[], Awaitable[None]],
        delay: float = 0.0,
    ) -> None:
        """Start a fresh budget; the first probe runs after ``delay`` seconds."""
        self.cancel()
        self._run += 1
        self._on_terminal = on_terminal
        self._on_exhausted = on_exhausted
        self.attempts = 0
        self.started_at = None
        self._schedule(delay, self._run)

    def cancel(self) -> None:
        self._run += 1
        self._on_terminal = None
        self._on_exhausted = None
        if self._handle is not None:
            self._scheduler.cancel(self._handle)
            self._handle = None

    def _schedule(self, delay: float, run: int) -> None:
        self._handle = self._scheduler.schedule(
            delay, lambda: self._attempt(run), name=self._name
        )

    async def _attempt(self, run: int) -> None:
        if run != self._run:
            return
        now = self._scheduler.now()
        if self.started_at is None:
            self.started_at = now
        self.attempts += 1

        result = await self._probe()
        if run != self._run:
            logger.debug("poll_response_discarded", poll=self._name, attempt=self.attempts)
            return

        if result.status is not None and self._policy.is_terminal(result.status):
            on_terminal = self._on_terminal
            self._on_terminal = None
            self._on_exhausted = None
            self._handle = None
            await on_terminal(result.status)
            return

        delay = self._policy.next_delay(result)
        elapsed = (self._scheduler.now() - self.started_at).total_seconds()
        if self.attempts >= self._policy.max_attempts or elapsed + delay > self._policy.max_elapsed:
            logger.info(
                "poll_exhausted",
                poll=self._name,
                attempts=self.attempts,
                elapsed_s=round(elapsed, 1),
            )
            on_exhausted = self._on_exhausted
            self._on_terminal = None
            self._on_exhausted = None
            self._handle = None
            await on_exhausted()
            return

        self._schedule(delay, run)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  SettlementPoller
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class SettlementPoller:
    """Polls one commitment's usage endpoint until it settles."""

    def __init__(self, client, scheduler: Scheduler, policy: RetryPolicy | None = None) -> None:
        self._client = client
        self._scheduler = scheduler
        self._policy = policy or RetryPolicy()
        self._commitment_id: str | None = None
        self._loop: PollUntilTerminal[CommitmentStatus] = PollUntilTerminal(
            scheduler, self._policy, self._probe, name="settlement_poll"
        )

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def active(self) -> bool:
        return self._loop.active

    @property
    def attempts(self) -> int:
        return self._loop.attempts

    async def poll_once(self, commitment_id: str) -> PollResult[CommitmentStatus]:
        """One status request, classified. Never raises for API failures."""
        try:
            status = await self._client.get_commitment_status(commitment_id)
        except ConnectorRateLimitError:
            POLL_ATTEMPTS.labels(result="rate_limited").inc()
            logger.info("settlement_poll_rate_limited", usage_id=commitment_id)
            return RATE_LIMITED
        except ConnectorError as e:
            POLL_ATTEMPTS.labels(result="error").inc()
            logger.warning(
                "settlement_poll_failed",
                usage_id=commitment_id,
                error=str(e),
                error_code=e.error_code,
            )
            return PollResult(error=str(e))

        if status.id != commitment_id:
            POLL_ATTEMPTS.labels(result="error").inc()
            logger.warning("settlement_poll_mismatch", usage_id=commitment_id, got=status.id)
            return PollResult(error=f"status for {status.id}, expected {commitment_id}")

        POLL_ATTEMPTS.labels(result="terminal" if status.terminal else "pending").inc()
        logger.debug("settlement_polled", usage_id=commitment_id, outcome=status.outcome.value)
        return PollResult(status=status, terminal=status.terminal)

    async def _probe(self) -> PollResult[CommitmentStatus]:
        return await self.poll_once(self._commitment_id)

    def start(
        self,
        commitment: Commitment,
        *,
        on_settled: Callable[[CommitmentStatus], Awaitable[None]],
        on_exhausted: Callable[[], Awaitable[None]],
    ) -> None:
        """Begin polling; the first request waits until ``settles_at``."""
        self._commitment_id = commitment.id
        delay = commitment.remaining(self._scheduler.now())
        logger.info("settlement_poll_started", usage_id=commitment.id, first_delay_s=round(delay, 3))
        self._loop.start(on_terminal=on_settled, on_exhausted=on_exhausted, delay=delay)

    def stop(self) -> None:
        self._loop.cancel()


__all__ = [
    "PollResult",
    "RATE_LIMITED",
    "RetryPolicy",
    "PollUntilTerminal",
    "SettlementPoller",
]
