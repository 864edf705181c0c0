"""
PlatformConnector — Async client for the custodial trading API.

Wraps the dashboard's REST API as a connector. Every response arrives in
the ``{success, message, data}`` envelope; ``_request`` unwraps it and
maps failures onto the connector error taxonomy:

    transport error / timeout / 5xx  → ConnectorUnavailableError
    429                              → ConnectorRateLimitError
    401                              → ConnectorAuthError
    other 4xx / ``success: false``   → ConnectorError (server message kept)
    unparseable / unknown payload    → ResponseFormatError

Idempotent reads (wallet, profile, history) retry on 429 with exponential
backoff. Catalog, confirm and status polling do not: their callers own the
retry policy.

Usage:
    async with PlatformConnector() as platform:
        snapshot = await platform.client.list_eligible_signals()
"""

from __future__ import annotations

import time
from datetime import timedelta
from typing import Any, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from signaldesk.config import SignalDeskSettings, get_settings
from signaldesk.connectors.base_connector import BaseConnector
from signaldesk.errors import (
    ConnectorAuthError,
    ConnectorError,
    ConnectorRateLimitError,
    ConnectorUnavailableError,
    ResponseFormatError,
)
from signaldesk.models import (
    AccountProfile,
    CatalogSnapshot,
    Commitment,
    CommitmentStatus,
    ConfirmReceipt,
    HistoryPage,
    WalletSnapshot,
)
from signaldesk.observability import API_LATENCY

logger = structlog.get_logger(__name__)

CONNECTOR_NAME = "platform"
RATE_LIMIT_MESSAGE = "Too many requests. Please wait a moment and try again."

M = TypeVar("M", bound=BaseModel)


def _parse(model: type[M], data: Any, *, path: str) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.warning("platform_response_invalid", path=path, errors=e.error_count())
        raise ResponseFormatError(
            f"Unexpected response shape from {path}",
            connector_name=CONNECTOR_NAME,
            detail=str(e),
        ) from e


# ── Async Platform Client ────────────────────────────────────────────


class AsyncPlatformClient:
    """
    Async client for the signal trading API.

    Features:
    - httpx.AsyncClient with HTTP/2, connection pooling and bearer auth
    - Envelope unwrapping and typed responses (pydantic models)
    - Automatic retry with exponential backoff on rate limits for reads
    - Structured logging for every API call
    """

    def __init__(
        self,
        *,
        base_url: str,
        token: str = "",
        timeout: float = 30.0,
        settlement_window: timedelta = timedelta(seconds=1200),
    ):
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._settlement_window = settlement_window
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            http2=True,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=10.0, pool=5.0),
            limits=httpx.Limits(
                max_connections=10,
                max_keepalive_connections=5,
                keepalive_expiry=30.0,
            ),
        )

    @classmethod
    def from_settings(cls, settings: SignalDeskSettings | None = None) -> "AsyncPlatformClient":
        settings = settings or get_settings()
        return cls(
            base_url=settings.api_base_url,
            token=settings.api_token,
            timeout=settings.http_timeout_seconds,
            settlement_window=timedelta(seconds=settings.settlement_window_seconds),
        )

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        """Execute an API request and return the envelope's ``data``."""
        start = time.monotonic()
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise ConnectorUnavailableError(
                f"Request timed out: {e}", connector_name=CONNECTOR_NAME
            ) from e
        except httpx.TransportError as e:
            raise ConnectorUnavailableError(
                f"Connection failed: {e}", connector_name=CONNECTOR_NAME
            ) from e

        latency = time.monotonic() - start
        API_LATENCY.labels(method=method).observe(latency)
        latency_ms = round(latency * 1000)

        if resp.status_code == 429:
            logger.warning("platform_rate_limited", path=path, latency_ms=latency_ms)
            raise ConnectorRateLimitError(RATE_LIMIT_MESSAGE, connector_name=CONNECTOR_NAME)
        if resp.status_code == 401:
            raise ConnectorAuthError(
                "Authentication failed — check your API token",
                connector_name=CONNECTOR_NAME,
                detail="401",
            )
        if resp.status_code >= 500:
            raise ConnectorUnavailableError(
                f"Server error: {resp.status_code}",
                connector_name=CONNECTOR_NAME,
                detail=str(resp.status_code),
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise ResponseFormatError(
                f"Response from {path} is not JSON", connector_name=CONNECTOR_NAME
            ) from e
        if not isinstance(body, dict):
            raise ResponseFormatError(
                f"Response from {path} is not an envelope", connector_name=CONNECTOR_NAME
            )

        if resp.status_code >= 400 or body.get("success") is False:
            raise ConnectorError(
                body.get("message") or "An error occurred",
                connector_name=CONNECTOR_NAME,
                detail=str(resp.status_code),
            )

        logger.debug(
            "platform_request",
            method=method,
            path=path,
            status=resp.status_code,
            latency_ms=latency_ms,
            http_version=resp.http_version,
        )
        return body.get("data")

    # ── Signals ──────────────────────────────────────────────────────

    async def list_eligible_signals(self) -> CatalogSnapshot:
        """Fetch the signals the account can confirm right now, with quota counters."""
        path = "/signals/available"
        data = await self._request("GET", path)
        return _parse(CatalogSnapshot, data or {}, path=path)

    async def confirm_signal(self, signal_id: str) -> ConfirmReceipt:
        """Commit to a signal. Not retried: a duplicate POST could double-commit."""
        path = f"/signals/{signal_id}/confirm"
        data = await self._request("POST", path)
        receipt = _parse(ConfirmReceipt, data, path=path)
        logger.info(
            "platform_signal_confirmed",
            signal_id=signal_id,
            usage_id=receipt.usage_id,
            committed_amount=receipt.committed_amount,
        )
        return receipt

    async def get_commitment_status(self, usage_id: str) -> CommitmentStatus:
        path = f"/signals/usage/{usage_id}"
        data = await self._request("GET", path)
        return _parse(CommitmentStatus, data, path=path)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type(ConnectorRateLimitError),
        reraise=True,
    )
    async def list_history(self, page: int = 1, page_size: int = 50) -> HistoryPage:
        """Fetch one page of trade history, newest first."""
        path = "/signals/history"
        data = await self._request("GET", path, params={"page": page, "limit": page_size})
        if not isinstance(data, dict):
            raise ResponseFormatError(f"Unexpected response shape from {path}", connector_name=CONNECTOR_NAME)
        try:
            items = [
                Commitment.from_history_item(row, settlement_window=self._settlement_window)
                for row in data.get("history") or []
            ]
        except (ValidationError, ValueError, TypeError) as e:
            raise ResponseFormatError(
                f"Unexpected history entry from {path}",
                connector_name=CONNECTOR_NAME,
                detail=str(e),
            ) from e
        pagination = data.get("pagination") or {}
        return HistoryPage(
            items=items,
            page=pagination.get("page", page),
            pages=pagination.get("pages", 1),
            total=pagination.get("total", len(items)),
        )

    # ── Wallet & Account ─────────────────────────────────────────────

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type(ConnectorRateLimitError),
        reraise=True,
    )
    async def get_wallet_snapshot(self) -> WalletSnapshot:
        path = "/wallet"
        data = await self._request("GET", path)
        wallet = data.get("wallet") if isinstance(data, dict) else None
        return _parse(WalletSnapshot, wallet, path=path)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type(ConnectorRateLimitError),
        reraise=True,
    )
    async def get_profile(self) -> AccountProfile:
        path = "/user/profile"
        data = await self._request("GET", path)
        return _parse(AccountProfile, data, path=path)

    async def close(self) -> None:
        """Close the HTTP connection pool."""
        await self._client.aclose()


# ── Connector ────────────────────────────────────────────────────────


class PlatformConnector(BaseConnector):
    """
    Trading API integration block — signals, commitments, wallet, profile.

    Provides the async client via ``self.client``, built lazily from
    ``SignalDeskSettings``.
    """

    @property
    def name(self) -> str:
        return CONNECTOR_NAME

    @property
    def icon(self) -> str:
        return "📈"

    @property
    def description(self) -> str:
        return "Confirm trading signals and track their settlement"

    def __init__(self, settings: SignalDeskSettings | None = None):
        self._settings = settings
        self._client: AsyncPlatformClient | None = None

    @property
    def client(self) -> AsyncPlatformClient:
        """Get the async client. Lazy-initializes on first access."""
        if self._client is None:
            settings = self._settings or get_settings()
            if not settings.api_token:
                raise ConnectorAuthError(
                    "SIGNALDESK_API_TOKEN is not set", connector_name=CONNECTOR_NAME
                )
            self._client = AsyncPlatformClient.from_settings(settings)
        return self._client

    async def setup(self) -> None:
        """Pre-initialize the client."""
        _ = self.client

    async def teardown(self) -> None:
        """Close the HTTP/2 connection pool."""
        if self._client:
            await self._client.close()
            self._client = None

    async def health_check(self) -> bool:
        try:
            await self.client.get_profile()
            return True
        except ConnectorError as e:
            logger.warning("platform_health_check_failed", error=str(e))
            return False
