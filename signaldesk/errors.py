"""
Structured Error Taxonomy — Typed exceptions for the SignalDesk client.

Design principles:
  - Every error carries `retryable` + `error_code` for automated decisions
  - Hierarchy mirrors the client layers: Connector → Trade lifecycle
  - Structured logging friendly: all errors serialize cleanly to JSON

Categories the trade lifecycle distinguishes:
  1. Transient / rate-limited   → ``ConnectorRateLimitError`` (backoff, never fatal)
  2. Confirmation failure       → ``ConfirmationError`` (inline, state stays READY)
  3. Polling failure            → any ``ConnectorError`` (logged, polling continues)
  4. Bounded-timeout exhaustion → not an exception; the poller just stops
"""

from __future__ import annotations

__all__ = [
    # Base
    "SignalDeskError",
    # Connector layer
    "ConnectorError",
    "ConnectorUnavailableError",
    "ConnectorAuthError",
    "ConnectorRateLimitError",
    "ResponseFormatError",
    # Trade layer
    "TradeError",
    "ConfirmationError",
    "IneligibleError",
    "CommitmentActiveError",
    "LifecycleError",
]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Base
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class SignalDeskError(Exception):
    """Root exception for the SignalDesk client.

    Attributes:
        retryable: If True, the caller should consider retrying the operation.
        error_code: Machine-readable code for dashboards and alerting.
        http_status: HTTP status of the upstream response, when there was one.
    """

    retryable: bool = False
    error_code: str = "SIGNALDESK_ERROR"
    http_status: int = 500

    def __init__(self, message: str, *, detail: str | None = None):
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> dict:
        """Serialize for structured logging."""
        return {
            "error_code": self.error_code,
            "message": str(self),
            "detail": self.detail,
            "retryable": self.retryable,
            "http_status": self.http_status,
        }


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Connector Layer — Errors from the remote trading API
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ConnectorError(SignalDeskError):
    """Base for all connector/integration errors."""

    error_code = "CONNECTOR_ERROR"

    def __init__(self, message: str, *, connector_name: str | None = None, **kwargs):
        self.connector_name = connector_name or getattr(self, "connector_name", None)
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["connector_name"] = self.connector_name
        return d


class ConnectorUnavailableError(ConnectorError):
    """Remote API is unreachable, timed out, or returned a 5xx."""

    retryable = True
    error_code = "CONNECTOR_UNAVAILABLE"
    http_status = 503


class ConnectorAuthError(ConnectorError):
    """Authentication/authorization failed for the remote API."""

    retryable = False
    error_code = "CONNECTOR_AUTH"
    http_status = 401


class ConnectorRateLimitError(ConnectorError):
    """Remote API answered "too many requests"."""

    retryable = True
    error_code = "CONNECTOR_RATE_LIMIT"
    http_status = 429


class ResponseFormatError(ConnectorError):
    """Response payload did not match the expected shape.

    Raised for unrecognised enum values too (e.g. an unknown ``outcome``),
    which must never be coerced to a default.
    """

    retryable = False
    error_code = "RESPONSE_FORMAT"
    http_status = 502


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Trade Layer — Errors from the commitment lifecycle
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TradeError(SignalDeskError):
    """Base for all trade lifecycle errors."""

    error_code = "TRADE_ERROR"
    http_status = 422


class ConfirmationError(TradeError):
    """A signal could not be confirmed (expired, balance moved, quota used...)."""

    error_code = "CONFIRMATION_FAILED"

    def __init__(self, message: str, *, signal_id: str = "", **kwargs):
        self.signal_id = signal_id
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["signal_id"] = self.signal_id
        return d


class IneligibleError(ConfirmationError):
    """The eligibility gate blocked the commitment before any network call."""

    error_code = "INELIGIBLE"

    def __init__(self, message: str, *, reason_code: str = "", **kwargs):
        self.reason_code = reason_code
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["reason_code"] = self.reason_code
        return d


class CommitmentActiveError(IneligibleError):
    """Another commitment is still pending in this session."""

    error_code = "COMMITMENT_ACTIVE"
    http_status = 409


class LifecycleError(TradeError):
    """An operation was attempted in a phase that does not allow it."""

    error_code = "LIFECYCLE_ERROR"
    http_status = 409

    def __init__(self, message: str, *, phase: str = "", **kwargs):
        self.phase = phase
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["phase"] = self.phase
        return d
