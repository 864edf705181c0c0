"""
Pydantic models for the signal trading API.

Every response shape the trade lifecycle consumes is a closed model here:

    GET  /signals/available     → CatalogSnapshot (Signal[] + SignalLimits)
    POST /signals/{id}/confirm  → ConfirmReceipt
    GET  /signals/usage/{id}    → CommitmentStatus
    GET  /signals/history       → HistoryPage (Commitment[])
    GET  /wallet                → WalletSnapshot
    GET  /user/profile          → AccountProfile

Wire fields are camelCase and accepted by alias; attributes are snake_case.
Enum fields are strict: an unknown ``outcome`` or ``type`` is a validation
error, never a silent default.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


# ── Enums ───────────────────────────────────────────────────────────


class Outcome(str, Enum):
    """Settlement state of a commitment."""

    PENDING = "PENDING"
    PROFIT = "PROFIT"
    LOSS = "LOSS"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not Outcome.PENDING


class SignalKind(str, Enum):
    DAILY = "DAILY"
    REFERRAL = "REFERRAL"
    WELCOME = "WELCOME"


class TimeSlot(str, Enum):
    MORNING = "MORNING"
    EVENING = "EVENING"
    REFERRAL = "REFERRAL"
    WELCOME = "WELCOME"
    CUSTOM = "CUSTOM"


class _WireModel(BaseModel):
    """Frozen base for API payloads (camelCase on the wire)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    @field_validator("*", mode="after")
    @classmethod
    def assume_utc(cls, value: Any) -> Any:
        # Server instants without an offset are UTC.
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


_RESULT_FIELDS = (
    "resultAmount",
    "result_amount",
    "profitPercent",
    "profit_percent",
    "movementBalanceAfter",
    "movement_balance_after",
    "settledAt",
    "settled_at",
)


def _strip_result_fields(data: Any) -> Any:
    """Drop result fields from a payload whose outcome is still PENDING.

    The API fills ``resultAmount: 0`` and similar placeholders on pending
    usages; they carry no meaning until settlement.
    """
    if isinstance(data, dict) and data.get("outcome", "PENDING") == "PENDING":
        return {k: v for k, v in data.items() if k not in _RESULT_FIELDS}
    return data


# ── Catalog ─────────────────────────────────────────────────────────


class Signal(_WireModel):
    """A server-offered, time-boxed opportunity to stake a share of balance."""

    id: str
    title: str = ""
    kind: SignalKind = Field(alias="type")
    time_slot: TimeSlot = TimeSlot.CUSTOM
    custom_time: str | None = None
    description: str | None = None
    commit_percent: float = Field(ge=0, le=100)
    expires_at: datetime | None = None
    time_remaining: float = Field(
        default=0.0, ge=0, description="Seconds left to confirm, as of the fetch"
    )

    @property
    def slot_label(self) -> str:
        """Display label for the availability window."""
        if self.custom_time:
            return f"{self.custom_time} UTC"
        labels = {
            TimeSlot.MORNING: "9:00 AM GMT",
            TimeSlot.EVENING: "7:00 PM GMT",
        }
        return labels.get(self.time_slot, self.time_slot.value.title())


class SignalLimits(_WireModel):
    """Per-account quota counters for daily and referral signals."""

    daily_signals_used: int = 0
    daily_signals_remaining: int = 0
    referral_signals_used: int = 0
    referral_signals_remaining: int = 0
    max_daily_signals: int = 0
    max_referral_signals: int = 0


class CatalogSnapshot(_WireModel):
    """One fetch of the eligible-signal list."""

    signals: list[Signal] = Field(default_factory=list)
    limits: SignalLimits = Field(default_factory=SignalLimits)
    fetched_at: datetime | None = None

    def by_kind(self, kind: SignalKind) -> list[Signal]:
        return [s for s in self.signals if s.kind is kind]

    def find(self, signal_id: str) -> Signal | None:
        return next((s for s in self.signals if s.id == signal_id), None)


# ── Commitments ─────────────────────────────────────────────────────


class CommitmentStatus(_WireModel):
    """Poll response for a single usage (``GET /signals/usage/{id}``)."""

    id: str
    outcome: Outcome
    committed_amount: float
    result_amount: float | None = None
    profit_percent: float | None = None
    movement_balance_after: float | None = None
    settled_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def strip_pending_results(cls, data: Any) -> Any:
        return _strip_result_fields(data)

    @property
    def terminal(self) -> bool:
        return self.outcome.is_terminal


class Commitment(_WireModel):
    """The frozen record of a confirmed signal, tracked until settlement.

    ``committed_amount`` is the server's figure at confirmation time and is
    never recomputed from later balances.
    """

    id: str
    signal_id: str = ""
    signal_title: str = ""
    committed_amount: float
    confirmed_at: datetime
    settles_at: datetime
    outcome: Outcome = Outcome.PENDING
    result_amount: float | None = None
    profit_percent: float | None = None
    movement_balance_before: float | None = None
    movement_balance_after: float | None = None
    settled_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def strip_pending_results(cls, data: Any) -> Any:
        return _strip_result_fields(data)

    @property
    def is_pending(self) -> bool:
        return self.outcome is Outcome.PENDING

    def remaining(self, now: datetime) -> float:
        """Seconds until ``settles_at``, clamped at zero."""
        return max(0.0, (self.settles_at - now).total_seconds())

    def settle(self, status: CommitmentStatus) -> Commitment:
        """Return a copy finalised with a terminal status."""
        if not status.terminal:
            raise ValueError(f"Cannot settle {self.id} with non-terminal {status.outcome}")
        if status.id != self.id:
            raise ValueError(f"Status {status.id} does not belong to {self.id}")
        return self.model_copy(
            update={
                "outcome": status.outcome,
                "result_amount": status.result_amount,
                "profit_percent": status.profit_percent,
                "movement_balance_after": status.movement_balance_after,
                "settled_at": status.settled_at,
            }
        )

    @classmethod
    def from_history_item(
        cls, item: dict, *, settlement_window: timedelta
    ) -> Commitment:
        """Build from a ``/signals/history`` row.

        History rows nest the signal (``{"signal": {"id", "title"}}``) and
        older rows carry no ``settlesAt``; those fall back to
        ``confirmedAt + settlement_window``.
        """
        data = dict(item)
        signal = data.pop("signal", None) or {}
        data.setdefault("signalId", signal.get("id", ""))
        data.setdefault("signalTitle", signal.get("title", ""))
        if not data.get("settlesAt") and data.get("confirmedAt"):
            data["settlesAt"] = _parse_instant(data["confirmedAt"]) + settlement_window
        return cls.model_validate(data)


class ConfirmReceipt(_WireModel):
    """Response to ``POST /signals/{id}/confirm``."""

    usage_id: str = Field(validation_alias=AliasChoices("usageId", "id", "usage_id"))
    committed_amount: float
    settles_at: datetime
    confirmed_at: datetime | None = None
    movement_balance_before: float | None = None
    locked_balance: float | None = None
    available_balance: float | None = None

    def to_commitment(self, signal: Signal, *, confirmed_at: datetime) -> Commitment:
        """Freeze the receipt into a PENDING commitment."""
        return Commitment(
            id=self.usage_id,
            signal_id=signal.id,
            signal_title=signal.title,
            committed_amount=self.committed_amount,
            confirmed_at=self.confirmed_at or confirmed_at,
            settles_at=self.settles_at,
            movement_balance_before=self.movement_balance_before,
        )


class HistoryPage(_WireModel):
    items: list[Commitment] = Field(default_factory=list)
    page: int = 1
    pages: int = 1
    total: int = 0


# ── Wallet & Account ────────────────────────────────────────────────


class TransferLock(_WireModel):
    is_locked: bool = False
    lock_ends_at: datetime | None = None


class WalletSnapshot(_WireModel):
    """Cached view of balances.

    ``as_of`` is stamped locally with the instant the fetch was issued (or
    the reconciler overlay was applied); the newer snapshot wins.
    """

    main_balance: float = 0.0
    movement_balance: float = 0.0
    total_balance: float = 0.0
    transfer_lock: TransferLock | None = None
    as_of: datetime | None = Field(default=None, exclude=True)

    def overlay_movement(self, movement_balance: float, *, as_of: datetime) -> WalletSnapshot:
        """Apply a server-reported movement balance without a refetch."""
        return self.model_copy(
            update={
                "movement_balance": movement_balance,
                "total_balance": round(self.main_balance + movement_balance, 2),
                "as_of": as_of,
            }
        )


class AccountProfile(_WireModel):
    id: str = ""
    is_trading_active: bool = False


def _parse_instant(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
