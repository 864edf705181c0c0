"""
EligibilityGate — Pure checks deciding whether a commitment may be made.

Evaluated on every catalog render and again inside the confirmer after a
fresh wallet fetch. Rules, first failure wins:

  0. an active commitment is tracked        → COMMITMENT_ACTIVE
  1. trade history not read from the server → HISTORY_UNKNOWN
  2. movement balance below the minimum     → INSUFFICIENT_BALANCE
  3. account not activated for trading      → NOT_ACTIVATED
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from signaldesk.models import Signal, SignalKind, SignalLimits, WalletSnapshot

DEFAULT_MIN_BALANCE = 250.0


class EligibilityCode(str, Enum):
    OK = "OK"
    COMMITMENT_ACTIVE = "COMMITMENT_ACTIVE"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    NOT_ACTIVATED = "NOT_ACTIVATED"
    LIMIT_REACHED = "LIMIT_REACHED"
    HISTORY_UNKNOWN = "HISTORY_UNKNOWN"


@dataclass(frozen=True)
class Eligibility:
    allowed: bool
    reason: str = ""
    code: EligibilityCode = EligibilityCode.OK

    def __bool__(self) -> bool:
        return self.allowed


ELIGIBLE = Eligibility(allowed=True)


def can_commit(
    wallet: WalletSnapshot | None,
    account_active: bool,
    *,
    has_active: bool = False,
    history_known: bool = True,
    min_balance: float = DEFAULT_MIN_BALANCE,
) -> Eligibility:
    """Decide whether the account may commit to a signal right now.

    A wallet that has not been loaded yet counts as a zero balance.
    """
    if has_active:
        return Eligibility(
            False, "a commitment is already in progress", EligibilityCode.COMMITMENT_ACTIVE
        )
    if not history_known:
        return Eligibility(
            False, "trade history not loaded", EligibilityCode.HISTORY_UNKNOWN
        )
    movement = wallet.movement_balance if wallet is not None else 0.0
    if movement < min_balance:
        return Eligibility(
            False, "insufficient balance", EligibilityCode.INSUFFICIENT_BALANCE
        )
    if not account_active:
        return Eligibility(False, "not activated", EligibilityCode.NOT_ACTIVATED)
    return ELIGIBLE


def limit_reached(signal: Signal, limits: SignalLimits | None) -> bool:
    """True when the signal's daily or referral quota is used up.

    Welcome signals carry no quota.
    """
    if limits is None:
        return False
    if signal.kind is SignalKind.DAILY:
        return limits.daily_signals_remaining <= 0
    if signal.kind is SignalKind.REFERRAL:
        return limits.referral_signals_remaining <= 0
    return False


__all__ = [
    "DEFAULT_MIN_BALANCE",
    "Eligibility",
    "EligibilityCode",
    "ELIGIBLE",
    "can_commit",
    "limit_reached",
]
