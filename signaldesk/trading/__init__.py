"""
Trading — The trade commitment lifecycle.

  - SignalCatalog: eligible signals and their availability windows
  - EligibilityGate: ``can_commit`` / ``limit_reached``
  - CommitmentConfirmer: confirm a signal, freeze the server's stake
  - CountdownClock: local countdown to ``settles_at``
  - SettlementPoller: bounded polling for the outcome
  - OutcomeReconciler: apply the outcome to wallet and history once
  - TradeLifecycleOrchestrator: the state machine tying them together
"""

from signaldesk.trading.catalog import SignalCatalog
from signaldesk.trading.confirmer import CommitmentConfirmer, display_stake
from signaldesk.trading.countdown import CountdownClock
from signaldesk.trading.eligibility import (
    Eligibility,
    EligibilityCode,
    can_commit,
    limit_reached,
)
from signaldesk.trading.orchestrator import TradeLifecycleOrchestrator
from signaldesk.trading.poller import (
    PollResult,
    PollUntilTerminal,
    RetryPolicy,
    SettlementPoller,
)
from signaldesk.trading.reconciler import OutcomeReconciler
from signaldesk.trading.state import LifecycleState, Phase

__all__ = [
    "SignalCatalog",
    "CommitmentConfirmer",
    "display_stake",
    "CountdownClock",
    "Eligibility",
    "EligibilityCode",
    "can_commit",
    "limit_reached",
    "TradeLifecycleOrchestrator",
    "PollResult",
    "PollUntilTerminal",
    "RetryPolicy",
    "SettlementPoller",
    "OutcomeReconciler",
    "LifecycleState",
    "Phase",
]
