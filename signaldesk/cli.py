#!/usr/bin/env python3
"""
SignalDesk CLI — Terminal front-end for the trade lifecycle.

Usage:
    python -m signaldesk.cli signals                   # catalog + eligibility
    python -m signaldesk.cli history [--page 2]
    python -m signaldesk.cli confirm <signal_id> [--watch]
    python -m signaldesk.cli watch                     # reattach, wait for result
    python -m signaldesk.cli health                    # check the trading API
    python -m signaldesk.cli --metrics confirm <id>    # dump counters on exit

Reads ``SIGNALDESK_API_TOKEN`` (and the other ``SIGNALDESK_*`` settings)
from the environment or ``.env``.
"""

import argparse
import asyncio
import sys

from signaldesk.config import get_settings
from signaldesk.connectors import PlatformConnector
from signaldesk.core.bus import BusMessage, get_event_bus
from signaldesk.errors import ConfirmationError, SignalDeskError
from signaldesk.logging import level_from_name, setup_logging
from signaldesk.models import Commitment
from signaldesk.observability import get_metrics, setup_tracing
from signaldesk.trading import Phase, TradeLifecycleOrchestrator


def _format_seconds(seconds: float | None) -> str:
    if seconds is None:
        return "--:--"
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def _format_entry(item: Commitment) -> str:
    result = ""
    if item.result_amount is not None:
        result = f" {item.result_amount:+.2f}"
    return (
        f"{item.confirmed_at:%Y-%m-%d %H:%M}  {item.outcome.value:<9} "
        f"{item.committed_amount:>10.2f}{result}  {item.signal_title or item.signal_id}"
    )


# ── Commands ─────────────────────────────────────────────────────────


async def cmd_signals(orchestrator: TradeLifecycleOrchestrator) -> int:
    await orchestrator.start()
    state = orchestrator.state
    if state.phase is not Phase.READY:
        print(f"A commitment is in progress ({state.phase.value}). Use `watch`.")
        return 0
    if state.catalog is None:
        print(f"Could not load signals: {state.catalog_error}")
        return 1

    gate = orchestrator.eligibility()
    if state.wallet is not None:
        print(f"Movement balance: {state.wallet.movement_balance:.2f}")
    print(f"Eligible: {'yes' if gate.allowed else 'no — ' + gate.reason}")

    limits = state.catalog.limits
    print(
        f"Daily remaining: {limits.daily_signals_remaining}/{limits.max_daily_signals}  "
        f"Referral remaining: {limits.referral_signals_remaining}/{limits.max_referral_signals}"
    )
    for kind, signals in orchestrator.catalog.grouped().items():
        if not signals:
            continue
        print(f"\n{kind.value.title()} signals")
        for signal in signals:
            stake = orchestrator.display_stake(signal.id)
            left = _format_seconds(orchestrator.catalog.time_remaining(signal))
            print(
                f"  {signal.id}  {signal.title:<24} {signal.commit_percent:>5.1f}%  "
                f"stake {stake:>10.2f}  {signal.slot_label:<12} {left} left"
            )
    return 0


async def cmd_history(client, page: int) -> int:
    settings = get_settings()
    history = await client.list_history(page, settings.history_page_size)
    if not history.items:
        print("No trades yet.")
        return 0
    for item in history.items:
        print(_format_entry(item))
    print(f"\nPage {history.page}/{history.pages} ({history.total} total)")
    return 0


async def _await_settlement(orchestrator: TradeLifecycleOrchestrator) -> int:
    """Print countdown progress until a result or poll exhaustion."""
    bus = get_event_bus()
    done = asyncio.Event()

    async def on_countdown(msg: BusMessage) -> None:
        print(f"\r  settles in {_format_seconds(msg.payload['remaining'])}", end="", flush=True)

    async def on_phase(msg: BusMessage) -> None:
        if msg.payload["phase"] == Phase.SETTLING.value:
            print("\n  waiting for the outcome...")

    async def on_finish(msg: BusMessage) -> None:
        done.set()

    subs = [
        bus.subscribe("trade.countdown", on_countdown),
        bus.subscribe("trade.phase_changed", on_phase),
        bus.subscribe("trade.result", on_finish),
        bus.subscribe("trade.poll_exhausted", on_finish),
    ]
    try:
        if orchestrator.state.phase in (Phase.WAITING, Phase.SETTLING):
            await done.wait()
    finally:
        for sub in subs:
            bus.unsubscribe(sub)

    state = orchestrator.state
    if state.phase is Phase.RESULT_SHOWN:
        c = state.commitment
        print(f"\nResult: {c.outcome.value}  {(c.result_amount or 0):+.2f}")
        if state.wallet is not None:
            print(f"Movement balance: {state.wallet.movement_balance:.2f}")
        await orchestrator.acknowledge()
        return 0
    print("\nStill pending. Run `watch` again later to resume.")
    return 2


async def cmd_confirm(orchestrator: TradeLifecycleOrchestrator, signal_id: str, watch: bool) -> int:
    await orchestrator.start()
    stake = orchestrator.display_stake(signal_id)
    if stake is not None:
        print(f"Committing {stake:.2f} to {signal_id}...")
    try:
        commitment = await orchestrator.confirm(signal_id)
    except ConfirmationError as e:
        print(f"Not confirmed: {e}")
        return 1
    if commitment is None:
        print("Too many requests. Please wait a moment and try again.")
        return 1
    print(
        f"Confirmed {commitment.id}: {commitment.committed_amount:.2f} locked "
        f"until {commitment.settles_at:%H:%M:%S} UTC"
    )
    if not watch:
        return 0
    return await _await_settlement(orchestrator)


async def cmd_watch(orchestrator: TradeLifecycleOrchestrator) -> int:
    await orchestrator.start()
    if orchestrator.state.phase is Phase.READY:
        print("No active commitment.")
        return 0
    c = orchestrator.state.commitment
    print(f"Tracking {c.id} ({c.committed_amount:.2f}, {c.signal_title or c.signal_id})")
    return await _await_settlement(orchestrator)


async def cmd_health(connector) -> int:
    info = await connector.get_info()
    status = "reachable" if info.healthy else "unreachable"
    print(f"{info.icon} {info.name}: {status}")
    print(f"  {info.description}")
    return 0 if info.healthy else 1


async def run(args: argparse.Namespace) -> int:
    async with PlatformConnector() as platform:
        if args.command == "health":
            return await cmd_health(platform)
        async with TradeLifecycleOrchestrator(platform.client) as orchestrator:
            if args.command == "signals":
                return await cmd_signals(orchestrator)
            if args.command == "history":
                return await cmd_history(platform.client, args.page)
            if args.command == "confirm":
                return await cmd_confirm(orchestrator, args.signal_id, args.watch)
            return await cmd_watch(orchestrator)


def main():
    parser = argparse.ArgumentParser(description="SignalDesk CLI")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON logs")
    parser.add_argument("--trace", action="store_true", help="Export OpenTelemetry spans")
    parser.add_argument(
        "--metrics", action="store_true", help="Print Prometheus counters on exit"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("signals", help="List eligible signals")

    history_parser = subparsers.add_parser("history", help="Show trade history")
    history_parser.add_argument("--page", type=int, default=1)

    confirm_parser = subparsers.add_parser("confirm", help="Confirm a signal")
    confirm_parser.add_argument("signal_id", help="Signal id from `signals`")
    confirm_parser.add_argument(
        "--watch", action="store_true", help="Wait for the outcome after confirming"
    )

    subparsers.add_parser("watch", help="Reattach to a pending commitment")
    subparsers.add_parser("health", help="Check the trading API is reachable")

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        sys.exit(1)

    settings = get_settings()
    setup_logging(
        level=level_from_name(settings.log_level),
        json_output=args.json_logs or settings.log_json,
    )
    if args.trace or settings.tracing_enabled:
        setup_tracing(otlp_endpoint=settings.otlp_endpoint)

    try:
        code = asyncio.run(run(args))
    except SignalDeskError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        code = 130
    if args.metrics:
        print(get_metrics().decode(), end="")
    sys.exit(code)


if __name__ == "__main__":
    main()
