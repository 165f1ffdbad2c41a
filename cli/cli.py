# cli/cli.py
"""
Operations CLI for the marketplace: run worker passes by hand, re-drive
exhausted payouts, reassign requests and inspect failed notifications.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import timedelta
from typing import Callable, Dict, Optional

from marketplace.core.exceptions import BaseAPIException
from marketplace.core.logging import configure_structlog
from marketplace.dependencies import close_marketplace, get_marketplace
from marketplace.services.state_machine import PayoutStatus


# Output formatting utilities
def _supports_color() -> bool:
    """Check if terminal supports ANSI color codes."""
    if sys.platform == "win32":
        return os.getenv("TERM") == "xterm" or os.getenv("ANSICON") is not None
    return sys.stdout.isatty()


SUPPORTS_COLOR = _supports_color()

GREEN = "\033[92m" if SUPPORTS_COLOR else ""
RED = "\033[91m" if SUPPORTS_COLOR else ""
YELLOW = "\033[93m" if SUPPORTS_COLOR else ""
BLUE = "\033[94m" if SUPPORTS_COLOR else ""
RESET = "\033[0m" if SUPPORTS_COLOR else ""


def print_success(message: str):
    print(f"{GREEN}[✓]{RESET} {message}")


def print_error(message: str):
    print(f"{RED}[✗]{RESET} {message}")


def print_warning(message: str):
    print(f"{YELLOW}[!]{RESET} {message}")


def print_info(message: str):
    print(f"{BLUE}[i]{RESET} {message}")


# Command functions
async def cmd_process_notifications(args: argparse.Namespace) -> int:
    """Command: deliver one batch of due notifications."""
    marketplace = await get_marketplace()
    summary = await marketplace.dispatcher.process_due(args.limit)
    print_info(f"Processed {summary.processed} notifications")
    print_success(f"  sent: {summary.sent}")
    if summary.retrying:
        print_warning(f"  retrying: {summary.retrying}")
    if summary.failed:
        print_error(f"  failed: {summary.failed}")
    return 0


async def cmd_process_payouts(args: argparse.Namespace) -> int:
    """Command: process one batch of due payouts."""
    marketplace = await get_marketplace()
    processed = await marketplace.payouts.process_due(args.limit)
    failed = [payout for payout in processed if payout.status == PayoutStatus.FAILED]
    print_info(f"Processed {len(processed)} payouts")
    for payout in failed:
        print_error(f"  lead {payout.lead_id}: {payout.last_error} (attempt {payout.attempts}/{payout.max_attempts})")
    return 1 if failed else 0


async def cmd_redrive_payout(args: argparse.Namespace) -> int:
    """Command: retry a payout regardless of its attempt count."""
    marketplace = await get_marketplace()
    payout = await marketplace.process_payout(args.lead_id, manual=True)
    if payout.status == PayoutStatus.COMPLETED:
        print_success(f"Payout for lead {args.lead_id} completed ({payout.external_transfer_id})")
        return 0
    print_error(f"Payout for lead {args.lead_id} is {payout.status.value}: {payout.last_error or 'no error recorded'}")
    return 1


async def cmd_reassign(args: argparse.Namespace) -> int:
    """Command: offer one request to further providers."""
    marketplace = await get_marketplace()
    leads = await marketplace.reassign_providers(args.service_request_id)
    print_success(f"Created {len(leads)} new leads: {', '.join(str(lead.id) for lead in leads)}")
    return 0


async def cmd_reassign_stale(args: argparse.Namespace) -> int:
    """Command: reassign requests nobody accepted within the threshold."""
    marketplace = await get_marketplace()
    older_than = timedelta(hours=args.hours) if args.hours else None
    summary = await marketplace.reassign_stale_requests(older_than=older_than, limit=args.limit)
    print_info(f"Examined {summary.examined} requests")
    print_success(f"  reassigned: {summary.reassigned} ({len(summary.lead_ids)} leads)")
    if summary.unmatched:
        print_warning(f"  no eligible providers: {summary.unmatched}")
    if summary.skipped:
        print_info(f"  skipped: {summary.skipped}")
    return 0


async def cmd_failed_notifications(args: argparse.Namespace) -> int:
    """Command: list notifications that used up their retries."""
    marketplace = await get_marketplace()
    records = await marketplace.failed_notifications(args.limit)
    if not records:
        print_success("No failed notifications")
        return 0
    for record in records:
        print_error(
            f"#{record.id} {record.message_type} -> {record.recipient} "
            f"(retries {record.retry_count}): {record.last_error}"
        )
    return 0


async def cmd_system_status(args: argparse.Namespace) -> int:
    """Command: quick health check of the configured store."""
    marketplace = await get_marketplace()
    status = await marketplace.store.health_check()
    if status.get("status") == "healthy":
        print_success(f"Store ({status.get('backend')}): healthy")
        return 0
    print_error(f"Store ({status.get('backend')}): {status.get('error', 'unhealthy')}")
    return 1


# Command registry
COMMANDS: Dict[str, Callable] = {
    "process-notifications": cmd_process_notifications,
    "process-payouts": cmd_process_payouts,
    "redrive-payout": cmd_redrive_payout,
    "reassign": cmd_reassign,
    "reassign-stale": cmd_reassign_stale,
    "failed-notifications": cmd_failed_notifications,
    "system-status": cmd_system_status,
}


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser with all commands."""
    parser = argparse.ArgumentParser(
        description="Marketplace operations CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    notify_parser = subparsers.add_parser("process-notifications", help="Deliver due notifications")
    notify_parser.add_argument("--limit", type=int, default=100)

    payouts_parser = subparsers.add_parser("process-payouts", help="Process due payouts")
    payouts_parser.add_argument("--limit", type=int, default=100)

    redrive_parser = subparsers.add_parser("redrive-payout", help="Retry an exhausted payout")
    redrive_parser.add_argument("lead_id", type=int)

    reassign_parser = subparsers.add_parser("reassign", help="Reassign a service request")
    reassign_parser.add_argument("service_request_id", type=int)

    stale_parser = subparsers.add_parser("reassign-stale", help="Reassign requests nobody accepted")
    stale_parser.add_argument("--hours", type=int, default=None, help="Age threshold (default STALE_REQUEST_HOURS)")
    stale_parser.add_argument("--limit", type=int, default=100)

    failed_parser = subparsers.add_parser("failed-notifications", help="List failed notifications")
    failed_parser.add_argument("--limit", type=int, default=100)

    subparsers.add_parser("system-status", help="Quick system health check")
    return parser


async def _run(command_func: Callable, parsed_args: argparse.Namespace) -> int:
    try:
        return await command_func(parsed_args)
    finally:
        await close_marketplace()


def main(args: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    command_func = COMMANDS.get(parsed_args.command)
    if not command_func:
        print_error(f"Unknown command: {parsed_args.command}")
        parser.print_help()
        return 1

    configure_structlog()
    try:
        return asyncio.run(_run(command_func, parsed_args))
    except KeyboardInterrupt:
        print_error("\nInterrupted by user")
        return 130
    except BaseAPIException as e:
        print_error(f"{e.code}: {e.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
