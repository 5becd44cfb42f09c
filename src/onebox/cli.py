"""Command-line entry point for Onebox."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from pathlib import Path

from onebox.core import AppSettings, configure_logging, load_app_settings
from onebox.core.models import SessionStatus
from onebox.services import build_services


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(description="Onebox mailbox sync")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="info",
        choices=["info", "watch"],
        help="Operation to execute.",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop watching after this many seconds (default: run until interrupted).",
    )
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return an exit code."""
    if args.command == "info":
        print("Onebox is ready. Configure IMAP settings to start watching a mailbox.")
        print(f"IMAP host: {settings.imap.host or '(not configured)'}")
        print(f"Account id: {settings.imap.account_id}")
        print(f"Storage backend: {settings.storage.backend}")
        print(f"LLM classification: {'on' if settings.llm.enabled else 'off'}")
        alerts = settings.notifications
        targets = [
            name
            for name, url in (
                ("slack", alerts.slack_webhook_url),
                ("webhook", alerts.webhook_url),
            )
            if url
        ]
        print(f"Notifications: {', '.join(targets) if targets else 'off'}")
        return 0
    try:
        asyncio.run(_watch(settings, duration=args.duration))
    except KeyboardInterrupt:
        print("Interrupted.")
    except ValueError as exc:
        print(f"Watch failed: {exc}")
        return 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    return execute(args, settings)


async def _watch(settings: AppSettings, *, duration: float | None) -> None:
    """Sync the configured account until interrupted or ``duration`` elapses."""
    credentials = settings.imap.to_credentials()
    services = build_services(settings)
    manager = services.manager
    manager.subscribe(_print_status)
    try:
        await manager.start_account(credentials.account_id, credentials)
        print(
            f"Watching {credentials.user}@{credentials.host} ({credentials.mailbox})"
        )
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
    finally:
        await services.close()
        print("Stopped.")


def _print_status(status: SessionStatus) -> None:
    line = f"[{status.account_id}] {status.connection_status.value}"
    if status.reconnect_attempts:
        line += f" (attempt {status.reconnect_attempts}, delay {status.reconnect_delay:.1f}s)"
    if status.last_error:
        line += f" - {status.last_error}"
    print(line)


if __name__ == "__main__":
    raise SystemExit(main())
