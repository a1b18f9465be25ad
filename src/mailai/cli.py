"""Command-line entry point for MailAI."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from mailai.core import AppSettings, configure_logging, load_app_settings
from mailai.core.datetime_utils import from_millis
from mailai.core.errors import ConfigError
from mailai.core.models import RunMode
from mailai.processing import run_application
from mailai.storage import PersistentCounterStore


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(description="MailAI persona auto-responder")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=Path(".env"),
        help="Path to the .env file holding personas and limits (default: .env).",
    )
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in RunMode],
        default=None,
        help="Override MAILAI_MODE for this run.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=["run", "info", "stats"],
        help="Operation to execute (default: run).",
    )
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return the exit code."""
    command = args.command
    if command == "info":
        _print_info(settings)
        return 0
    if command == "stats":
        _print_stats(settings)
        return 0
    return run_application(settings, env_file=args.env_file)


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_app_settings(env_file=args.env_file, mode=args.mode)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    configure_logging(settings.logging, debug=settings.debug)
    return execute(args, settings)


def _print_info(settings: AppSettings) -> None:
    limits = settings.limits
    print(f"Mode: {settings.mode.value}")
    print(f"Counters file: {settings.state_file}")
    print(
        f"Limits: {limits.max_emails_per_day}/day, "
        f"cooldown {limits.cooldown_period} min, "
        f"window {limits.min_days}-{limits.max_days} days, "
        f"batch {limits.batch_size}/{limits.max_emails_per_batch}"
    )
    if settings.bcc_emails:
        print(f"BCC: {', '.join(settings.bcc_emails)}")
    print(f"Personas ({len(settings.personas)}):")
    for persona in settings.personas.values():
        print(
            f"  {persona.id:<12} {persona.name:<20} {persona.email_user} "
            f"via {persona.imap_host}:{persona.imap_port} "
            f"[ai={persona.ai_provider}, marking={persona.marking.value}]"
        )


def _print_stats(settings: AppSettings) -> None:
    store = PersistentCounterStore(settings.state_file)
    counters = store.load()
    stats = store.load_stats()
    print(f"Daily count: {counters.daily_count}/{settings.limits.max_emails_per_day}")
    print(f"Last reset: {from_millis(counters.last_reset).isoformat()}")
    print(
        f"Processed: {stats.processed}  Answered: {stats.answered}  "
        f"Skipped: {stats.skipped}  BCC copies: {stats.bcc_copied}"
    )
    if not counters.sender_history:
        print("No sender history recorded.")
        return
    print(f"Sender history ({len(counters.sender_history)}):")
    for sender, stamp in sorted(
        counters.sender_history.items(), key=lambda item: item[1], reverse=True
    ):
        print(f"  {sender:<40} {from_millis(stamp).isoformat(timespec='seconds')}")


if __name__ == "__main__":
    sys.exit(main())
