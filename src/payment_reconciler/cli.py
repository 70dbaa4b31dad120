"""Reconciler Command Line Interface.

Provides operational tools for:
- Schema creation
- Listing events that failed and await redelivery
- Replaying a stored event through the engine
- Metrics emission
- Production configuration checks

Usage:
    python -m payment_reconciler.cli init-db
    python -m payment_reconciler.cli failed-events --limit 20
    python -m payment_reconciler.cli replay-event evt_123
    python -m payment_reconciler.cli metrics --format prometheus
    python -m payment_reconciler.cli check-config
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, Callable, Coroutine

from payment_reconciler.config import Settings, get_settings
from payment_reconciler.database import create_schema, get_engine, make_session_factory
from payment_reconciler.engine import EventNotFound, ProcessingFailed, ReconciliationEngine
from payment_reconciler.engine_config import EngineConfig, validate_production_config
from payment_reconciler.errors import ConfigurationError
from payment_reconciler.metrics import MetricsCollector
from payment_reconciler.services import IdempotencyLedger


class ReconcilerCli:
    """Reconciler Command Line Interface."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings
        self.parser = self._build_parser()

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m payment_reconciler.cli",
            description="Payment reconciler operational tools",
        )
        parser.add_argument(
            "--database-url",
            type=str,
            help="Database URL (default: $DATABASE_URL)",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("init-db", help="Create database tables")

        failed = subparsers.add_parser(
            "failed-events",
            help="List events that failed and await redelivery",
        )
        failed.add_argument(
            "--limit",
            type=int,
            default=50,
            help="Maximum events to list (default: 50)",
        )

        replay = subparsers.add_parser(
            "replay-event",
            help="Re-run a stored event through the engine",
        )
        replay.add_argument("event_id", type=str, help="Gateway event id (evt_...)")

        metrics = subparsers.add_parser("metrics", help="Emit reconciler metrics")
        metrics.add_argument(
            "--format",
            type=str,
            choices=["json", "prometheus"],
            default="json",
            help="Output format",
        )

        subparsers.add_parser(
            "check-config",
            help="Report configuration issues for production",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        # Dispatch to command handler
        handlers: dict[str, Callable[[argparse.Namespace], Coroutine[Any, Any, int]]] = {
            "init-db": self._cmd_init_db,
            "failed-events": self._cmd_failed_events,
            "replay-event": self._cmd_replay_event,
            "metrics": self._cmd_metrics,
            "check-config": self._cmd_check_config,
        }

        handler = handlers.get(parsed.command)
        if handler:
            return asyncio.run(handler(parsed))

        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return 1

    def _database_url(self, args: argparse.Namespace) -> str:
        return args.database_url or self.settings.database_url

    async def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create all tables."""
        engine = get_engine(self._database_url(args))
        try:
            await create_schema(engine)
        finally:
            await engine.dispose()
        print("Schema created.")
        return 0

    async def _cmd_failed_events(self, args: argparse.Namespace) -> int:
        """List failed events."""
        engine = get_engine(self._database_url(args))
        try:
            ledger = IdempotencyLedger(make_session_factory(engine))
            events = await ledger.list_failed(limit=args.limit)
        finally:
            await engine.dispose()

        if not events:
            print("No failed events.")
            return 0

        print(f"{'EVENT ID':<32} {'TYPE':<32} {'ATTEMPTS':>8}  ERROR")
        for event in events:
            print(
                f"{event.external_event_id:<32} {event.event_type:<32} "
                f"{event.attempt_count:>8}  {event.error}"
            )
        return 0

    async def _cmd_replay_event(self, args: argparse.Namespace) -> int:
        """Replay one stored event."""
        engine = get_engine(self._database_url(args))
        try:
            reconciler = ReconciliationEngine.from_settings(self.settings, make_session_factory(engine))
            outcome = await reconciler.replay(args.event_id)
        except EventNotFound as exc:
            print(str(exc), file=sys.stderr)
            return 1
        except ProcessingFailed as exc:
            print(f"{exc} (see logs)", file=sys.stderr)
            return 2
        finally:
            await engine.dispose()

        print(f"{outcome.event_id}: {outcome.status.value}")
        if outcome.annotation:
            print(f"  rejected: {outcome.annotation}")
        return 0

    async def _cmd_metrics(self, args: argparse.Namespace) -> int:
        """Emit metrics."""
        engine = get_engine(self._database_url(args))
        try:
            async with make_session_factory(engine)() as session:
                metrics = await MetricsCollector(session).collect_all()
        finally:
            await engine.dispose()

        if args.format == "prometheus":
            print(metrics.to_prometheus(), end="")
        else:
            print(metrics.to_json())
        return 0

    async def _cmd_check_config(self, args: argparse.Namespace) -> int:
        """Validate configuration for production."""
        try:
            config = EngineConfig.from_settings(self.settings)
        except (ConfigurationError, ValueError) as exc:
            print(f"CRITICAL: {exc}")
            return 1

        issues = validate_production_config(config)
        print(f"Environment: {config.environment}")
        for issue in issues:
            print(f"  {issue}")
        if any(issue.startswith("CRITICAL") for issue in issues):
            return 1
        if not issues:
            print("  OK")
        return 0


def main() -> int:
    """Main entry point."""
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    cli = ReconcilerCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
