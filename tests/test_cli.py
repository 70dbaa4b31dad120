"""Tests for the operational CLI."""

import asyncio
import json

import pytest

from payment_reconciler.cli import ReconcilerCli
from payment_reconciler.config import Settings
from payment_reconciler.database import get_engine, make_session_factory
from payment_reconciler.services import IdempotencyLedger
from tests.factories import WEBHOOK_SECRET, gateway_event


def make_settings(database_url: str, **overrides) -> Settings:
    values = dict(
        database_url=database_url,
        app_env="test",
        gateway_webhook_secret=WEBHOOK_SECRET,
        gateway_api_key=None,
        webhook_tolerance_seconds=300,
        stale_lock_seconds=300,
        amount_tolerance_minor=1,
        block_on_amount_mismatch=False,
        notification_service_url=None,
        notification_timeout_seconds=5.0,
        host="127.0.0.1",
        port=8000,
        debug=False,
        log_level="INFO",
    )
    values.update(overrides)
    return Settings(**values)


def with_ledger(database_url: str, action) -> None:
    """Run an async ledger action against the CLI's database."""

    async def run() -> None:
        engine = get_engine(database_url)
        try:
            await action(IdempotencyLedger(make_session_factory(engine)))
        finally:
            await engine.dispose()

    asyncio.run(run())


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"


@pytest.fixture
def cli(database_url) -> ReconcilerCli:
    cli = ReconcilerCli(make_settings(database_url))
    assert cli.run(["init-db"]) == 0
    return cli


class TestReconcilerCli:
    def test_no_command_prints_help(self, database_url, capsys):
        assert ReconcilerCli(make_settings(database_url)).run([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_init_db(self, database_url, capsys):
        """Schema creation can be repeated against an existing database."""
        cli = ReconcilerCli(make_settings(database_url))

        assert cli.run(["init-db"]) == 0
        assert cli.run(["init-db"]) == 0
        assert capsys.readouterr().out.count("Schema created.") == 2

    def test_database_url_flag(self, tmp_path, capsys):
        cli = ReconcilerCli(make_settings("postgresql+asyncpg://unused/db"))
        url = f"sqlite+aiosqlite:///{tmp_path / 'other.db'}"

        assert cli.run(["--database-url", url, "init-db"]) == 0
        assert (tmp_path / "other.db").exists()

    def test_failed_events_empty(self, cli, capsys):
        assert cli.run(["failed-events"]) == 0
        assert "No failed events." in capsys.readouterr().out

    def test_failed_events_listed(self, cli, database_url, capsys):
        async def seed(ledger):
            await ledger.acquire("evt_bad", "payout.paid", {})
            await ledger.mark_failed("evt_bad", "OperationalError: disk I/O error")

        with_ledger(database_url, seed)

        assert cli.run(["failed-events", "--limit", "5"]) == 0
        out = capsys.readouterr().out
        assert "evt_bad" in out
        assert "OperationalError: disk I/O error" in out

    def test_replay_unknown_event(self, cli, capsys):
        assert cli.run(["replay-event", "evt_missing"]) == 1
        assert "evt_missing" in capsys.readouterr().err

    def test_replay_failed_event(self, cli, database_url, capsys):
        body = gateway_event("evt_x", "customer.created", {"id": "cus_1"})

        async def seed(ledger):
            await ledger.acquire("evt_x", "customer.created", body)
            await ledger.mark_failed("evt_x", "TimeoutError: lost connection")

        with_ledger(database_url, seed)

        assert cli.run(["replay-event", "evt_x"]) == 0
        assert "evt_x: processed" in capsys.readouterr().out
        assert cli.run(["replay-event", "evt_x"]) == 0
        assert "evt_x: already_processed" in capsys.readouterr().out

    def test_metrics_json(self, cli, capsys):
        capsys.readouterr()
        assert cli.run(["metrics"]) == 0
        body = json.loads(capsys.readouterr().out)
        assert body["events_received"]["value"] == 0

    def test_metrics_prometheus(self, cli, capsys):
        capsys.readouterr()
        assert cli.run(["metrics", "--format", "prometheus"]) == 0
        out = capsys.readouterr().out
        assert "# TYPE reconciler_events_received_total counter" in out
        assert "reconciler_events_received_total 0" in out


class TestCheckConfig:
    def test_development_config(self, database_url, capsys):
        cli = ReconcilerCli(make_settings(database_url))

        assert cli.run(["check-config"]) == 0
        out = capsys.readouterr().out
        assert "Environment: test" in out
        assert "WARNING" in out

    def test_strict_config_ok(self, database_url, capsys):
        cli = ReconcilerCli(
            make_settings(database_url, app_env="production", block_on_amount_mismatch=True)
        )

        assert cli.run(["check-config"]) == 0
        assert "OK" in capsys.readouterr().out

    def test_production_without_secret(self, database_url, capsys):
        cli = ReconcilerCli(
            make_settings(database_url, app_env="production", gateway_webhook_secret=None)
        )

        assert cli.run(["check-config"]) == 1
        assert "CRITICAL" in capsys.readouterr().out

    def test_missing_secret_outside_production(self, database_url, capsys):
        cli = ReconcilerCli(make_settings(database_url, gateway_webhook_secret=None))

        assert cli.run(["check-config"]) == 1
        assert "CRITICAL" in capsys.readouterr().out
