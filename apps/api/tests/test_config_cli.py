"""Tests for configuration parsing, logging helpers and the operator CLI."""
from __future__ import annotations

import logging

import pytest

from receptionist import cli
from receptionist.core.config import Settings
from receptionist.core.logs import CorrelationIdFilter, StructuredFormatter, correlation_id_var, mask_number
from receptionist.db.migrations import MigrationError


def test_comma_separated_env_values(monkeypatch) -> None:
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("PROVIDER_RETRY_DELAYS", "0.1,0.2")

    settings = Settings(_env_file=None)

    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.provider_retry_delays == [0.1, 0.2]


@pytest.mark.parametrize(
    "url,expected",
    [
        ("postgres://u:p@db/app", "postgresql+asyncpg://u:p@db/app"),
        ("postgresql://u:p@db/app", "postgresql+asyncpg://u:p@db/app"),
        ("postgresql+asyncpg://u:p@db/app", "postgresql+asyncpg://u:p@db/app"),
    ],
)
def test_database_url_is_rewritten_for_asyncpg(url: str, expected: str) -> None:
    assert Settings(_env_file=None, database_url=url).database_async_url == expected


def test_signing_secret_falls_back_to_api_key() -> None:
    assert Settings(_env_file=None, retell_api_key="key").signing_secret == "key"
    assert Settings(_env_file=None, retell_api_key="key", retell_webhook_secret="whsec").signing_secret == "whsec"


def test_booking_environment_is_not_a_process_setting(monkeypatch) -> None:
    monkeypatch.setenv("SQUARE_ENVIRONMENT", "sandbox")

    settings = Settings(_env_file=None)

    assert not hasattr(settings, "square_environment")


def test_mask_number() -> None:
    assert mask_number("+12015550123") == "+1201***"
    assert mask_number(None) == "unknown"


def test_structured_formatter_appends_known_fields() -> None:
    record = logging.LogRecord("receptionist", logging.INFO, __file__, 1, "delivered", None, None)
    record.task_id = "task-1"
    record.attempts = 2
    token = correlation_id_var.set("corr-1")
    try:
        CorrelationIdFilter().filter(record)
    finally:
        correlation_id_var.reset(token)

    line = StructuredFormatter("[%(correlation_id)s] %(message)s").format(record)

    assert line == "[corr-1] delivered | task_id=task-1 attempts=2"


def test_cli_reports_config_errors(monkeypatch) -> None:
    monkeypatch.setenv("DATABASE_POOL_SIZE", "0")

    assert cli.main(["migrate"]) == cli.EXIT_CONFIG


def test_cli_migration_failure_exit_code(monkeypatch) -> None:
    async def failing(settings):
        raise MigrationError("migration to head failed")

    monkeypatch.setattr(cli, "_migrate", failing)
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)

    assert cli.main(["serve", "--port", "9000"]) == cli.EXIT_MIGRATION


def test_cli_serve_skips_migrations(monkeypatch) -> None:
    calls = []

    async def unexpected(settings):
        raise AssertionError("migrations should be skipped")

    monkeypatch.setattr(cli, "_migrate", unexpected)
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)
    monkeypatch.setattr(cli.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    assert cli.main(["serve", "--app", "workers", "--skip-migrations"]) == cli.EXIT_OK
    assert calls == [("receptionist.workers.app:app", {"host": "0.0.0.0", "port": 8080, "log_config": None})]


def test_cli_migrate_only(monkeypatch) -> None:
    async def applied(settings):
        return ["0001", "0002", "0003"]

    monkeypatch.setattr(cli, "_migrate", applied)
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)
    monkeypatch.setattr(cli.uvicorn, "run", lambda *args, **kwargs: pytest.fail("server must not start"))

    assert cli.main(["migrate"]) == cli.EXIT_OK
