"""Schema migrations, applied with alembic over the application's async engine."""
from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

SCRIPT_LOCATION = Path(__file__).resolve().parent / "alembic"

# Serializes concurrent `migrate` runs from several replicas.
MIGRATION_LOCK_KEY = 7_304_117_209


class MigrationError(RuntimeError):
    """Raised when a migration step fails; the schema is left at the last good revision."""


def alembic_config() -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(SCRIPT_LOCATION))
    return cfg


def _upgrade(connection: Connection, cfg: Config, revision: str, applied: list[str]) -> None:
    def record(*, step, **_kwargs) -> None:
        if step.is_upgrade:
            logger.info("Applied migration %s", step.up_revision_id)
            applied.append(step.up_revision_id)

    cfg.attributes["connection"] = connection
    cfg.attributes["on_version_apply"] = record
    command.upgrade(cfg, revision)


async def run_migrations(engine: AsyncEngine, revision: str = "head") -> list[str]:
    """Upgrade the schema to ``revision`` and return the revisions applied.

    The whole run holds a transaction-scoped advisory lock, so a second
    process waits and then finds nothing left to apply.
    """

    cfg = alembic_config()
    applied: list[str] = []
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": MIGRATION_LOCK_KEY})
            await conn.run_sync(_upgrade, cfg, revision, applied)
    except Exception as exc:
        logger.exception("Migration to %s failed", revision)
        raise MigrationError(f"migration to {revision} failed") from exc
    return applied
