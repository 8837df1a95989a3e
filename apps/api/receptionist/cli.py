"""Operator commands: ``serve`` and ``migrate``."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import uvicorn
from pydantic import ValidationError

from .core.config import Settings
from .core.logs import configure_logging
from .db.migrations import MigrationError, run_migrations
from .db.session import create_database

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_MIGRATION = 2
EXIT_FATAL = 3

APPS = {
    "api": "receptionist.main:app",
    "workers": "receptionist.workers.app:app",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="receptionist", description="Voice receptionist gateway")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="apply migrations and start the HTTP listener")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8080)
    serve.add_argument("--app", choices=sorted(APPS), default="api")
    serve.add_argument("--skip-migrations", action="store_true", help="start without touching the schema")

    commands.add_parser("migrate", help="apply pending schema migrations")
    return parser


async def _migrate(settings: Settings) -> list[str]:
    db = create_database(settings)
    try:
        return await run_migrations(db.engine)
    finally:
        await db.dispose()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    configure_logging(settings.log_level)

    if args.command == "migrate" or not getattr(args, "skip_migrations", False):
        try:
            applied = asyncio.run(_migrate(settings))
        except MigrationError as exc:
            logger.error("Migration failed: %s", exc)
            return EXIT_MIGRATION
        logger.info("Schema up to date (%d applied: %s)", len(applied), ", ".join(applied) or "none")
        if args.command == "migrate":
            return EXIT_OK

    try:
        uvicorn.run(APPS[args.app], host=args.host, port=args.port, log_config=None)
    except Exception:
        logger.exception("Server stopped unexpectedly")
        return EXIT_FATAL
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
