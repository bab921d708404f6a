"""Command line entry point: ``python -m stashmirror [serve|sync]``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Sequence

import httpx
import uvicorn

from app.config import Settings, get_settings
from app.database import Database
from app.services.stash import SourceConnection, StashClient
from app.services.sync_engine import SyncEngine

from . import __version__

logger = logging.getLogger("stashmirror")


def _serve(settings: Settings) -> int:
    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
    return 0


async def _sync_once(settings: Settings, mode: str, kinds: list[str] | None) -> int:
    database = Database(settings.database_url)
    await database.create_all()
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(settings.source_timeout_seconds, connect=10.0)
    ) as http_client:

        def _client_factory(connection: SourceConnection) -> StashClient:
            return StashClient(connection, settings, http_client)

        engine = SyncEngine(settings, database.session_factory, _client_factory)
        failed = 0
        try:
            await engine.ensure_default_source()
            for source in await engine.list_sources(enabled_only=True):
                for outcome in await engine.sync_source(source.id, mode, kinds):  # type: ignore[arg-type]
                    logger.info(
                        "%s/%s: %s (%s entities, %s deleted)",
                        outcome.source_id,
                        outcome.kind,
                        outcome.status,
                        outcome.count,
                        outcome.deleted,
                    )
                    if outcome.status == "failed":
                        failed += 1
        finally:
            await database.dispose()
    return 1 if failed else 0


def main(argv: Sequence[str] | None = None) -> int:
    """Start the server, or run a single sync when asked to."""

    parser = argparse.ArgumentParser(prog="stashmirror")
    parser.add_argument("--version", action="version", version=__version__)
    commands = parser.add_subparsers(dest="command")
    commands.add_parser("serve", help="run the HTTP API (default)")
    sync = commands.add_parser("sync", help="sync every enabled source once and exit")
    sync.add_argument("--mode", choices=("auto", "full", "incremental"), default="auto")
    sync.add_argument("--kind", action="append", dest="kinds", help="limit to one kind")
    args = parser.parse_args(argv)

    settings = get_settings()
    if args.command == "sync":
        logging.basicConfig(level=logging.INFO)
        return asyncio.run(_sync_once(settings, args.mode, args.kinds))
    return _serve(settings)


if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    sys.exit(main())
