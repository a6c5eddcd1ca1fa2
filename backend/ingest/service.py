"""
Ingest service entrypoint.
One-shot commands: import runs from speedrun.com, sync categories, and
manage category links and subcategories.

Usage:
  python -m ingest.service import [--game lsw]
  python -m ingest.service sync-categories [--game lsw]
  python -m ingest.service import-subcategories CATEGORY_ID [--variable NAME]
  python -m ingest.service link-category CATEGORY_ID EXTERNAL_ID
  python -m ingest.service unlink-category CATEGORY_ID
  python -m ingest.service init-db
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Awaitable, Callable

from shared.config import Settings, get_settings
from shared.models.domain import ImportProgress
from shared.store.postgres import PostgresLeaderboardStore
from shared.utils.database import DatabaseManager
from shared.utils.logging import command_context, get_logger, setup_logging
from shared.utils.metrics import start_metrics_server

from ingest.context import ImportContext
from ingest.games import GAME_CONFIGS, get_game_config
from ingest.importer import RunImporter
from ingest.providers.speedruncom import SpeedrunComSource
from ingest.taxonomy_sync import TaxonomySync
from verifier.autoclaim import AutoclaimService
from verifier.config import get_verifier_settings

logger = get_logger(__name__)

# Retry connection on startup (e.g. DB not ready yet in Docker)
CONNECT_RETRY_ATTEMPTS = 5
CONNECT_RETRY_BASE_DELAY_S = 2.0


async def _connect_with_retry(connect_fn: Callable[[], Awaitable[None]], name: str) -> None:
    """Call async connect_fn(); retry with exponential backoff on failure."""
    for attempt in range(1, CONNECT_RETRY_ATTEMPTS + 1):
        try:
            await connect_fn()
            return
        except Exception as exc:
            if attempt == CONNECT_RETRY_ATTEMPTS:
                raise
            delay = CONNECT_RETRY_BASE_DELAY_S * (2 ** (attempt - 1))
            logger.warning("connect_retry", name=name, attempt=attempt, delay_s=delay, error=str(exc))
            await asyncio.sleep(delay)


def _log_progress(progress: ImportProgress) -> None:
    done = progress.imported + progress.skipped
    if done == progress.total or done % 50 == 0:
        logger.info("import_progress", total=progress.total, imported=progress.imported, skipped=progress.skipped)


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ingest", description="speedrun.com import tools")
    sub = parser.add_subparsers(dest="command", required=True)

    p_import = sub.add_parser("import", help="import runs not yet on the leaderboard")
    p_import.add_argument("--game", default=settings.default_game, choices=sorted(GAME_CONFIGS))

    p_sync = sub.add_parser("sync-categories", help="create or link local categories for upstream ones")
    p_sync.add_argument("--game", default=settings.default_game, choices=sorted(GAME_CONFIGS))

    p_subs = sub.add_parser("import-subcategories", help="add a category's upstream variable values as subcategories")
    p_subs.add_argument("category_id")
    p_subs.add_argument("--variable", default=None, help="upstream variable name to import from")

    p_link = sub.add_parser("link-category", help="link a local category to an upstream category id")
    p_link.add_argument("category_id")
    p_link.add_argument("external_id")

    p_unlink = sub.add_parser("unlink-category", help="clear a category's upstream link")
    p_unlink.add_argument("category_id")

    sub.add_parser("init-db", help="create missing tables")
    return parser


async def run_command(args: argparse.Namespace, settings: Settings) -> int:
    db = DatabaseManager(settings)
    await _connect_with_retry(db.connect, "Database")
    store = PostgresLeaderboardStore(db)
    source = SpeedrunComSource(settings)
    await source.start()

    try:
        if args.command == "init-db":
            await db.create_schema()
            return 0

        if args.command == "import":
            config = get_game_config(args.game)
            verifier_settings = get_verifier_settings()
            autoclaim = AutoclaimService(store, verifier_settings) if verifier_settings.autoclaim_after_import else None
            importer = RunImporter(source, store, autoclaim=autoclaim, settings=settings)
            result = await importer.import_runs(config, on_progress=_log_progress, context=ImportContext())
            for error in result.errors:
                logger.warning("import_error", error=error)
            logger.info(
                "import_summary",
                game=config.key,
                imported=result.imported,
                skipped=result.skipped,
                errors=len(result.errors),
                unmatched_players=len(result.unmatched_players),
            )
            return 1 if result.errors and not result.imported and not result.skipped else 0

        taxonomy = TaxonomySync(source, store)

        if args.command == "sync-categories":
            config = get_game_config(args.game)
            game_id = await source.resolve_game_id(config)
            if not game_id:
                logger.error("game_not_found", game=config.key)
                return 1
            sync_result = await taxonomy.sync_categories(game_id)
            return 1 if sync_result.errors else 0

        if args.command == "import-subcategories":
            sub_result = await taxonomy.import_subcategories(args.category_id, args.variable)
            for error in sub_result.errors:
                logger.warning("subcategory_import_error", error=error)
            return 1 if sub_result.errors else 0

        if args.command == "link-category":
            return 0 if await taxonomy.link_category(args.category_id, args.external_id) else 1

        if args.command == "unlink-category":
            return 0 if await taxonomy.unlink_category(args.category_id) else 1

        logger.error("unknown_command", command=args.command)
        return 2
    finally:
        await source.close()
        await db.disconnect()


async def main(argv: list[str] | None = None) -> int:
    """Ingest service entrypoint."""
    settings = get_settings()
    setup_logging("ingest")
    args = build_parser(settings).parse_args(argv)
    start_metrics_server("ingest", settings.metrics_port)
    with command_context(args.command, game=getattr(args, "game", None)):
        logger.info("ingest_command_started")
        code = await run_command(args, settings)
        logger.info("ingest_command_finished", exit_code=code)
    return code


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
