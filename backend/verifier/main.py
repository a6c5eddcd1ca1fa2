"""
Verifier service entrypoint.
Administrative commands for imported runs: autoclaim, verification, rejection.

Usage:
  python -m verifier.main autoclaim [--player PLAYER_ID]
  python -m verifier.main backfill-names
  python -m verifier.main diagnose NAME_OR_ID
  python -m verifier.main verify ENTRY_ID --by ADMIN [--category ID] [--platform ID] [--level ID]
  python -m verifier.main verify-recent --by ADMIN [--limit N] [filters]
  python -m verifier.main verify-all --by ADMIN [filters]
  python -m verifier.main reject ENTRY_ID
"""
from __future__ import annotations

import argparse
import asyncio
import sys

from shared.config import get_settings
from shared.models.domain import BatchFilters
from shared.models.enums import LeaderboardType, RunType
from shared.store.postgres import PostgresLeaderboardStore
from shared.utils.database import DatabaseManager
from shared.utils.logging import command_context, get_logger, setup_logging
from shared.utils.metrics import start_metrics_server

from verifier.autoclaim import AutoclaimService
from verifier.config import VerifierSettings, get_verifier_settings
from verifier.engine import VerificationEngine

logger = get_logger(__name__)


def _add_filters(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--leaderboard-type", choices=[lt.value for lt in LeaderboardType])
    parser.add_argument("--category")
    parser.add_argument("--platform")
    parser.add_argument("--level")
    parser.add_argument("--run-type", choices=[rt.value for rt in RunType])


def _filters(args: argparse.Namespace) -> BatchFilters:
    return BatchFilters(
        leaderboard_type=args.leaderboard_type,
        category=args.category,
        platform=args.platform,
        level=args.level,
        run_type=args.run_type,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="verifier", description="imported run verification tools")
    sub = parser.add_subparsers(dest="command", required=True)

    p_claim = sub.add_parser("autoclaim", help="assign unclaimed imported runs to players")
    p_claim.add_argument("--player", default=None, help="only this player id")

    sub.add_parser("backfill-names", help="copy player_name into missing upstream player names")

    p_diag = sub.add_parser("diagnose", help="explain autoclaim status for a player")
    p_diag.add_argument("player")

    p_verify = sub.add_parser("verify", help="verify a single run")
    p_verify.add_argument("entry_id")
    p_verify.add_argument("--by", required=True)
    p_verify.add_argument("--category")
    p_verify.add_argument("--platform")
    p_verify.add_argument("--level")

    p_recent = sub.add_parser("verify-recent", help="verify the newest unverified imported runs")
    p_recent.add_argument("--by", required=True)
    p_recent.add_argument("--limit", type=int, default=None)
    _add_filters(p_recent)

    p_all = sub.add_parser("verify-all", help="verify every unverified imported run matching filters")
    p_all.add_argument("--by", required=True)
    _add_filters(p_all)

    p_reject = sub.add_parser("reject", help="delete an imported run")
    p_reject.add_argument("entry_id")
    return parser


async def run_command(args: argparse.Namespace, db: DatabaseManager, verifier_settings: VerifierSettings) -> int:
    store = PostgresLeaderboardStore(db)
    autoclaim = AutoclaimService(store, verifier_settings)
    engine = VerificationEngine(store, verifier_settings)

    if args.command == "autoclaim":
        result = (
            await autoclaim.claim_for_player(args.player) if args.player else await autoclaim.run_for_all_players()
        )
        logger.info("autoclaim_summary", players_updated=result.players_updated, runs_updated=result.runs_updated)
        return 1 if result.errors else 0

    if args.command == "backfill-names":
        backfill = await autoclaim.backfill_external_player_names()
        return 1 if backfill.errors else 0

    if args.command == "diagnose":
        diagnosis = await autoclaim.diagnose(args.player)
        logger.info("autoclaim_diagnosis", **diagnosis.model_dump())
        return 0 if diagnosis.player_id else 1

    if args.command == "verify":
        outcome = await engine.verify_run(
            args.entry_id, args.by, category=args.category, platform=args.platform, level=args.level
        )
        if not outcome.success:
            logger.warning("verify_failed", entry_id=args.entry_id, reason=outcome.reason)
        return 0 if outcome.success else 1

    if args.command in ("verify-recent", "verify-all"):
        if args.command == "verify-recent":
            batch = await engine.batch_verify_recent(args.by, _filters(args), args.limit)
        else:
            batch = await engine.batch_verify_filtered(args.by, _filters(args))
        for error in batch.errors:
            logger.warning("batch_verify_error", error=error)
        logger.info("batch_verify_summary", success=batch.success_count, errors=batch.error_count)
        return 1 if batch.error_count else 0

    if args.command == "reject":
        outcome = await engine.reject_run(args.entry_id)
        return 0 if outcome.success else 1

    logger.error("unknown_command", command=args.command)
    return 2


async def main(argv: list[str] | None = None) -> int:
    setup_logging("verifier")
    settings = get_settings()
    verifier_settings = get_verifier_settings()
    args = build_parser().parse_args(argv)
    start_metrics_server("verifier", verifier_settings.metrics_port)

    db = DatabaseManager(settings)
    try:
        await db.connect()
    except Exception as e:
        logger.exception("startup_connect_failed", error=str(e))
        raise

    with command_context(args.command, admin=getattr(args, "by", None)):
        logger.info("verifier_command_started")
        try:
            code = await run_command(args, db, verifier_settings)
        finally:
            await db.disconnect()
        logger.info("verifier_command_finished", exit_code=code)
    return code


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
