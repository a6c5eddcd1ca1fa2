"""
Run importer.

Pulls verified runs for a game from the upstream catalog, drops the ones the
leaderboard already links to, maps the rest onto the local taxonomy, and
stores them as unverified, unclaimed entries. One bad run never aborts the
batch: it is skipped and reported as "Run <id>: <reason>".
"""
from __future__ import annotations

import asyncio
import inspect
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Sequence, Union

from shared.config import Settings, get_settings
from shared.models.domain import (
    ExternalRun,
    GameSourceConfig,
    ImportProgress,
    ImportResult,
    LeaderboardEntry,
    UnmatchedPlayers,
)
from shared.models.enums import LeaderboardType, RunType
from shared.store.base import LeaderboardStore
from shared.utils.concurrency import ConcurrencyLimiter, chunked
from shared.utils.logging import get_logger
from shared.utils.metrics import IMPORT_DURATION, RUNS_IMPORTED, RUNS_SKIPPED, atrack_latency

from ingest.context import ImportContext
from ingest.normalization.durations import repair_time
from ingest.providers.base import CatalogSource
from ingest.resolver import MappingSet, TaxonomyResolver
from ingest.validation import UNKNOWN_PLAYER, first_validation_error

if TYPE_CHECKING:
    from verifier.autoclaim import AutoclaimService

logger = get_logger(__name__)

ProgressCallback = Callable[[ImportProgress], Union[None, Awaitable[None]]]

# Persistence errors whose text contains one of these are an already-stored run.
_DUPLICATE_MARKERS = ("duplicate", "exists", "unique")


def is_duplicate_error(exc: BaseException) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in _DUPLICATE_MARKERS)


def _player_names(run: ExternalRun) -> tuple[str, Optional[str]]:
    names = [p.name.strip() if p.name else "" for p in run.players]
    player1 = names[0] if names else ""
    player2 = (names[1] or UNKNOWN_PLAYER) if len(names) > 1 else None
    return player1, player2


class RunImporter:
    """Imports upstream runs as pending leaderboard entries."""

    def __init__(
        self,
        source: CatalogSource,
        store: LeaderboardStore,
        resolver: TaxonomyResolver | None = None,
        autoclaim: Optional["AutoclaimService"] = None,
        settings: Settings | None = None,
        limiter: ConcurrencyLimiter | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._source = source
        self._store = store
        self._resolver = resolver or TaxonomyResolver(
            source, store, ConcurrencyLimiter(self._settings.platform_lookup_concurrency)
        )
        self._autoclaim = autoclaim
        self._limiter = limiter or ConcurrencyLimiter(self._settings.import_prefetch_concurrency)

    async def import_runs(
        self,
        config: GameSourceConfig,
        on_progress: ProgressCallback | None = None,
        context: ImportContext | None = None,
    ) -> ImportResult:
        """
        Import up to `import_target_count` runs not yet on the leaderboard.

        Args:
            config: Which upstream game to import from.
            on_progress: Called after every processed run; may be sync or async.
            context: Lookup caches to reuse across imports.

        Returns:
            ImportResult. Runs already linked to an entry count as skipped
            without an error. A game that cannot be found yields a result
            with a single error and nothing imported.
        """
        context = context or ImportContext()
        result = ImportResult()

        async with atrack_latency(IMPORT_DURATION, game=config.key):
            game_id = await self._source.resolve_game_id(config)
            if not game_id:
                result.errors.append(f"Could not find {config.name} ({config.abbreviation}) on speedrun.com")
                return result

            existing = await self._store.get_existing_external_run_ids()
            runs, already_linked, unparseable = await self._collect_unlinked(game_id, existing)
            result.skipped += already_linked + len(unparseable)
            if already_linked:
                RUNS_SKIPPED.labels(game=config.key, reason="already_linked").inc(already_linked)
            if unparseable:
                RUNS_SKIPPED.labels(game=config.key, reason="unparseable").inc(len(unparseable))
                result.errors.extend(f"Run {run_id}: unparseable upstream run" for run_id in unparseable)
            logger.info(
                "import_batch_collected",
                game=config.key,
                game_id=game_id,
                unlinked=len(runs),
                already_linked=already_linked,
                unparseable=len(unparseable),
            )
            if not runs:
                return result

            mappings = await self._resolver.build_mappings(runs, game_id, context)
            await self._prefetch_players(runs, context)

            total = len(runs) + already_linked + len(unparseable)
            for chunk in chunked(runs, self._settings.import_chunk_size):
                await asyncio.gather(
                    *(
                        self._process_run(run, config, mappings, context, existing, result, total, on_progress)
                        for run in chunk
                    )
                )

        logger.info(
            "import_complete",
            game=config.key,
            imported=result.imported,
            skipped=result.skipped,
            errors=len(result.errors),
            unmatched_players=len(result.unmatched_players),
        )

        if result.imported and self._autoclaim is not None:
            try:
                claimed = await self._autoclaim.run_for_all_players()
                logger.info("post_import_autoclaim", runs_updated=claimed.runs_updated)
            except Exception as exc:
                logger.warning("post_import_autoclaim_failed", error=str(exc))

        return result

    # ── Fetch ────────────────────────────────────────────────
    async def _collect_unlinked(
        self, game_id: str, existing: set[str]
    ) -> tuple[list[ExternalRun], int, list[str]]:
        """
        Page through upstream runs until enough unlinked ones are collected.

        Stops at the target count, the total-fetched ceiling, or a page with
        fewer raw items than requested. Source order is kept. Returns
        (runs, already_linked_count, unparseable_ids).
        """
        page_size = self._settings.import_page_size
        target = self._settings.import_target_count
        ceiling = self._settings.import_max_fetched

        collected: list[ExternalRun] = []
        unparseable: list[str] = []
        seen: set[str] = set()
        already_linked = 0
        offset = 0

        while len(collected) < target and offset < ceiling:
            page = await self._source.fetch_runs_not_on_leaderboards(game_id, limit=page_size, offset=offset)
            offset += page_size
            unparseable.extend(page.unparseable)
            for run in page.runs:
                if run.id in seen:
                    continue
                seen.add(run.id)
                if run.id in existing:
                    already_linked += 1
                    continue
                collected.append(run)
            logger.debug("import_page_fetched", offset=offset, page=page.fetched, collected=len(collected))
            if page.fetched < page_size:
                break

        return collected[:target], already_linked, unparseable

    async def _prefetch_players(self, runs: Sequence[ExternalRun], context: ImportContext) -> None:
        """Look up every distinct player name once, filling context.player_cache."""
        names: dict[str, str] = {}
        for run in runs:
            for name in _player_names(run):
                if name and name != UNKNOWN_PLAYER and not context.knows_player(name):
                    names.setdefault(name.strip().lower(), name)
        if not names:
            return

        found = await self._limiter.map(
            self._store.get_player_by_display_name, list(names.values()), return_exceptions=True
        )
        for name, player in zip(names.values(), found):
            if isinstance(player, BaseException):
                logger.warning("player_prefetch_failed", player_name=name, error=str(player))
                continue
            context.remember_player(name, player)
        logger.debug("players_prefetched", names=len(names))

    # ── Per-run ──────────────────────────────────────────────
    def build_entry_fields(self, run: ExternalRun, mappings: MappingSet) -> dict[str, Any]:
        """Map one upstream run to leaderboard entry fields. No validation here."""
        player1, player2 = _player_names(run)
        run_type = RunType.CO_OP if len(run.players) >= 2 else RunType.SOLO

        category_id = mappings.resolve_category(run.category)
        platform_id = mappings.resolve_platform(run.platform)
        level_id = mappings.resolve_level(run.level)
        local_category = mappings.local_categories.get(category_id) if category_id else None

        if local_category is not None:
            leaderboard_type = local_category.partition
        elif run.category is not None and run.category.type is not None:
            leaderboard_type = run.category.type.leaderboard_type
        elif run.category is not None and run.category.id in mappings.external_category_types:
            leaderboard_type = mappings.external_category_types[run.category.id]
        elif run.level is not None:
            leaderboard_type = LeaderboardType.INDIVIDUAL_LEVEL
        else:
            leaderboard_type = LeaderboardType.REGULAR

        subcategory_id: Optional[str] = None
        subcategory_name: Optional[str] = None
        if local_category is not None and run.values:
            chosen = {(v.variable_id, v.value_id): v for v in run.values}
            for sub in local_category.subcategories:
                value = chosen.get((sub.external_variable_id, sub.external_value_id))
                if value is not None:
                    subcategory_id = sub.id
                    subcategory_name = value.label or sub.name
                    break

        return {
            "player_name": player1,
            "player2_name": player2 if run_type == RunType.CO_OP else None,
            "external_player_name": player1 or None,
            "category": category_id or "",
            "subcategory": subcategory_id,
            "platform": platform_id or "",
            "level": level_id,
            "run_type": run_type,
            "leaderboard_type": leaderboard_type,
            "time": repair_time(None, run.primary_seconds, run.primary_time),
            "date": (run.date or "").strip(),
            "external_category_name": mappings.category_name(run.category),
            "external_platform_name": mappings.platform_name(run.platform),
            "external_level_name": mappings.level_name(run.level),
            "external_subcategory_name": subcategory_name,
            "video_url": run.video_url,
            "comment": run.comment,
        }

    async def _process_run(
        self,
        run: ExternalRun,
        config: GameSourceConfig,
        mappings: MappingSet,
        context: ImportContext,
        existing: set[str],
        result: ImportResult,
        total: int,
        on_progress: ProgressCallback | None,
    ) -> None:
        try:
            await self._import_one(run, config, mappings, context, existing, result)
        except Exception as exc:
            result.skipped += 1
            if is_duplicate_error(exc):
                RUNS_SKIPPED.labels(game=config.key, reason="duplicate").inc()
                logger.debug("run_import_duplicate", external_run_id=run.id, error=str(exc))
            else:
                RUNS_SKIPPED.labels(game=config.key, reason="error").inc()
                result.errors.append(f"Run {run.id}: {exc}")
                logger.warning("run_import_failed", external_run_id=run.id, error=str(exc))
        await self._emit_progress(on_progress, ImportProgress(total=total, imported=result.imported, skipped=result.skipped))

    async def _import_one(
        self,
        run: ExternalRun,
        config: GameSourceConfig,
        mappings: MappingSet,
        context: ImportContext,
        existing: set[str],
        result: ImportResult,
    ) -> None:
        # Stored runs are added to `existing` as they land.
        if run.id in existing:
            result.skipped += 1
            RUNS_SKIPPED.labels(game=config.key, reason="already_linked").inc()
            return

        fields = self.build_entry_fields(run, mappings)
        reason = first_validation_error(fields)
        if reason:
            result.skipped += 1
            result.errors.append(f"Run {run.id}: {reason}")
            RUNS_SKIPPED.labels(game=config.key, reason="invalid").inc()
            logger.info("run_import_skipped", external_run_id=run.id, reason=reason)
            return

        entry = LeaderboardEntry(
            **fields,
            player_id="",
            verified=False,
            imported_from_src=True,
            external_run_id=run.id,
        )
        existing.add(run.id)
        try:
            entry_id = await self._store.add_entry(entry)
        except Exception:
            existing.discard(run.id)
            raise
        if not entry_id:
            existing.discard(run.id)
            result.skipped += 1
            result.errors.append(f"Run {run.id}: failed to add")
            RUNS_SKIPPED.labels(game=config.key, reason="error").inc()
            return

        result.imported += 1
        RUNS_IMPORTED.labels(game=config.key).inc()

        unmatched = UnmatchedPlayers(
            player1=entry.player_name if context.cached_player(entry.player_name) is None else None,
            player2=(
                entry.player2_name
                if entry.player2_name not in (None, UNKNOWN_PLAYER)
                and context.cached_player(entry.player2_name) is None
                else None
            ),
        )
        if unmatched.player1 or unmatched.player2:
            result.unmatched_players[entry_id] = unmatched

        logger.debug(
            "run_imported",
            external_run_id=run.id,
            entry_id=entry_id,
            category=entry.category or None,
            platform=entry.platform or None,
        )

    @staticmethod
    async def _emit_progress(on_progress: ProgressCallback | None, progress: ImportProgress) -> None:
        if on_progress is None:
            return
        try:
            maybe = on_progress(progress)
            if inspect.isawaitable(maybe):
                await maybe
        except Exception as exc:
            logger.warning("import_progress_callback_failed", error=str(exc))
