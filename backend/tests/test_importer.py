"""
Unit tests for the run importer.

Run: pytest backend/tests/test_importer.py -v
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from ingest.context import ImportContext
from ingest.importer import RunImporter, is_duplicate_error
from shared.config import Settings
from shared.models.domain import (
    ExternalLevel,
    ExternalRunValue,
    GameSourceConfig,
    ImportProgress,
    Subcategory,
)
from shared.models.enums import CategoryScope, LeaderboardType, RunType
from shared.store.base import DuplicateEntryError
from tests.conftest import FakeCatalogSource, InMemoryStore, make_run


@pytest.fixture
def taxonomy(store: InMemoryStore) -> dict[str, str]:
    return {
        "any": store.seed_category("Any%").id,
        "any_il": store.seed_category("Any%", leaderboard_type=LeaderboardType.INDIVIDUAL_LEVEL).id,
        "pc": store.seed_platform("PC").id,
        "negotiations": store.seed_level("Negotiations").id,
    }


@pytest.fixture
def importer(store: InMemoryStore, source: FakeCatalogSource, settings: Settings) -> RunImporter:
    return RunImporter(source, store, settings=settings)


# ── End to end ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_import_stores_valid_runs_and_reports_bad_ones(
    importer: RunImporter,
    store: InMemoryStore,
    source: FakeCatalogSource,
    game_config: GameSourceConfig,
    taxonomy: dict[str, str],
) -> None:
    store.seed_entry(external_run_id="r2")
    source.runs = [
        make_run("r1", seconds=125),
        make_run("r2"),
        make_run("r3", date="13/01/2024"),
    ]

    result = await importer.import_runs(game_config)

    assert result.imported == 1
    assert result.skipped == 2
    assert result.errors == ["Run r3: invalid date format '13/01/2024' (expected YYYY-MM-DD)"]

    entry = next(e for e in store.entries.values() if e.external_run_id == "r1")
    assert entry.time == "00:02:05"
    assert entry.category == taxonomy["any"]
    assert entry.platform == taxonomy["pc"]
    assert entry.leaderboard_type == LeaderboardType.REGULAR
    assert entry.run_type == RunType.SOLO
    assert entry.verified is False
    assert entry.player_id == ""
    assert entry.imported_from_src is True
    assert entry.external_player_name == "Runner"
    assert entry.external_category_name == "Any%"
    assert entry.external_platform_name == "PC"


@pytest.mark.asyncio
async def test_import_is_idempotent(
    importer: RunImporter,
    store: InMemoryStore,
    source: FakeCatalogSource,
    game_config: GameSourceConfig,
    taxonomy: dict[str, str],
) -> None:
    source.runs = [make_run("r1"), make_run("r2")]

    first = await importer.import_runs(game_config)
    second = await importer.import_runs(game_config)

    assert first.imported == 2
    assert second.imported == 0
    assert second.skipped == 2
    assert second.errors == []
    assert len(store.entries) == 2
    assert store.add_entry_calls == 2


@pytest.mark.asyncio
async def test_game_not_found(
    importer: RunImporter, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    source.game_id = None

    result = await importer.import_runs(game_config)

    assert result.imported == 0
    assert result.errors == ["Could not find LEGO Star Wars: The Video Game (lsw) on speedrun.com"]
    assert source.page_requests == []


@pytest.mark.asyncio
async def test_nothing_to_import(
    importer: RunImporter, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    result = await importer.import_runs(game_config)
    assert (result.imported, result.skipped, result.errors) == (0, 0, [])


# ── Per-run validation ──────────────────────────────────────────────────

@pytest.mark.asyncio
@pytest.mark.parametrize("players", [("",), ()])
async def test_missing_player_name_is_skipped(
    importer: RunImporter,
    store: InMemoryStore,
    source: FakeCatalogSource,
    game_config: GameSourceConfig,
    players: tuple[str, ...],
) -> None:
    source.runs = [make_run("r1", players=players)]

    result = await importer.import_runs(game_config)

    assert result.skipped == 1
    assert result.errors == ["Run r1: missing player name"]
    assert store.entries == {}


@pytest.mark.asyncio
async def test_missing_time_is_skipped(
    importer: RunImporter, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    source.runs = [make_run("r1", seconds=None, iso=None)]

    result = await importer.import_runs(game_config)

    assert result.errors == ["Run r1: missing time"]


@pytest.mark.asyncio
async def test_iso_time_used_when_seconds_missing(
    importer: RunImporter, store: InMemoryStore, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    source.runs = [make_run("r1", seconds=None, iso="PT1H2M3S")]

    await importer.import_runs(game_config)

    (entry,) = store.entries.values()
    assert entry.time == "01:02:03"


@pytest.mark.asyncio
async def test_unmapped_taxonomy_is_tolerated(
    importer: RunImporter, store: InMemoryStore, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    source.runs = [make_run("r1", category=("c-new", "Story Mode"), platform=("p-ds", "Nintendo DS"))]

    result = await importer.import_runs(game_config)

    assert result.imported == 1
    (entry,) = store.entries.values()
    assert entry.category == ""
    assert entry.platform == ""
    assert entry.external_category_name == "Story Mode"
    assert entry.external_platform_name == "Nintendo DS"


# ── Entry construction ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_co_op_run(
    importer: RunImporter, store: InMemoryStore, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    source.runs = [make_run("r1", players=("Alpha", "Beta"))]

    await importer.import_runs(game_config)

    (entry,) = store.entries.values()
    assert entry.run_type == RunType.CO_OP
    assert entry.player_name == "Alpha"
    assert entry.player2_name == "Beta"


@pytest.mark.asyncio
async def test_co_op_run_with_unnamed_partner(
    importer: RunImporter, store: InMemoryStore, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    store.seed_player("Runner")
    source.runs = [make_run("r1", players=("Runner", ""))]

    result = await importer.import_runs(game_config)

    assert (result.imported, result.skipped, result.errors) == (1, 0, [])
    (entry,) = store.entries.values()
    assert entry.run_type == RunType.CO_OP
    assert entry.player2_name == "Unknown"
    assert result.unmatched_players == {}


@pytest.mark.asyncio
async def test_individual_level_run(
    importer: RunImporter,
    store: InMemoryStore,
    source: FakeCatalogSource,
    game_config: GameSourceConfig,
    taxonomy: dict[str, str],
) -> None:
    source.levels = [ExternalLevel(id="l1", name="Negotiations")]
    source.runs = [
        make_run("r1", category=("c-il", "Any%"), category_type=CategoryScope.PER_LEVEL, level=("l1", "Negotiations"))
    ]

    await importer.import_runs(game_config)

    (entry,) = [e for e in store.entries.values() if e.external_run_id == "r1"]
    assert entry.leaderboard_type == LeaderboardType.INDIVIDUAL_LEVEL
    assert entry.category == taxonomy["any_il"]
    assert entry.level == taxonomy["negotiations"]
    assert entry.external_level_name == "Negotiations"


@pytest.mark.asyncio
async def test_partition_from_upstream_type_when_category_unmapped(
    importer: RunImporter, store: InMemoryStore, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    source.runs = [make_run("r1", category=("c-x", "Unknown IL"), category_type=CategoryScope.PER_LEVEL)]

    await importer.import_runs(game_config)

    (entry,) = store.entries.values()
    assert entry.leaderboard_type == LeaderboardType.INDIVIDUAL_LEVEL


@pytest.mark.asyncio
async def test_subcategory_from_run_values(
    importer: RunImporter, store: InMemoryStore, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    glitchless = Subcategory(name="Glitchless", external_variable_id="var1", external_value_id="v1")
    store.seed_category("Any%", subcategories=[glitchless])
    run = make_run("r1").model_copy(
        update={"values": [ExternalRunValue(variable_id="var1", value_id="v1", label="Glitchless")]}
    )
    source.runs = [run]

    await importer.import_runs(game_config)

    (entry,) = store.entries.values()
    assert entry.subcategory == glitchless.id
    assert entry.external_subcategory_name == "Glitchless"


# ── Players ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_unmatched_players_are_reported(
    importer: RunImporter, store: InMemoryStore, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    store.seed_player("alpha")
    source.runs = [make_run("r1", players=("Alpha", "Beta")), make_run("r2", players=("ALPHA",))]

    result = await importer.import_runs(game_config)

    assert result.imported == 2
    (entry_id,) = result.unmatched_players
    assert store.entries[entry_id].external_run_id == "r1"
    assert result.unmatched_players[entry_id].player1 is None
    assert result.unmatched_players[entry_id].player2 == "Beta"


@pytest.mark.asyncio
async def test_player_lookups_are_cached_in_context(
    importer: RunImporter, store: InMemoryStore, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    store.get_player_by_display_name = AsyncMock(return_value=None)  # type: ignore[method-assign]
    source.runs = [make_run("r1", players=("Alpha",)), make_run("r2", players=("alpha",))]
    context = ImportContext()

    await importer.import_runs(game_config, context=context)

    store.get_player_by_display_name.assert_awaited_once()
    assert context.knows_player("ALPHA")


# ── Failures ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_duplicate_on_insert_counts_as_skipped(
    importer: RunImporter, store: InMemoryStore, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    store.add_entry = AsyncMock(side_effect=DuplicateEntryError("entry for run r1 already exists"))  # type: ignore[method-assign]
    source.runs = [make_run("r1")]

    result = await importer.import_runs(game_config)

    assert (result.imported, result.skipped, result.errors) == (0, 1, [])


@pytest.mark.asyncio
async def test_store_failure_is_reported_and_batch_continues(
    importer: RunImporter, store: InMemoryStore, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    real_add = store.add_entry

    async def flaky_add(entry):  # type: ignore[no-untyped-def]
        if entry.external_run_id == "r1":
            raise RuntimeError("connection reset")
        return await real_add(entry)

    store.add_entry = flaky_add  # type: ignore[method-assign]
    source.runs = [make_run("r1"), make_run("r2")]

    result = await importer.import_runs(game_config)

    assert result.imported == 1
    assert result.skipped == 1
    assert result.errors == ["Run r1: connection reset"]


@pytest.mark.asyncio
async def test_add_returning_none_is_reported(
    importer: RunImporter, store: InMemoryStore, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    store.add_entry = AsyncMock(return_value=None)  # type: ignore[method-assign]
    source.runs = [make_run("r1")]

    result = await importer.import_runs(game_config)

    assert result.errors == ["Run r1: failed to add"]


def test_is_duplicate_error() -> None:
    assert is_duplicate_error(Exception("UNIQUE constraint failed"))
    assert is_duplicate_error(DuplicateEntryError("entry for run r1 already exists"))
    assert not is_duplicate_error(Exception("timeout"))


# ── Paging ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_paging_stops_at_target(
    store: InMemoryStore, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    settings = Settings(import_page_size=2, import_target_count=3, metrics_enabled=False)
    source.runs = [make_run(f"r{i}") for i in range(1, 6)]

    result = await RunImporter(source, store, settings=settings).import_runs(game_config)

    assert source.page_requests == [(2, 0), (2, 2)]
    assert result.imported == 3
    assert {e.external_run_id for e in store.entries.values()} == {"r1", "r2", "r3"}


@pytest.mark.asyncio
async def test_paging_stops_at_ceiling(
    store: InMemoryStore, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    settings = Settings(import_page_size=2, import_target_count=10, import_max_fetched=4, metrics_enabled=False)
    source.runs = [make_run(f"r{i}") for i in range(1, 9)]

    result = await RunImporter(source, store, settings=settings).import_runs(game_config)

    assert source.page_requests == [(2, 0), (2, 2)]
    assert result.imported == 4


@pytest.mark.asyncio
async def test_unparseable_run_does_not_end_paging(
    store: InMemoryStore, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    settings = Settings(import_page_size=2, import_target_count=10, metrics_enabled=False)
    source.runs = [make_run("r1"), "bad1", make_run("r2"), make_run("r3")]

    result = await RunImporter(source, store, settings=settings).import_runs(game_config)

    assert source.page_requests == [(2, 0), (2, 2), (2, 4)]
    assert result.imported == 3
    assert result.skipped == 1
    assert result.errors == ["Run bad1: unparseable upstream run"]


# ── Progress and autoclaim ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_progress_callback(
    importer: RunImporter, store: InMemoryStore, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    store.seed_entry(external_run_id="r2")
    source.runs = [make_run("r1"), make_run("r2"), make_run("r3", date="")]
    seen: list[ImportProgress] = []

    await importer.import_runs(game_config, on_progress=seen.append)

    assert len(seen) == 2
    assert all(p.total == 3 for p in seen)
    assert seen[-1].imported + seen[-1].skipped == 3


@pytest.mark.asyncio
async def test_async_progress_callback_and_failures_are_ignored(
    importer: RunImporter, source: FakeCatalogSource, game_config: GameSourceConfig
) -> None:
    source.runs = [make_run("r1")]
    callback = AsyncMock(side_effect=RuntimeError("ui gone"))

    result = await importer.import_runs(game_config, on_progress=callback)

    assert result.imported == 1
    callback.assert_awaited_once()


@pytest.mark.asyncio
async def test_autoclaim_runs_after_import(
    store: InMemoryStore, source: FakeCatalogSource, settings: Settings, game_config: GameSourceConfig
) -> None:
    autoclaim = MagicMock()
    autoclaim.run_for_all_players = AsyncMock()
    source.runs = [make_run("r1")]

    await RunImporter(source, store, autoclaim=autoclaim, settings=settings).import_runs(game_config)

    autoclaim.run_for_all_players.assert_awaited_once()


@pytest.mark.asyncio
async def test_autoclaim_failure_does_not_fail_import(
    store: InMemoryStore, source: FakeCatalogSource, settings: Settings, game_config: GameSourceConfig
) -> None:
    autoclaim = MagicMock()
    autoclaim.run_for_all_players = AsyncMock(side_effect=RuntimeError("db down"))
    source.runs = [make_run("r1")]

    result = await RunImporter(source, store, autoclaim=autoclaim, settings=settings).import_runs(game_config)

    assert result.imported == 1
    assert result.errors == []


@pytest.mark.asyncio
async def test_autoclaim_skipped_when_nothing_imported(
    store: InMemoryStore, source: FakeCatalogSource, settings: Settings, game_config: GameSourceConfig
) -> None:
    autoclaim = MagicMock()
    autoclaim.run_for_all_players = AsyncMock()
    source.runs = [make_run("r1", date="")]

    await RunImporter(source, store, autoclaim=autoclaim, settings=settings).import_runs(game_config)

    autoclaim.run_for_all_players.assert_not_awaited()
