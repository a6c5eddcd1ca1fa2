"""
Shared fixtures: an in-memory LeaderboardStore and a scripted catalog source.
"""
from __future__ import annotations

from typing import Any, Optional, Union

import pytest

from shared.config import Settings
from shared.models.domain import (
    Category,
    ExternalCategory,
    ExternalCategoryRef,
    ExternalLevel,
    ExternalPlatform,
    ExternalPlayer,
    ExternalRef,
    ExternalRun,
    ExternalVariable,
    GameSourceConfig,
    LeaderboardEntry,
    Level,
    Platform,
    Player,
    RunPage,
)
from shared.models.enums import CategoryScope, LeaderboardType
from shared.store.base import DuplicateEntryError, LeaderboardStore, StaleEntryError
from verifier.config import VerifierSettings

from ingest.providers.base import CatalogSource


class InMemoryStore(LeaderboardStore):
    """Dict-backed store with the same version semantics as the Postgres one."""

    def __init__(self) -> None:
        self.entries: dict[str, LeaderboardEntry] = {}
        self.players: dict[str, Player] = {}
        self.categories: dict[str, Category] = {}
        self.platforms: dict[str, Platform] = {}
        self.levels: dict[str, Level] = {}
        self.add_entry_calls = 0

    # ── Entries ──────────────────────────────────────────────
    async def get_existing_external_run_ids(self) -> set[str]:
        return {e.external_run_id for e in self.entries.values() if e.external_run_id}

    async def add_entry(self, entry: LeaderboardEntry) -> Optional[str]:
        self.add_entry_calls += 1
        if entry.external_run_id and entry.external_run_id in await self.get_existing_external_run_ids():
            raise DuplicateEntryError(f"entry for run {entry.external_run_id} already exists")
        self.entries[entry.id] = entry.model_copy(deep=True)
        return entry.id

    async def get_entry(self, entry_id: str) -> Optional[LeaderboardEntry]:
        entry = self.entries.get(entry_id)
        return entry.model_copy(deep=True) if entry else None

    async def update_entry(
        self,
        entry_id: str,
        changes: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Optional[LeaderboardEntry]:
        current = self.entries.get(entry_id)
        if current is None:
            return None
        if expected_version is not None and current.version != expected_version:
            raise StaleEntryError(entry_id, expected_version)
        updated = LeaderboardEntry.model_validate(
            {**current.model_dump(), **changes, "id": entry_id, "version": current.version + 1}
        )
        self.entries[entry_id] = updated
        return updated.model_copy(deep=True)

    async def delete_entry(self, entry_id: str) -> bool:
        return self.entries.pop(entry_id, None) is not None

    async def get_imported_entries(self, verified: Optional[bool] = None) -> list[LeaderboardEntry]:
        return [
            e.model_copy(deep=True)
            for e in self.entries.values()
            if e.imported_from_src and (verified is None or e.verified == verified)
        ]

    async def get_unclaimed_imported_entries(self, placeholder: str = "") -> list[LeaderboardEntry]:
        return [
            e.model_copy(deep=True)
            for e in self.entries.values()
            if e.imported_from_src and e.player_id in ("", placeholder)
        ]

    # ── Players ──────────────────────────────────────────────
    async def get_player(self, player_id: str) -> Optional[Player]:
        return self.players.get(player_id)

    async def get_player_by_display_name(self, display_name: str) -> Optional[Player]:
        wanted = display_name.strip().lower()
        for player in self.players.values():
            if player.display_name.strip().lower() == wanted:
                return player
        return None

    async def get_players_with_external_username(self) -> list[Player]:
        return [p for p in self.players.values() if (p.external_username or "").strip()]

    # ── Taxonomy ─────────────────────────────────────────────
    async def get_categories(self, leaderboard_type: Optional[LeaderboardType] = None) -> list[Category]:
        return [
            c.model_copy(deep=True)
            for c in sorted(self.categories.values(), key=lambda c: c.order)
            if leaderboard_type is None or c.partition == leaderboard_type
        ]

    async def get_platforms(self) -> list[Platform]:
        return sorted(self.platforms.values(), key=lambda p: p.order)

    async def get_levels(self, leaderboard_type: Optional[LeaderboardType] = None) -> list[Level]:
        return [
            lv
            for lv in sorted(self.levels.values(), key=lambda lv: lv.order)
            if leaderboard_type is None or lv.leaderboard_type in (None, leaderboard_type)
        ]

    async def add_category(self, category: Category) -> Optional[str]:
        self.categories[category.id] = category.model_copy(deep=True)
        return category.id

    async def update_category(self, category: Category) -> bool:
        if category.id not in self.categories:
            return False
        self.categories[category.id] = category.model_copy(deep=True)
        return True

    # ── Seeding helpers ──────────────────────────────────────
    def seed_category(self, name: str, **kwargs: Any) -> Category:
        category = Category(name=name, order=len(self.categories), **kwargs)
        self.categories[category.id] = category
        return category

    def seed_platform(self, name: str, **kwargs: Any) -> Platform:
        platform = Platform(name=name, order=len(self.platforms), **kwargs)
        self.platforms[platform.id] = platform
        return platform

    def seed_level(self, name: str, **kwargs: Any) -> Level:
        level = Level(name=name, order=len(self.levels), **kwargs)
        self.levels[level.id] = level
        return level

    def seed_player(self, display_name: str, external_username: Optional[str] = None) -> Player:
        player = Player(display_name=display_name, external_username=external_username)
        self.players[player.id] = player
        return player

    def seed_entry(self, **kwargs: Any) -> LeaderboardEntry:
        fields: dict[str, Any] = {
            "player_name": "Runner",
            "time": "00:10:00",
            "date": "2024-01-01",
            "imported_from_src": True,
        }
        fields.update(kwargs)
        entry = LeaderboardEntry(**fields)
        self.entries[entry.id] = entry
        return entry


class FakeCatalogSource(CatalogSource):
    """
    Scripted catalog: pages are slices of `runs`.

    A str in `runs` stands for a raw upstream item with that id that fails
    to parse.
    """

    def __init__(self, game_id: Optional[str] = "game1") -> None:
        self._name = "fake"
        self._http = None
        self.game_id = game_id
        self.runs: list[Union[ExternalRun, str]] = []
        self.categories: list[ExternalCategory] = []
        self.levels: list[ExternalLevel] = []
        self.platforms: list[ExternalPlatform] = []
        self.platform_by_id: dict[str, str] = {}
        self.variables: dict[str, list[ExternalVariable]] = {}
        self.page_requests: list[tuple[int, int]] = []
        self.fetch_platforms_calls = 0
        self.platform_by_id_calls: list[str] = []

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def resolve_game_id(self, config: GameSourceConfig) -> Optional[str]:
        return self.game_id

    async def fetch_runs_not_on_leaderboards(self, game_id: str, limit: int, offset: int = 0) -> RunPage:
        self.page_requests.append((limit, offset))
        items = self.runs[offset : offset + limit]
        return RunPage(
            runs=[item for item in items if isinstance(item, ExternalRun)],
            fetched=len(items),
            unparseable=[item for item in items if isinstance(item, str)],
        )

    async def fetch_categories(self, game_id: str) -> list[ExternalCategory]:
        return list(self.categories)

    async def fetch_levels(self, game_id: str) -> list[ExternalLevel]:
        return list(self.levels)

    async def fetch_platforms(self) -> list[ExternalPlatform]:
        self.fetch_platforms_calls += 1
        return list(self.platforms)

    async def fetch_platform_by_id(self, platform_id: str) -> Optional[str]:
        self.platform_by_id_calls.append(platform_id)
        return self.platform_by_id.get(platform_id)

    async def fetch_category_variables(self, category_id: str) -> list[ExternalVariable]:
        return list(self.variables.get(category_id, []))


def make_run(
    run_id: str,
    players: tuple[str, ...] = ("Runner",),
    seconds: Optional[float] = 125,
    iso: Optional[str] = None,
    date: Optional[str] = "2024-01-13",
    category: Optional[tuple[str, str]] = ("c-any", "Any%"),
    category_type: Optional[CategoryScope] = CategoryScope.PER_GAME,
    platform: Optional[tuple[str, Optional[str]]] = ("p-pc", "PC"),
    level: Optional[tuple[str, Optional[str]]] = None,
) -> ExternalRun:
    return ExternalRun(
        id=run_id,
        players=[ExternalPlayer(name=name) for name in players],
        primary_seconds=seconds,
        primary_time=iso,
        date=date,
        category=ExternalCategoryRef(id=category[0], name=category[1], type=category_type) if category else None,
        platform=ExternalRef(id=platform[0], name=platform[1]) if platform else None,
        level=ExternalRef(id=level[0], name=level[1]) if level else None,
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def source() -> FakeCatalogSource:
    src = FakeCatalogSource()
    src.categories = [
        ExternalCategory(id="c-any", name="Any%", type=CategoryScope.PER_GAME),
        ExternalCategory(id="c-il", name="Any%", type=CategoryScope.PER_LEVEL),
    ]
    return src


@pytest.fixture
def settings() -> Settings:
    return Settings(
        import_page_size=200,
        import_target_count=500,
        import_max_fetched=5000,
        import_chunk_size=20,
        metrics_enabled=False,
    )


@pytest.fixture
def verifier_settings() -> VerifierSettings:
    return VerifierSettings(verify_concurrency=4, batch_recent_limit=10, unclaimed_placeholder="imported")


@pytest.fixture
def game_config() -> GameSourceConfig:
    return GameSourceConfig(key="lsw", abbreviation="lsw", name="LEGO Star Wars: The Video Game")
