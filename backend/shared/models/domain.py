"""
Pydantic v2 domain models shared across all RunSync services.
These are the canonical internal representations, not ORM models.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.models.enums import CategoryScope, LeaderboardType, RunType


# ── Base ────────────────────────────────────────────────────────────────
class DomainModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


def new_id() -> str:
    return str(uuid.uuid4())


# ── Upstream catalog (read-only) ────────────────────────────────────────
class ExternalRef(DomainModel):
    """Reference to an upstream entity; name is present only when embedded."""
    id: str
    name: Optional[str] = None


class ExternalCategoryRef(ExternalRef):
    type: Optional[CategoryScope] = None


class ExternalPlayer(DomainModel):
    name: str = ""
    external_user_id: Optional[str] = None
    is_guest: bool = False


class ExternalRunValue(DomainModel):
    """One variable choice on a run (e.g. Subcategory = 'Glitchless')."""
    variable_id: str
    value_id: str
    label: Optional[str] = None


class ExternalRun(DomainModel):
    id: str
    players: list[ExternalPlayer] = Field(default_factory=list)
    primary_time: Optional[str] = None
    primary_seconds: Optional[float] = None
    date: Optional[str] = None
    submitted: Optional[datetime] = None
    category: Optional[ExternalCategoryRef] = None
    platform: Optional[ExternalRef] = None
    level: Optional[ExternalRef] = None
    values: list[ExternalRunValue] = Field(default_factory=list)
    weblink: Optional[str] = None
    video_url: Optional[str] = None
    comment: Optional[str] = None


class RunPage(DomainModel):
    """
    One page of upstream runs.

    `fetched` counts raw items before parsing, so a page holding a malformed
    run is still recognised as full. `unparseable` holds the ids of the
    items that could not be parsed.
    """
    runs: list[ExternalRun] = Field(default_factory=list)
    fetched: int = 0
    unparseable: list[str] = Field(default_factory=list)


class ExternalCategory(DomainModel):
    id: str
    name: str
    type: CategoryScope = CategoryScope.PER_GAME


class ExternalLevel(DomainModel):
    id: str
    name: str


class ExternalPlatform(DomainModel):
    id: str
    name: str


class ExternalVariable(DomainModel):
    id: str
    name: str
    category_id: Optional[str] = None
    is_subcategory: bool = False
    values: dict[str, str] = Field(default_factory=dict)


class GameSourceConfig(DomainModel):
    """Which upstream game a site imports from."""
    key: str
    abbreviation: str
    name: str
    default_categories: list[str] = Field(default_factory=list)
    default_platforms: list[str] = Field(default_factory=list)


# ── Local taxonomy ──────────────────────────────────────────────────────
class Subcategory(DomainModel):
    id: str = Field(default_factory=new_id)
    name: str
    order: int = 0
    external_variable_id: Optional[str] = None
    external_value_id: Optional[str] = None


class Category(DomainModel):
    id: str = Field(default_factory=new_id)
    name: str
    order: int = 0
    leaderboard_type: Optional[LeaderboardType] = None
    external_id: Optional[str] = None
    external_subcategory_variable_name: Optional[str] = None
    subcategories: list[Subcategory] = Field(default_factory=list)

    @property
    def partition(self) -> LeaderboardType:
        """Categories saved before partitions existed count as regular."""
        return self.leaderboard_type or LeaderboardType.REGULAR


class Platform(DomainModel):
    id: str = Field(default_factory=new_id)
    name: str
    order: int = 0
    external_id: Optional[str] = None


class Level(DomainModel):
    id: str = Field(default_factory=new_id)
    name: str
    order: int = 0
    leaderboard_type: Optional[LeaderboardType] = None
    external_id: Optional[str] = None


class Player(DomainModel):
    id: str = Field(default_factory=new_id)
    display_name: str
    external_username: Optional[str] = None


# ── Leaderboard entry ───────────────────────────────────────────────────
class LeaderboardEntry(DomainModel):
    """
    A run on the site leaderboard.

    Imported runs start unverified and unclaimed (player_id == ""). The
    external_*_name fields keep the upstream display names so an
    administrator can finish the mapping when the resolver could not.
    """
    id: str = Field(default_factory=new_id)
    player_id: str = ""
    player_name: str
    player2_name: Optional[str] = None
    external_player_name: Optional[str] = None
    category: str = ""
    subcategory: Optional[str] = None
    platform: str = ""
    level: Optional[str] = None
    run_type: RunType = RunType.SOLO
    leaderboard_type: LeaderboardType = LeaderboardType.REGULAR
    time: str
    date: str
    verified: bool = False
    verified_by: Optional[str] = None
    imported_from_src: bool = False
    external_run_id: Optional[str] = None
    external_category_name: Optional[str] = None
    external_platform_name: Optional[str] = None
    external_level_name: Optional[str] = None
    external_subcategory_name: Optional[str] = None
    video_url: Optional[str] = None
    comment: Optional[str] = None
    version: int = 0
    created_at: Optional[datetime] = None


# ── Operation results ───────────────────────────────────────────────────
class UnmatchedPlayers(DomainModel):
    """Player names on an imported entry with no local profile."""
    player1: Optional[str] = None
    player2: Optional[str] = None


class ImportProgress(DomainModel):
    total: int
    imported: int
    skipped: int


class ImportResult(DomainModel):
    imported: int = 0
    skipped: int = 0
    unmatched_players: dict[str, UnmatchedPlayers] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)


class VerificationOutcome(DomainModel):
    success: bool
    reason: Optional[str] = None


class BatchVerificationResult(DomainModel):
    success_count: int = 0
    error_count: int = 0
    errors: list[str] = Field(default_factory=list)


class AutoclaimResult(DomainModel):
    players_updated: int = 0
    runs_updated: int = 0
    errors: list[str] = Field(default_factory=list)


class BackfillResult(DomainModel):
    runs_updated: int = 0
    errors: list[str] = Field(default_factory=list)


class AutoclaimDiagnosis(DomainModel):
    """Why a player's imported runs were or were not auto-claimed."""
    player_id: Optional[str] = None
    display_name: Optional[str] = None
    external_username: Optional[str] = None
    matching_unclaimed_run_ids: list[str] = Field(default_factory=list)
    matching_claimed_run_ids: list[str] = Field(default_factory=list)
    unclaimed_imported_count: int = 0
    issues: list[str] = Field(default_factory=list)


class TaxonomySyncResult(DomainModel):
    created: int = 0
    linked: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)


class BatchFilters(DomainModel):
    """Narrows which unverified imported runs a batch verification touches."""
    leaderboard_type: Optional[LeaderboardType] = None
    category: Optional[str] = None
    platform: Optional[str] = None
    level: Optional[str] = None
    run_type: Optional[RunType] = None
