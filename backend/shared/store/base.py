"""
Abstract persistence contract for the leaderboard.
The importer, resolver, and verifier only talk to storage through this.
"""
from __future__ import annotations

import abc
from typing import Any, Optional

from shared.models.domain import Category, LeaderboardEntry, Level, Platform, Player
from shared.models.enums import LeaderboardType


class StoreError(Exception):
    """Base class for persistence failures the caller is expected to handle."""


class DuplicateEntryError(StoreError):
    """An entry for this external run already exists."""


class StaleEntryError(StoreError):
    """The entry changed since it was read; the update was not applied."""

    def __init__(self, entry_id: str, expected_version: int) -> None:
        super().__init__(f"entry {entry_id} was modified concurrently (expected version {expected_version})")
        self.entry_id = entry_id
        self.expected_version = expected_version


class LeaderboardStore(abc.ABC):
    """
    Storage for leaderboard entries, players, and the local taxonomy.

    Entry updates take an optional expected_version: when given, the update is
    applied only if the stored version still matches, otherwise StaleEntryError
    is raised. Every successful update bumps the version.
    """

    # ── Entries ──────────────────────────────────────────────
    @abc.abstractmethod
    async def get_existing_external_run_ids(self) -> set[str]:
        """External run ids already present on the leaderboard."""
        ...

    @abc.abstractmethod
    async def add_entry(self, entry: LeaderboardEntry) -> Optional[str]:
        """
        Persist a new entry and return its id, or None on failure.

        Raises:
            DuplicateEntryError: If the external run id is already stored.
                Other integrity failures are not duplicates.
        """
        ...

    @abc.abstractmethod
    async def get_entry(self, entry_id: str) -> Optional[LeaderboardEntry]:
        ...

    @abc.abstractmethod
    async def update_entry(
        self,
        entry_id: str,
        changes: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Optional[LeaderboardEntry]:
        """
        Apply changes to an entry. Returns the updated entry, or None if it does not exist.

        Raises:
            StaleEntryError: If expected_version no longer matches.
        """
        ...

    @abc.abstractmethod
    async def delete_entry(self, entry_id: str) -> bool:
        ...

    @abc.abstractmethod
    async def get_imported_entries(self, verified: Optional[bool] = None) -> list[LeaderboardEntry]:
        """Entries that came from the upstream catalog, optionally filtered by verified flag."""
        ...

    @abc.abstractmethod
    async def get_unclaimed_imported_entries(self, placeholder: str = "") -> list[LeaderboardEntry]:
        """Imported entries whose player_id is empty or equal to placeholder."""
        ...

    # ── Players ──────────────────────────────────────────────
    @abc.abstractmethod
    async def get_player(self, player_id: str) -> Optional[Player]:
        ...

    @abc.abstractmethod
    async def get_player_by_display_name(self, display_name: str) -> Optional[Player]:
        """Case-insensitive lookup on the trimmed display name."""
        ...

    @abc.abstractmethod
    async def get_players_with_external_username(self) -> list[Player]:
        ...

    # ── Taxonomy ─────────────────────────────────────────────
    @abc.abstractmethod
    async def get_categories(self, leaderboard_type: Optional[LeaderboardType] = None) -> list[Category]:
        """
        Local categories ordered by `order`.

        Filtering by REGULAR also returns categories with no partition set.
        """
        ...

    @abc.abstractmethod
    async def get_platforms(self) -> list[Platform]:
        ...

    @abc.abstractmethod
    async def get_levels(self, leaderboard_type: Optional[LeaderboardType] = None) -> list[Level]:
        """Local levels ordered by `order`; levels with no partition match every filter."""
        ...

    @abc.abstractmethod
    async def add_category(self, category: Category) -> Optional[str]:
        ...

    @abc.abstractmethod
    async def update_category(self, category: Category) -> bool:
        """Replace a stored category, including its subcategory list."""
        ...
