"""
Abstract base class for upstream speedrun catalogs.
Defines the contract the importer and resolver rely on.
"""
from __future__ import annotations

import abc
from typing import Optional

from shared.models.domain import (
    ExternalCategory,
    ExternalLevel,
    ExternalPlatform,
    ExternalVariable,
    GameSourceConfig,
    RunPage,
)
from shared.utils.http_client import CatalogHTTPClient


class CatalogSource(abc.ABC):
    """
    Abstract base class for speedrun catalog connectors.

    Lookups other than the run fetch degrade to empty results or None on
    failure so a single bad endpoint does not abort a whole import. The run
    fetch propagates its errors: a silently short page would end the import
    early.
    """

    def __init__(self, name: str, http_client: CatalogHTTPClient) -> None:
        self._name = name
        self._http = http_client

    @property
    def name(self) -> str:
        return self._name

    async def start(self) -> None:
        """Initialize the source HTTP client."""
        await self._http.start()

    async def close(self) -> None:
        """Shutdown the source HTTP client."""
        await self._http.close()

    # ── Abstract methods (each source implements these) ─────────────────
    @abc.abstractmethod
    async def resolve_game_id(self, config: GameSourceConfig) -> Optional[str]:
        """Upstream game id for a configured game, or None if it cannot be found."""
        ...

    @abc.abstractmethod
    async def fetch_runs_not_on_leaderboards(
        self, game_id: str, limit: int, offset: int = 0
    ) -> RunPage:
        """
        One page of verified upstream runs, newest submissions first.

        `RunPage.fetched` below `limit` means the upstream has no more runs.
        Items that fail to parse are reported in `RunPage.unparseable`
        rather than dropped.
        """
        ...

    @abc.abstractmethod
    async def fetch_categories(self, game_id: str) -> list[ExternalCategory]:
        ...

    @abc.abstractmethod
    async def fetch_levels(self, game_id: str) -> list[ExternalLevel]:
        ...

    @abc.abstractmethod
    async def fetch_platforms(self) -> list[ExternalPlatform]:
        """Every platform the catalog knows about (bulk lookup)."""
        ...

    @abc.abstractmethod
    async def fetch_platform_by_id(self, platform_id: str) -> Optional[str]:
        """Display name of a single platform, or None."""
        ...

    @abc.abstractmethod
    async def fetch_category_variables(self, category_id: str) -> list[ExternalVariable]:
        ...
