"""
Caller-owned lookup caches shared across one or more import runs.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from shared.models.domain import Player


@dataclass
class ImportContext:
    """
    Caches that outlive a single resolver pass.

    platform_names maps upstream platform id to display name. player_cache maps
    a lowercased display name to the local player, or None when the name is
    known to have no profile. Pass the same context to consecutive imports to
    reuse lookups; a fresh one is created per import otherwise.
    """
    platform_names: dict[str, str] = field(default_factory=dict)
    player_cache: dict[str, Optional[Player]] = field(default_factory=dict)

    def cached_player(self, name: Optional[str]) -> Optional[Player]:
        if not name:
            return None
        return self.player_cache.get(name.strip().lower())

    def knows_player(self, name: str) -> bool:
        return name.strip().lower() in self.player_cache

    def remember_player(self, name: str, player: Optional[Player]) -> None:
        self.player_cache[name.strip().lower()] = player
