"""Domain enumerations for the RunSync platform."""
from __future__ import annotations

from enum import Enum


class LeaderboardType(str, Enum):
    """Partition of the local taxonomy a run belongs to."""
    REGULAR = "regular"
    INDIVIDUAL_LEVEL = "individual-level"
    COMMUNITY_GOLDS = "community-golds"

    @property
    def requires_level(self) -> bool:
        return self in (LeaderboardType.INDIVIDUAL_LEVEL, LeaderboardType.COMMUNITY_GOLDS)


class RunType(str, Enum):
    SOLO = "solo"
    CO_OP = "co-op"


class CategoryScope(str, Enum):
    """How the upstream catalog scopes a category."""
    PER_GAME = "per-game"
    PER_LEVEL = "per-level"

    @property
    def leaderboard_type(self) -> LeaderboardType:
        if self == CategoryScope.PER_LEVEL:
            return LeaderboardType.INDIVIDUAL_LEVEL
        return LeaderboardType.REGULAR


class MatchStage(str, Enum):
    """Which resolver strategy produced a taxonomy match."""
    EXTERNAL_ID = "external_id"
    EXACT_PARTITION = "exact_partition"
    EXACT = "exact"
    FUZZY = "fuzzy"
    SIMILARITY = "similarity"


class TaxonomyKind(str, Enum):
    CATEGORY = "category"
    PLATFORM = "platform"
    LEVEL = "level"
