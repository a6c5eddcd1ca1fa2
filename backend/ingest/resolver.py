"""
Taxonomy resolver.

Maps upstream category, platform, and level ids onto the site's own taxonomy
for one batch of runs. Each external entry is matched by the first strategy
that succeeds:

  1. stored external id link (categories only)
  2. exact name within the partition implied by the upstream category type
  3. exact name in any partition
  4. fuzzy name (lowercase, alphanumerics only)
  5. positional similarity over the fuzzy names, at or above a threshold

Unmatched entries are left out of the maps. The importer still records their
upstream display names on the entry so an administrator can finish the
mapping by hand.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Sequence

from shared.models.domain import (
    Category,
    ExternalCategory,
    ExternalLevel,
    ExternalRef,
    ExternalRun,
    Level,
    Platform,
)
from shared.models.enums import LeaderboardType, MatchStage, TaxonomyKind
from shared.store.base import LeaderboardStore
from shared.utils.concurrency import ConcurrencyLimiter
from shared.utils.logging import get_logger
from shared.utils.metrics import TAXONOMY_MATCHES, TAXONOMY_UNMATCHED

from ingest.context import ImportContext
from ingest.providers.base import CatalogSource

logger = get_logger(__name__)

CATEGORY_SIMILARITY_THRESHOLD = 0.80
LEVEL_SIMILARITY_THRESHOLD = 0.80
PLATFORM_SIMILARITY_THRESHOLD = 0.85

# Similarity is only tried for fuzzy names longer than these.
CATEGORY_MIN_FUZZY_LENGTH = 3
LEVEL_MIN_FUZZY_LENGTH = 3
PLATFORM_MIN_FUZZY_LENGTH = 2

_NON_ALNUM = re.compile(r"[^a-z0-9]")


# ── Name helpers ────────────────────────────────────────────────────────
def normalize_name(name: str) -> str:
    return name.strip().lower()


def fuzzy_name(name: str) -> str:
    return _NON_ALNUM.sub("", normalize_name(name))


def similarity(a: str, b: str) -> float:
    """
    Share of positions where the two strings agree, over the longer length.

    Characters past the end of the shorter string count as mismatches. This is
    a positional comparison, not an edit distance: an inserted character early
    in one string shifts every later position.
    """
    longer, shorter = (a, b) if len(a) > len(b) else (b, a)
    if not longer:
        return 1.0
    mismatches = sum(
        1 for i, ch in enumerate(longer) if i >= len(shorter) or shorter[i] != ch
    )
    return (len(longer) - mismatches) / len(longer)


@dataclass(frozen=True)
class NameCandidate:
    id: str
    name: str
    partition: Optional[LeaderboardType] = None


def match_by_name(
    name: str,
    candidates: Sequence[NameCandidate],
    threshold: Optional[float],
    min_fuzzy_length: int = 0,
    partition: Optional[LeaderboardType] = None,
) -> tuple[Optional[str], Optional[MatchStage]]:
    """
    Run the name stages in order and return (local_id, stage) or (None, None).

    The partition stage runs only when `partition` is given, and the similarity
    stage only when `threshold` is. On the similarity stage the highest score
    wins and ties keep the earliest candidate.
    """
    normalized = normalize_name(name)
    if not normalized:
        return None, None

    if partition is not None:
        for c in candidates:
            if normalize_name(c.name) == normalized and (c.partition or LeaderboardType.REGULAR) == partition:
                return c.id, MatchStage.EXACT_PARTITION

    for c in candidates:
        if normalize_name(c.name) == normalized:
            return c.id, MatchStage.EXACT

    fuzzy = fuzzy_name(name)
    for c in candidates:
        if fuzzy_name(c.name) == fuzzy:
            return c.id, MatchStage.FUZZY

    if threshold is not None and len(fuzzy) > min_fuzzy_length:
        best_id: Optional[str] = None
        best_score = 0.0
        for c in candidates:
            score = similarity(fuzzy_name(c.name), fuzzy)
            if score >= threshold and (best_id is None or score > best_score):
                best_id, best_score = c.id, score
        if best_id is not None:
            return best_id, MatchStage.SIMILARITY

    return None, None


# ── Mapping set ─────────────────────────────────────────────────────────
def _frozen(d: dict[str, str]) -> Mapping[str, str]:
    return MappingProxyType(dict(d))


@dataclass(frozen=True)
class MappingSet:
    """
    Immutable, batch-scoped lookup tables from upstream to local taxonomy.

    The *_names maps key local ids by both the normalized and fuzzy form of
    the upstream name; when two upstream names share a key the first keeps it.
    The external_*_names maps keep upstream display names
    by upstream id, including entries that did not match.
    """
    category_ids: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    platform_ids: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    level_ids: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    category_names: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    platform_names: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    external_category_names: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    external_platform_names: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    external_level_names: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    external_category_types: Mapping[str, LeaderboardType] = field(default_factory=lambda: MappingProxyType({}))
    local_categories: Mapping[str, Category] = field(default_factory=lambda: MappingProxyType({}))
    local_levels: Mapping[str, Level] = field(default_factory=lambda: MappingProxyType({}))

    @staticmethod
    def _by_name(names: Mapping[str, str], name: Optional[str]) -> Optional[str]:
        if not name:
            return None
        return names.get(normalize_name(name)) or names.get(fuzzy_name(name))

    def category_name(self, ref: Optional[ExternalRef]) -> Optional[str]:
        if ref is None:
            return None
        return ref.name or self.external_category_names.get(ref.id)

    def platform_name(self, ref: Optional[ExternalRef]) -> Optional[str]:
        if ref is None:
            return None
        return ref.name or self.external_platform_names.get(ref.id)

    def level_name(self, ref: Optional[ExternalRef]) -> Optional[str]:
        if ref is None:
            return None
        return ref.name or self.external_level_names.get(ref.id)

    def resolve_category(self, ref: Optional[ExternalRef]) -> Optional[str]:
        """Local category id by upstream id, then normalized name, then fuzzy name."""
        if ref is None:
            return None
        return self.category_ids.get(ref.id) or self._by_name(self.category_names, self.category_name(ref))

    def resolve_platform(self, ref: Optional[ExternalRef]) -> Optional[str]:
        if ref is None:
            return None
        return self.platform_ids.get(ref.id) or self._by_name(self.platform_names, self.platform_name(ref))

    def resolve_level(self, ref: Optional[ExternalRef]) -> Optional[str]:
        if ref is None:
            return None
        return self.level_ids.get(ref.id)


# ── Resolver ────────────────────────────────────────────────────────────
class TaxonomyResolver:
    """Builds a MappingSet for a batch of upstream runs."""

    def __init__(
        self,
        source: CatalogSource,
        store: LeaderboardStore,
        platform_limiter: ConcurrencyLimiter | None = None,
    ) -> None:
        self._source = source
        self._store = store
        self._platform_limiter = platform_limiter or ConcurrencyLimiter(5)

    async def build_mappings(
        self,
        runs: Sequence[ExternalRun],
        game_id: str,
        context: ImportContext | None = None,
    ) -> MappingSet:
        if not game_id:
            raise ValueError("game_id is required")
        context = context or ImportContext()

        local_categories, local_platforms, local_levels, ext_categories, ext_levels = await asyncio.gather(
            self._store.get_categories(),
            self._store.get_platforms(),
            self._store.get_levels(),
            self._source.fetch_categories(game_id),
            self._source.fetch_levels(game_id),
        )
        platform_names = await self._platform_names_for(runs, context)

        category_ids, category_names, ext_category_names, ext_category_types = self._map_categories(
            ext_categories, local_categories
        )
        platform_ids, platform_name_map = self._map_platforms(platform_names, local_platforms)
        level_ids, ext_level_names = self._map_levels(ext_levels, local_levels)

        mappings = MappingSet(
            category_ids=_frozen(category_ids),
            platform_ids=_frozen(platform_ids),
            level_ids=_frozen(level_ids),
            category_names=_frozen(category_names),
            platform_names=_frozen(platform_name_map),
            external_category_names=_frozen(ext_category_names),
            external_platform_names=_frozen(platform_names),
            external_level_names=_frozen(ext_level_names),
            external_category_types=MappingProxyType(dict(ext_category_types)),
            local_categories=MappingProxyType({c.id: c for c in local_categories}),
            local_levels=MappingProxyType({lv.id: lv for lv in local_levels}),
        )
        logger.info(
            "taxonomy_mappings_built",
            game_id=game_id,
            runs=len(runs),
            categories=f"{len(category_ids)}/{len(ext_categories)}",
            platforms=f"{len(platform_ids)}/{len(platform_names)}",
            levels=f"{len(level_ids)}/{len(ext_levels)}",
        )
        return mappings

    # ── Platforms ────────────────────────────────────────────
    async def _platform_names_for(
        self, runs: Iterable[ExternalRun], context: ImportContext
    ) -> dict[str, str]:
        """
        Upstream platform id -> display name for every platform used by the batch.

        Names come from the run embed, then the context cache, then one bulk
        catalog lookup, then per-id lookups for anything still missing.
        Platforms whose name cannot be found are left out.
        """
        names: dict[str, str] = {}
        unknown: list[str] = []
        for run in runs:
            ref = run.platform
            if ref is None or not ref.id or ref.id in names or ref.id in unknown:
                continue
            name = ref.name or context.platform_names.get(ref.id)
            if name:
                names[ref.id] = name
            else:
                unknown.append(ref.id)

        if unknown:
            catalog = {p.id: p.name for p in await self._source.fetch_platforms() if p.name}
            still_unknown = []
            for platform_id in unknown:
                if platform_id in catalog:
                    names[platform_id] = catalog[platform_id]
                else:
                    still_unknown.append(platform_id)

            if still_unknown:
                fetched = await self._platform_limiter.map(
                    self._source.fetch_platform_by_id, still_unknown, return_exceptions=True
                )
                for platform_id, name in zip(still_unknown, fetched):
                    if isinstance(name, BaseException):
                        logger.warning("platform_lookup_failed", platform_id=platform_id, error=str(name))
                    elif name:
                        names[platform_id] = name
                    else:
                        logger.debug("platform_name_unknown", platform_id=platform_id)

        context.platform_names.update(names)
        return names

    def _map_platforms(
        self, external: Mapping[str, str], local: Sequence[Platform]
    ) -> tuple[dict[str, str], dict[str, str]]:
        candidates = [NameCandidate(p.id, p.name) for p in local]
        ids: dict[str, str] = {}
        names: dict[str, str] = {}
        for ext_id, ext_name in external.items():
            local_id, stage = match_by_name(
                ext_name, candidates, PLATFORM_SIMILARITY_THRESHOLD, PLATFORM_MIN_FUZZY_LENGTH
            )
            if local_id is None:
                TAXONOMY_UNMATCHED.labels(kind=TaxonomyKind.PLATFORM.value).inc()
                logger.debug("taxonomy_unmatched", kind="platform", external_id=ext_id, name=ext_name)
                continue
            self._record(TaxonomyKind.PLATFORM, stage, ext_id, ext_name, local_id)
            ids[ext_id] = local_id
            names.setdefault(normalize_name(ext_name), local_id)
            names.setdefault(fuzzy_name(ext_name), local_id)
        return ids, names

    # ── Categories ───────────────────────────────────────────
    def _map_categories(
        self, external: Sequence[ExternalCategory], local: Sequence[Category]
    ) -> tuple[dict[str, str], dict[str, str], dict[str, str], dict[str, LeaderboardType]]:
        candidates = [NameCandidate(c.id, c.name, c.partition) for c in local]
        by_external_id = {c.external_id: c.id for c in local if c.external_id}
        ids: dict[str, str] = {}
        names: dict[str, str] = {}
        ext_names: dict[str, str] = {}
        ext_types: dict[str, LeaderboardType] = {}

        for ext in external:
            if not ext.id or not ext.name:
                continue
            ext_names[ext.id] = ext.name
            partition = ext.type.leaderboard_type
            ext_types[ext.id] = partition

            local_id: Optional[str] = by_external_id.get(ext.id)
            stage: Optional[MatchStage] = MatchStage.EXTERNAL_ID if local_id else None
            if local_id is None:
                local_id, stage = match_by_name(
                    ext.name,
                    candidates,
                    CATEGORY_SIMILARITY_THRESHOLD,
                    CATEGORY_MIN_FUZZY_LENGTH,
                    partition=partition,
                )
            if local_id is None:
                TAXONOMY_UNMATCHED.labels(kind=TaxonomyKind.CATEGORY.value).inc()
                logger.debug("taxonomy_unmatched", kind="category", external_id=ext.id, name=ext.name)
                continue

            self._record(TaxonomyKind.CATEGORY, stage, ext.id, ext.name, local_id)
            ids[ext.id] = local_id
            names.setdefault(normalize_name(ext.name), local_id)
            names.setdefault(fuzzy_name(ext.name), local_id)
        return ids, names, ext_names, ext_types

    # ── Levels ───────────────────────────────────────────────
    def _map_levels(
        self, external: Sequence[ExternalLevel], local: Sequence[Level]
    ) -> tuple[dict[str, str], dict[str, str]]:
        candidates = [NameCandidate(lv.id, lv.name, lv.leaderboard_type) for lv in local]
        ids: dict[str, str] = {}
        ext_names: dict[str, str] = {}
        for ext in external:
            if not ext.id or not ext.name:
                continue
            ext_names[ext.id] = ext.name
            local_id, stage = match_by_name(
                ext.name, candidates, LEVEL_SIMILARITY_THRESHOLD, LEVEL_MIN_FUZZY_LENGTH
            )
            if local_id is None:
                TAXONOMY_UNMATCHED.labels(kind=TaxonomyKind.LEVEL.value).inc()
                logger.debug("taxonomy_unmatched", kind="level", external_id=ext.id, name=ext.name)
                continue
            self._record(TaxonomyKind.LEVEL, stage, ext.id, ext.name, local_id)
            ids[ext.id] = local_id
        return ids, ext_names

    @staticmethod
    def _record(
        kind: TaxonomyKind, stage: Optional[MatchStage], external_id: str, name: str, local_id: str
    ) -> None:
        stage_label = stage.value if stage else "unknown"
        TAXONOMY_MATCHES.labels(kind=kind.value, stage=stage_label).inc()
        logger.debug(
            "taxonomy_match",
            kind=kind.value,
            stage=stage_label,
            external_id=external_id,
            name=name,
            local_id=local_id,
        )
