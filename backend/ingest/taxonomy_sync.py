"""
Administrative taxonomy maintenance against the upstream catalog.

Creates local categories for upstream ones the site lacks, links or unlinks a
local category to an upstream id, and imports a category's upstream variable
values as subcategories.
"""
from __future__ import annotations

from typing import Optional

from shared.models.domain import Category, ExternalVariable, Subcategory, TaxonomySyncResult
from shared.store.base import LeaderboardStore
from shared.utils.logging import get_logger

from ingest.providers.base import CatalogSource
from ingest.resolver import NameCandidate, match_by_name, normalize_name

logger = get_logger(__name__)


class TaxonomySync:
    """Keeps local categories in step with the upstream catalog."""

    def __init__(self, source: CatalogSource, store: LeaderboardStore) -> None:
        self._source = source
        self._store = store

    async def _get_category(self, category_id: str) -> Optional[Category]:
        for category in await self._store.get_categories():
            if category.id == category_id:
                return category
        return None

    async def sync_categories(self, game_id: str) -> TaxonomySyncResult:
        """
        Make sure every upstream category has a linked local category.

        Already-linked categories are skipped. An unlinked local category with
        the same name (exact or fuzzy) in the same partition is linked rather
        than duplicated. Anything else is created. Failures are collected per
        category and do not stop the sync.
        """
        result = TaxonomySyncResult()
        external = await self._source.fetch_categories(game_id)
        local = await self._store.get_categories()
        linked_ids = {c.external_id for c in local if c.external_id}
        next_order = max((c.order for c in local), default=-1) + 1

        for ext in external:
            if ext.id in linked_ids:
                result.skipped += 1
                continue
            partition = ext.type.leaderboard_type
            try:
                candidates = [
                    NameCandidate(c.id, c.name, c.partition)
                    for c in local
                    if not c.external_id and c.partition == partition
                ]
                local_id, _stage = match_by_name(ext.name, candidates, threshold=None)
                if local_id is not None:
                    category = next(c for c in local if c.id == local_id)
                    category.external_id = ext.id
                    if not await self._store.update_category(category):
                        raise RuntimeError("update failed")
                    result.linked += 1
                    logger.info("category_linked", category_id=local_id, external_id=ext.id, name=ext.name)
                else:
                    category = Category(
                        name=ext.name,
                        order=next_order,
                        leaderboard_type=partition,
                        external_id=ext.id,
                    )
                    if not await self._store.add_category(category):
                        raise RuntimeError("insert failed")
                    local.append(category)
                    next_order += 1
                    result.created += 1
                    logger.info("category_created", category_id=category.id, external_id=ext.id, name=ext.name)
                linked_ids.add(ext.id)
            except Exception as exc:
                result.errors.append(f"Category {ext.name}: {exc}")
                logger.warning("category_sync_failed", external_id=ext.id, name=ext.name, error=str(exc))

        logger.info(
            "category_sync_complete",
            game_id=game_id,
            created=result.created,
            linked=result.linked,
            skipped=result.skipped,
            errors=len(result.errors),
        )
        return result

    async def link_category(self, category_id: str, external_id: str) -> bool:
        category = await self._get_category(category_id)
        if category is None:
            logger.warning("category_link_missing", category_id=category_id)
            return False
        category.external_id = external_id.strip() or None
        return await self._store.update_category(category)

    async def unlink_category(self, category_id: str) -> bool:
        category = await self._get_category(category_id)
        if category is None:
            return False
        category.external_id = None
        return await self._store.update_category(category)

    @staticmethod
    def _pick_variable(
        variables: list[ExternalVariable], preferred_name: Optional[str]
    ) -> Optional[ExternalVariable]:
        if preferred_name:
            wanted = normalize_name(preferred_name)
            for variable in variables:
                if normalize_name(variable.name) == wanted:
                    return variable
        for variable in variables:
            if variable.is_subcategory:
                return variable
        return variables[0] if variables else None

    async def import_subcategories(
        self, category_id: str, preferred_variable_name: Optional[str] = None
    ) -> TaxonomySyncResult:
        """
        Add the values of a linked category's upstream variable as subcategories.

        The variable is chosen by preferred_variable_name, then the category's
        stored preference, then the first upstream subcategory variable.
        Values whose name already exists on the category are skipped.
        """
        result = TaxonomySyncResult()
        category = await self._get_category(category_id)
        if category is None:
            result.errors.append(f"Category {category_id} not found")
            return result
        if not category.external_id:
            result.errors.append(f"Category {category.name} is not linked to speedrun.com")
            return result

        variables = await self._source.fetch_category_variables(category.external_id)
        preferred = preferred_variable_name or category.external_subcategory_variable_name
        variable = self._pick_variable(variables, preferred)
        if variable is None:
            result.errors.append(f"Category {category.name} has no variables on speedrun.com")
            return result

        existing = {normalize_name(s.name) for s in category.subcategories}
        next_order = max((s.order for s in category.subcategories), default=-1) + 1
        for value_id, label in variable.values.items():
            if not label or normalize_name(label) in existing:
                result.skipped += 1
                continue
            category.subcategories.append(
                Subcategory(
                    name=label,
                    order=next_order,
                    external_variable_id=variable.id,
                    external_value_id=value_id,
                )
            )
            existing.add(normalize_name(label))
            next_order += 1
            result.created += 1

        if preferred_variable_name:
            category.external_subcategory_variable_name = variable.name
        if result.created or preferred_variable_name:
            if not await self._store.update_category(category):
                result.errors.append(f"Category {category.name}: failed to save subcategories")
                result.created = 0
        logger.info(
            "subcategories_imported",
            category_id=category_id,
            variable=variable.name,
            created=result.created,
            skipped=result.skipped,
        )
        return result
