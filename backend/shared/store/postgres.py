"""
PostgreSQL-backed LeaderboardStore using SQLAlchemy 2.0 async sessions.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from asyncpg.exceptions import UniqueViolationError
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from shared.models.domain import (
    Category,
    LeaderboardEntry,
    Level,
    Platform,
    Player,
    Subcategory,
)
from shared.models.enums import LeaderboardType
from shared.models.orm import (
    CategoryORM,
    LeaderboardEntryORM,
    LevelORM,
    PlatformORM,
    PlayerORM,
    SubcategoryORM,
)
from shared.store.base import DuplicateEntryError, LeaderboardStore, StaleEntryError
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# Columns callers may never overwrite through update_entry.
_PROTECTED_ENTRY_COLUMNS = {"id", "version", "created_at", "updated_at"}

UNIQUE_VIOLATION = "23505"


def _is_unique_violation(exc: IntegrityError) -> bool:
    """True for a unique-constraint violation; NOT NULL and FK failures are not duplicates."""
    orig = exc.orig
    if isinstance(getattr(orig, "__cause__", None), UniqueViolationError):
        return True
    return (getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)) == UNIQUE_VIOLATION


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _category_from_row(row: CategoryORM) -> Category:
    return Category(
        id=row.id,
        name=row.name,
        order=row.sort_order,
        leaderboard_type=row.leaderboard_type,
        external_id=row.external_id,
        external_subcategory_variable_name=row.external_subcategory_variable_name,
        subcategories=[
            Subcategory(
                id=sub.id,
                name=sub.name,
                order=sub.sort_order,
                external_variable_id=sub.external_variable_id,
                external_value_id=sub.external_value_id,
            )
            for sub in row.subcategories
        ],
    )


def _subcategory_rows(category: Category) -> list[SubcategoryORM]:
    return [
        SubcategoryORM(
            id=sub.id,
            category_id=category.id,
            name=sub.name,
            sort_order=sub.order,
            external_variable_id=sub.external_variable_id,
            external_value_id=sub.external_value_id,
        )
        for sub in category.subcategories
    ]


def _sync_subcategories(row: CategoryORM, category: Category) -> None:
    """Update, add, and drop subcategory rows in place to match category.subcategories."""
    existing = {sub.id: sub for sub in row.subcategories}
    wanted = {sub.id for sub in category.subcategories}
    for sub in list(row.subcategories):
        if sub.id not in wanted:
            row.subcategories.remove(sub)
    for new in _subcategory_rows(category):
        current = existing.get(new.id)
        if current is None:
            row.subcategories.append(new)
            continue
        current.name = new.name
        current.sort_order = new.sort_order
        current.external_variable_id = new.external_variable_id
        current.external_value_id = new.external_value_id


def _partition_clause(column: Any, leaderboard_type: LeaderboardType) -> Any:
    if leaderboard_type == LeaderboardType.REGULAR:
        return or_(column == leaderboard_type.value, column.is_(None))
    return column == leaderboard_type.value


class PostgresLeaderboardStore(LeaderboardStore):
    """LeaderboardStore over the tables in shared.models.orm."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    # ── Entries ──────────────────────────────────────────────
    async def get_existing_external_run_ids(self) -> set[str]:
        async with self._db.read_session() as session:
            result = await session.execute(
                select(LeaderboardEntryORM.external_run_id).where(
                    LeaderboardEntryORM.external_run_id.is_not(None)
                )
            )
            return {run_id for run_id in result.scalars() if run_id}

    async def add_entry(self, entry: LeaderboardEntry) -> Optional[str]:
        values = {k: _column_value(v) for k, v in entry.model_dump(exclude={"created_at"}).items()}
        try:
            async with self._db.write_session() as session:
                session.add(LeaderboardEntryORM(**values))
        except IntegrityError as exc:
            if not _is_unique_violation(exc):
                logger.error("entry_insert_rejected", external_run_id=entry.external_run_id, error=str(exc))
                return None
            raise DuplicateEntryError(
                f"entry for run {entry.external_run_id} already exists"
            ) from exc
        except SQLAlchemyError as exc:
            logger.error("entry_insert_failed", external_run_id=entry.external_run_id, error=str(exc))
            return None
        return entry.id

    async def get_entry(self, entry_id: str) -> Optional[LeaderboardEntry]:
        async with self._db.read_session() as session:
            row = await session.get(LeaderboardEntryORM, entry_id)
            return LeaderboardEntry.model_validate(row) if row else None

    async def update_entry(
        self,
        entry_id: str,
        changes: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Optional[LeaderboardEntry]:
        values = {
            k: _column_value(v) for k, v in changes.items() if k not in _PROTECTED_ENTRY_COLUMNS
        }
        stmt = (
            update(LeaderboardEntryORM)
            .where(LeaderboardEntryORM.id == entry_id)
            .values(**values, version=LeaderboardEntryORM.version + 1)
            .returning(LeaderboardEntryORM)
        )
        if expected_version is not None:
            stmt = stmt.where(LeaderboardEntryORM.version == expected_version)

        async with self._db.write_session() as session:
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            if row is not None:
                return LeaderboardEntry.model_validate(row)
            exists = await session.scalar(
                select(func.count()).select_from(LeaderboardEntryORM).where(LeaderboardEntryORM.id == entry_id)
            )
        if exists and expected_version is not None:
            raise StaleEntryError(entry_id, expected_version)
        return None

    async def delete_entry(self, entry_id: str) -> bool:
        try:
            async with self._db.write_session() as session:
                result = await session.execute(
                    delete(LeaderboardEntryORM).where(LeaderboardEntryORM.id == entry_id)
                )
                return result.rowcount > 0
        except SQLAlchemyError as exc:
            logger.error("entry_delete_failed", entry_id=entry_id, error=str(exc))
            return False

    async def get_imported_entries(self, verified: Optional[bool] = None) -> list[LeaderboardEntry]:
        stmt = select(LeaderboardEntryORM).where(LeaderboardEntryORM.imported_from_src.is_(True))
        if verified is not None:
            stmt = stmt.where(LeaderboardEntryORM.verified.is_(verified))
        async with self._db.read_session() as session:
            result = await session.execute(stmt)
            return [LeaderboardEntry.model_validate(row) for row in result.scalars()]

    async def get_unclaimed_imported_entries(self, placeholder: str = "") -> list[LeaderboardEntry]:
        stmt = select(LeaderboardEntryORM).where(
            LeaderboardEntryORM.imported_from_src.is_(True),
            LeaderboardEntryORM.player_id.in_(["", placeholder]),
        )
        async with self._db.read_session() as session:
            result = await session.execute(stmt)
            return [LeaderboardEntry.model_validate(row) for row in result.scalars()]

    # ── Players ──────────────────────────────────────────────
    async def get_player(self, player_id: str) -> Optional[Player]:
        async with self._db.read_session() as session:
            row = await session.get(PlayerORM, player_id)
            return Player.model_validate(row) if row else None

    async def get_player_by_display_name(self, display_name: str) -> Optional[Player]:
        name = display_name.strip().lower()
        if not name:
            return None
        async with self._db.read_session() as session:
            result = await session.execute(
                select(PlayerORM).where(func.lower(func.trim(PlayerORM.display_name)) == name).limit(1)
            )
            row = result.scalar_one_or_none()
            return Player.model_validate(row) if row else None

    async def get_players_with_external_username(self) -> list[Player]:
        async with self._db.read_session() as session:
            result = await session.execute(
                select(PlayerORM).where(
                    PlayerORM.external_username.is_not(None),
                    func.trim(PlayerORM.external_username) != "",
                )
            )
            return [Player.model_validate(row) for row in result.scalars()]

    # ── Taxonomy ─────────────────────────────────────────────
    async def get_categories(self, leaderboard_type: Optional[LeaderboardType] = None) -> list[Category]:
        stmt = select(CategoryORM).order_by(CategoryORM.sort_order, CategoryORM.name)
        if leaderboard_type is not None:
            stmt = stmt.where(_partition_clause(CategoryORM.leaderboard_type, leaderboard_type))
        async with self._db.read_session() as session:
            result = await session.execute(stmt)
            return [_category_from_row(row) for row in result.scalars()]

    async def get_platforms(self) -> list[Platform]:
        async with self._db.read_session() as session:
            result = await session.execute(select(PlatformORM).order_by(PlatformORM.sort_order, PlatformORM.name))
            return [
                Platform(id=row.id, name=row.name, order=row.sort_order, external_id=row.external_id)
                for row in result.scalars()
            ]

    async def get_levels(self, leaderboard_type: Optional[LeaderboardType] = None) -> list[Level]:
        stmt = select(LevelORM).order_by(LevelORM.sort_order, LevelORM.name)
        if leaderboard_type is not None:
            # Levels without a partition are shared by all of them.
            stmt = stmt.where(
                or_(LevelORM.leaderboard_type == leaderboard_type.value, LevelORM.leaderboard_type.is_(None))
            )
        async with self._db.read_session() as session:
            result = await session.execute(stmt)
            return [
                Level(
                    id=row.id,
                    name=row.name,
                    order=row.sort_order,
                    leaderboard_type=row.leaderboard_type,
                    external_id=row.external_id,
                )
                for row in result.scalars()
            ]

    async def add_category(self, category: Category) -> Optional[str]:
        try:
            async with self._db.write_session() as session:
                session.add(
                    CategoryORM(
                        id=category.id,
                        name=category.name,
                        sort_order=category.order,
                        leaderboard_type=_column_value(category.leaderboard_type),
                        external_id=category.external_id,
                        external_subcategory_variable_name=category.external_subcategory_variable_name,
                        subcategories=_subcategory_rows(category),
                    )
                )
        except SQLAlchemyError as exc:
            logger.error("category_insert_failed", name=category.name, error=str(exc))
            return None
        return category.id

    async def update_category(self, category: Category) -> bool:
        try:
            async with self._db.write_session() as session:
                row = await session.get(CategoryORM, category.id)
                if row is None:
                    return False
                row.name = category.name
                row.sort_order = category.order
                row.leaderboard_type = _column_value(category.leaderboard_type)
                row.external_id = category.external_id
                row.external_subcategory_variable_name = category.external_subcategory_variable_name
                _sync_subcategories(row, category)
        except SQLAlchemyError as exc:
            logger.error("category_update_failed", category_id=category.id, error=str(exc))
            return False
        return True
