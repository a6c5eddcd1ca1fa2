"""
SQLAlchemy 2.0 ORM models for RunSync.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class CategoryORM(Base):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    leaderboard_type: Mapped[Optional[str]] = mapped_column(String(30))
    external_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    external_subcategory_variable_name: Mapped[Optional[str]] = mapped_column(String(200))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    subcategories: Mapped[list["SubcategoryORM"]] = relationship(
        back_populates="category",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="SubcategoryORM.sort_order",
    )


class SubcategoryORM(Base):
    __tablename__ = "subcategories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    category_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("categories.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    external_variable_id: Mapped[Optional[str]] = mapped_column(String(64))
    external_value_id: Mapped[Optional[str]] = mapped_column(String(64))

    category: Mapped["CategoryORM"] = relationship(back_populates="subcategories")


class PlatformORM(Base):
    __tablename__ = "platforms"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    external_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)


class LevelORM(Base):
    __tablename__ = "levels"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    leaderboard_type: Mapped[Optional[str]] = mapped_column(String(30))
    external_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)


class PlayerORM(Base):
    __tablename__ = "players"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    external_username: Mapped[Optional[str]] = mapped_column(String(200))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LeaderboardEntryORM(Base):
    __tablename__ = "leaderboard_entries"
    __table_args__ = (
        Index("ix_entries_imported_verified", "imported_from_src", "verified"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    player_id: Mapped[str] = mapped_column(String(36), nullable=False, default="", index=True)
    player_name: Mapped[str] = mapped_column(String(200), nullable=False)
    player2_name: Mapped[Optional[str]] = mapped_column(String(200))
    external_player_name: Mapped[Optional[str]] = mapped_column(String(200))
    category: Mapped[str] = mapped_column(String(36), nullable=False, default="")
    subcategory: Mapped[Optional[str]] = mapped_column(String(36))
    platform: Mapped[str] = mapped_column(String(36), nullable=False, default="")
    level: Mapped[Optional[str]] = mapped_column(String(36))
    run_type: Mapped[str] = mapped_column(String(10), nullable=False, default="solo")
    leaderboard_type: Mapped[str] = mapped_column(String(30), nullable=False, default="regular")
    time: Mapped[str] = mapped_column(String(12), nullable=False)
    date: Mapped[str] = mapped_column(String(10), nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verified_by: Mapped[Optional[str]] = mapped_column(String(200))
    imported_from_src: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    external_run_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True)
    external_category_name: Mapped[Optional[str]] = mapped_column(String(200))
    external_platform_name: Mapped[Optional[str]] = mapped_column(String(200))
    external_level_name: Mapped[Optional[str]] = mapped_column(String(200))
    external_subcategory_name: Mapped[Optional[str]] = mapped_column(String(200))
    video_url: Mapped[Optional[str]] = mapped_column(Text)
    comment: Mapped[Optional[str]] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
