"""
Verification engine for imported runs.

An administrator either verifies an imported run (finalizing its category,
platform, and level) or rejects it, which deletes it. Batch verification
fills missing taxonomy only from exact name matches within the run's own
partition; anything it cannot fill stays unverified and is counted as an
error.
"""
from __future__ import annotations

from typing import Any, Iterable, Optional, Sequence

from shared.models.domain import (
    BatchFilters,
    BatchVerificationResult,
    Category,
    LeaderboardEntry,
    Level,
    Platform,
    VerificationOutcome,
)
from shared.models.enums import LeaderboardType
from shared.store.base import LeaderboardStore, StaleEntryError
from shared.utils.concurrency import ConcurrencyLimiter
from shared.utils.logging import get_logger
from shared.utils.metrics import RUNS_REJECTED, VERIFICATIONS, VERIFY_BATCH_DURATION, atrack_latency

from ingest.validation import is_valid_date
from verifier.config import VerifierSettings, get_verifier_settings

logger = get_logger(__name__)


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def missing_required_field(
    leaderboard_type: LeaderboardType, category: Optional[str], platform: Optional[str], level: Optional[str]
) -> Optional[str]:
    """Name of the first taxonomy field a verified entry cannot lack, or None."""
    if not category:
        return "category"
    if not platform:
        return "platform"
    if leaderboard_type.requires_level and not level:
        return "level"
    return None


def _newest_first(entries: Iterable[LeaderboardEntry]) -> list[LeaderboardEntry]:
    """Sort by date descending; entries without a valid date go last."""
    return sorted(entries, key=lambda e: e.date if is_valid_date(e.date) else "", reverse=True)


class _TaxonomyIndex:
    """Exact, case-insensitive name lookups over the local taxonomy, per partition."""

    def __init__(self, categories: Sequence[Category], platforms: Sequence[Platform], levels: Sequence[Level]) -> None:
        self._categories: dict[tuple[LeaderboardType, str], str] = {}
        for c in categories:
            self._categories.setdefault((c.partition, _norm(c.name)), c.id)
        self._platforms: dict[str, str] = {}
        for p in platforms:
            self._platforms.setdefault(_norm(p.name), p.id)
        self._levels: dict[tuple[Optional[LeaderboardType], str], str] = {}
        for lv in levels:
            self._levels.setdefault((lv.leaderboard_type, _norm(lv.name)), lv.id)

    def category(self, partition: LeaderboardType, name: Optional[str]) -> Optional[str]:
        return self._categories.get((partition, _norm(name))) if _norm(name) else None

    def platform(self, name: Optional[str]) -> Optional[str]:
        return self._platforms.get(_norm(name)) if _norm(name) else None

    def level(self, partition: LeaderboardType, name: Optional[str]) -> Optional[str]:
        if not _norm(name):
            return None
        # Levels saved without a partition are shared by every partition.
        return self._levels.get((partition, _norm(name))) or self._levels.get((None, _norm(name)))


class VerificationEngine:
    """Verifies and rejects imported runs, singly or in batches."""

    def __init__(
        self,
        store: LeaderboardStore,
        settings: Optional[VerifierSettings] = None,
        limiter: ConcurrencyLimiter | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_verifier_settings()
        self._limiter = limiter or ConcurrencyLimiter(self._settings.verify_concurrency)

    # ── Single run ───────────────────────────────────────────
    async def verify_run(
        self,
        entry_id: str,
        verified_by: str,
        category: Optional[str] = None,
        platform: Optional[str] = None,
        level: Optional[str] = None,
    ) -> VerificationOutcome:
        """
        Verify one run, applying any taxonomy the administrator chose.

        Given values override stored ones; only changed fields are written,
        and level only for partitions that have levels. The changes and the
        verified flag land in a single version-guarded update.
        """
        entry = await self._store.get_entry(entry_id)
        if entry is None:
            return self._outcome("single", False, "entry not found")

        changes: dict[str, Any] = {}
        if category and category != entry.category:
            changes["category"] = category
        if platform and platform != entry.platform:
            changes["platform"] = platform
        if entry.leaderboard_type.requires_level and level and level != entry.level:
            changes["level"] = level

        missing = missing_required_field(
            entry.leaderboard_type,
            changes.get("category", entry.category),
            changes.get("platform", entry.platform),
            changes.get("level", entry.level),
        )
        if missing:
            return self._outcome("single", False, f"missing {missing}")

        return await self._apply(entry, changes, verified_by, mode="single")

    async def _apply(
        self, entry: LeaderboardEntry, changes: dict[str, Any], verified_by: str, mode: str
    ) -> VerificationOutcome:
        changes = {**changes, "verified": True, "verified_by": verified_by}
        try:
            updated = await self._store.update_entry(entry.id, changes, expected_version=entry.version)
        except StaleEntryError:
            return self._outcome(mode, False, "entry was modified concurrently; reload and retry")
        except Exception as exc:
            logger.error("verify_update_failed", entry_id=entry.id, error=str(exc))
            return self._outcome(mode, False, f"update failed: {exc}")
        if updated is None:
            return self._outcome(mode, False, "entry not found")
        logger.info("run_verified", entry_id=entry.id, verified_by=verified_by, mode=mode, changed=sorted(changes))
        return self._outcome(mode, True)

    @staticmethod
    def _outcome(mode: str, success: bool, reason: Optional[str] = None) -> VerificationOutcome:
        VERIFICATIONS.labels(mode=mode, outcome="success" if success else "failure").inc()
        return VerificationOutcome(success=success, reason=reason)

    # ── Reject ───────────────────────────────────────────────
    async def reject_run(self, entry_id: str) -> VerificationOutcome:
        """Delete an imported run outright."""
        if not await self._store.delete_entry(entry_id):
            return VerificationOutcome(success=False, reason="entry not found or delete failed")
        RUNS_REJECTED.inc()
        logger.info("run_rejected", entry_id=entry_id)
        return VerificationOutcome(success=True)

    # ── Batch ────────────────────────────────────────────────
    async def select_for_batch(
        self, filters: Optional[BatchFilters] = None, limit: Optional[int] = None
    ) -> list[LeaderboardEntry]:
        """Unverified imported runs matching filters, newest first, optionally capped."""
        entries = await self._store.get_imported_entries(verified=False)
        if filters is not None:
            entries = [e for e in entries if self._matches(e, filters)]
        entries = _newest_first(entries)
        return entries[:limit] if limit is not None else entries

    @staticmethod
    def _matches(entry: LeaderboardEntry, filters: BatchFilters) -> bool:
        if filters.leaderboard_type is not None and entry.leaderboard_type != filters.leaderboard_type:
            return False
        if filters.category and entry.category != filters.category:
            return False
        if filters.platform and entry.platform != filters.platform:
            return False
        if filters.level and entry.level != filters.level:
            return False
        if filters.run_type is not None and entry.run_type != filters.run_type:
            return False
        return True

    async def batch_verify(
        self, entries: Sequence[LeaderboardEntry], verified_by: str, mode: str = "batch"
    ) -> BatchVerificationResult:
        """
        Verify many runs with bounded concurrency.

        Missing category, platform, or level are filled from the run's
        upstream display names by exact case-insensitive match within its
        partition. Runs still missing a required field stay unverified.
        """
        result = BatchVerificationResult()
        if not entries:
            return result

        async with atrack_latency(VERIFY_BATCH_DURATION, mode=mode):
            categories, platforms, levels = (
                await self._store.get_categories(),
                await self._store.get_platforms(),
                await self._store.get_levels(),
            )
            index = _TaxonomyIndex(categories, platforms, levels)

            async def _verify(entry: LeaderboardEntry) -> VerificationOutcome:
                changes = self._autofill(entry, index)
                missing = missing_required_field(
                    entry.leaderboard_type,
                    changes.get("category", entry.category),
                    changes.get("platform", entry.platform),
                    changes.get("level", entry.level),
                )
                if missing:
                    return self._outcome(mode, False, f"missing {missing}")
                return await self._apply(entry, changes, verified_by, mode)

            outcomes = await self._limiter.map(_verify, entries, return_exceptions=True)

        for entry, outcome in zip(entries, outcomes):
            if isinstance(outcome, BaseException):
                result.error_count += 1
                result.errors.append(f"Run {entry.id}: {outcome}")
            elif outcome.success:
                result.success_count += 1
            else:
                result.error_count += 1
                result.errors.append(f"Run {entry.id}: {outcome.reason}")

        logger.info(
            "batch_verification_complete",
            mode=mode,
            total=len(entries),
            success=result.success_count,
            errors=result.error_count,
        )
        return result

    @staticmethod
    def _autofill(entry: LeaderboardEntry, index: _TaxonomyIndex) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        if not entry.category:
            category_id = index.category(entry.leaderboard_type, entry.external_category_name)
            if category_id:
                changes["category"] = category_id
        if not entry.platform:
            platform_id = index.platform(entry.external_platform_name)
            if platform_id:
                changes["platform"] = platform_id
        if entry.leaderboard_type.requires_level and not entry.level:
            level_id = index.level(entry.leaderboard_type, entry.external_level_name)
            if level_id:
                changes["level"] = level_id
        return changes

    async def batch_verify_recent(
        self,
        verified_by: str,
        filters: Optional[BatchFilters] = None,
        limit: Optional[int] = None,
    ) -> BatchVerificationResult:
        """Verify the newest unverified imported runs (10 by default)."""
        entries = await self.select_for_batch(filters, limit or self._settings.batch_recent_limit)
        return await self.batch_verify(entries, verified_by, mode="recent")

    async def batch_verify_filtered(
        self, verified_by: str, filters: Optional[BatchFilters] = None
    ) -> BatchVerificationResult:
        """Verify every unverified imported run matching filters."""
        entries = await self.select_for_batch(filters)
        return await self.batch_verify(entries, verified_by, mode="all")
