"""
Autoclaim: attach unclaimed imported runs to registered players.

A run is unclaimed while its player_id is empty (or the legacy placeholder).
It is claimed by the player whose stored speedrun.com username equals the
run's upstream player name, compared trimmed and case-insensitively. A
claimed run is never reassigned; every write is guarded by the entry version.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Optional

from shared.models.domain import (
    AutoclaimDiagnosis,
    AutoclaimResult,
    BackfillResult,
    LeaderboardEntry,
    Player,
)
from shared.store.base import LeaderboardStore, StaleEntryError
from shared.utils.concurrency import ConcurrencyLimiter
from shared.utils.logging import get_logger
from shared.utils.metrics import RUNS_AUTOCLAIMED

from verifier.config import VerifierSettings, get_verifier_settings

logger = get_logger(__name__)


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


class AutoclaimService:
    """Matches imported runs to players by speedrun.com username."""

    def __init__(
        self,
        store: LeaderboardStore,
        settings: Optional[VerifierSettings] = None,
        limiter: ConcurrencyLimiter | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_verifier_settings()
        self._limiter = limiter or ConcurrencyLimiter(self._settings.autoclaim_concurrency)

    def is_unclaimed(self, entry: LeaderboardEntry) -> bool:
        player_id = entry.player_id.strip()
        return not player_id or player_id == self._settings.unclaimed_placeholder

    async def _claim(self, entry: LeaderboardEntry, player: Player) -> bool:
        """Assign entry to player unless someone claimed it first. Retries once on a stale read."""
        current: Optional[LeaderboardEntry] = entry
        for _attempt in range(2):
            if current is None or not self.is_unclaimed(current):
                return False
            try:
                updated = await self._store.update_entry(
                    current.id, {"player_id": player.id}, expected_version=current.version
                )
                return updated is not None
            except StaleEntryError:
                current = await self._store.get_entry(entry.id)
        logger.warning("autoclaim_conflict", entry_id=entry.id, player_id=player.id)
        return False

    async def _claim_all(self, player: Player, entries: list[LeaderboardEntry], result: AutoclaimResult) -> None:
        outcomes = await self._limiter.map(lambda e: self._claim(e, player), entries, return_exceptions=True)
        claimed = 0
        for entry, outcome in zip(entries, outcomes):
            if isinstance(outcome, BaseException):
                result.errors.append(f"Run {entry.id}: {outcome}")
                logger.warning("autoclaim_update_failed", entry_id=entry.id, error=str(outcome))
            elif outcome:
                claimed += 1
        if claimed:
            result.players_updated += 1
            result.runs_updated += claimed
            RUNS_AUTOCLAIMED.inc(claimed)
            logger.info("runs_autoclaimed", player_id=player.id, runs=claimed)

    async def run_for_all_players(self) -> AutoclaimResult:
        """Claim every unclaimed imported run whose upstream name matches a player's username."""
        result = AutoclaimResult()
        players = await self._store.get_players_with_external_username()
        unclaimed = await self._store.get_unclaimed_imported_entries(self._settings.unclaimed_placeholder)

        by_name: dict[str, list[LeaderboardEntry]] = defaultdict(list)
        for entry in unclaimed:
            if self.is_unclaimed(entry) and _norm(entry.external_player_name):
                by_name[_norm(entry.external_player_name)].append(entry)

        for player in players:
            # pop: when two players share a username the first one wins.
            entries = by_name.pop(_norm(player.external_username), [])
            if entries:
                await self._claim_all(player, entries, result)

        logger.info(
            "autoclaim_complete",
            players=len(players),
            unclaimed=len(unclaimed),
            players_updated=result.players_updated,
            runs_updated=result.runs_updated,
        )
        return result

    async def claim_for_player(self, player_id: str) -> AutoclaimResult:
        """On-demand autoclaim for one player, e.g. right after they set their username."""
        result = AutoclaimResult()
        player = await self._store.get_player(player_id)
        if player is None:
            result.errors.append(f"Player {player_id} not found")
            return result
        username = _norm(player.external_username)
        if not username:
            return result
        unclaimed = await self._store.get_unclaimed_imported_entries(self._settings.unclaimed_placeholder)
        entries = [e for e in unclaimed if self.is_unclaimed(e) and _norm(e.external_player_name) == username]
        if entries:
            await self._claim_all(player, entries, result)
        return result

    async def claim_run(self, entry_id: str, player_id: str) -> bool:
        """Manual claim of a single unclaimed imported run."""
        entry = await self._store.get_entry(entry_id)
        player = await self._store.get_player(player_id)
        if entry is None or player is None or not entry.imported_from_src:
            return False
        return await self._claim(entry, player)

    async def backfill_external_player_names(self) -> BackfillResult:
        """Copy player_name into external_player_name on imported runs that lack it."""
        result = BackfillResult()
        entries = [
            e
            for e in await self._store.get_imported_entries()
            if not (e.external_player_name or "").strip() and e.player_name.strip()
        ]

        async def _fill(entry: LeaderboardEntry) -> bool:
            try:
                updated = await self._store.update_entry(
                    entry.id, {"external_player_name": entry.player_name.strip()}, expected_version=entry.version
                )
            except StaleEntryError:
                return False
            return updated is not None

        outcomes = await self._limiter.map(_fill, entries, return_exceptions=True)
        for entry, outcome in zip(entries, outcomes):
            if isinstance(outcome, BaseException):
                result.errors.append(f"Run {entry.id}: {outcome}")
            elif outcome:
                result.runs_updated += 1
        logger.info("external_player_names_backfilled", candidates=len(entries), updated=result.runs_updated)
        return result

    async def diagnose(self, display_name_or_id: str) -> AutoclaimDiagnosis:
        """Explain which imported runs match a player and whether they are claimable."""
        player = await self._store.get_player(display_name_or_id)
        if player is None:
            player = await self._store.get_player_by_display_name(display_name_or_id)
        if player is None:
            return AutoclaimDiagnosis(issues=[f"No player found for {display_name_or_id!r}"])

        diagnosis = AutoclaimDiagnosis(
            player_id=player.id,
            display_name=player.display_name,
            external_username=player.external_username,
        )
        username = _norm(player.external_username)
        if not username:
            diagnosis.issues.append("player has no speedrun.com username set")

        imported = await self._store.get_imported_entries()
        missing_names = 0
        for entry in imported:
            unclaimed = self.is_unclaimed(entry)
            if unclaimed:
                diagnosis.unclaimed_imported_count += 1
            if not _norm(entry.external_player_name):
                missing_names += 1
                continue
            if username and _norm(entry.external_player_name) == username:
                if unclaimed:
                    diagnosis.matching_unclaimed_run_ids.append(entry.id)
                else:
                    diagnosis.matching_claimed_run_ids.append(entry.id)

        if missing_names:
            diagnosis.issues.append(
                f"{missing_names} imported runs have no upstream player name; run the backfill"
            )
        if username and not diagnosis.matching_unclaimed_run_ids and not diagnosis.matching_claimed_run_ids:
            diagnosis.issues.append("no imported runs carry this username")
        return diagnosis
