"""
speedrun.com REST API (v1) connector.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import httpx

from shared.config import Settings, get_settings
from shared.models.domain import (
    ExternalCategory,
    ExternalCategoryRef,
    ExternalLevel,
    ExternalPlatform,
    ExternalPlayer,
    ExternalRef,
    ExternalRun,
    ExternalRunValue,
    ExternalVariable,
    GameSourceConfig,
    RunPage,
)
from shared.models.enums import CategoryScope
from shared.utils.http_client import CatalogHTTPClient
from shared.utils.logging import get_logger
from shared.utils.rate_limiter import HostRateLimiter

from ingest.providers.base import CatalogSource

logger = get_logger(__name__)

# API page size ceiling for list endpoints.
SRC_MAX_PAGE = 200


def _embedded(node: Any) -> Optional[dict[str, Any]]:
    """Unwrap an `embed=` node: {"data": {...}}. Bare id strings give None."""
    if isinstance(node, dict):
        data = node.get("data")
        if isinstance(data, dict) and data:
            return data
    return None


def _ref(node: Any) -> Optional[ExternalRef]:
    embedded = _embedded(node)
    if embedded and embedded.get("id"):
        return ExternalRef(id=embedded["id"], name=embedded.get("name"))
    if isinstance(node, str) and node:
        return ExternalRef(id=node)
    return None


def _parse_player(raw: dict[str, Any]) -> ExternalPlayer:
    if raw.get("rel") == "guest":
        return ExternalPlayer(name=(raw.get("name") or "").strip(), is_guest=True)
    names = raw.get("names") or {}
    name = names.get("international") or names.get("japanese") or raw.get("name") or ""
    return ExternalPlayer(name=name.strip(), external_user_id=raw.get("id"))


def _parse_submitted(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_run(raw: dict[str, Any]) -> ExternalRun:
    """Map one /runs item (with players, category, level, platform embedded) to an ExternalRun."""
    players_node = raw.get("players")
    if isinstance(players_node, dict):
        player_items = players_node.get("data") or []
    else:
        player_items = players_node or []

    category: Optional[ExternalCategoryRef] = None
    embedded_category = _embedded(raw.get("category"))
    if embedded_category and embedded_category.get("id"):
        scope = embedded_category.get("type")
        category = ExternalCategoryRef(
            id=embedded_category["id"],
            name=embedded_category.get("name"),
            type=CategoryScope(scope) if scope in (s.value for s in CategoryScope) else None,
        )
    elif isinstance(raw.get("category"), str):
        category = ExternalCategoryRef(id=raw["category"])

    platform = _ref(raw.get("platform"))
    if platform is None:
        system_platform = (raw.get("system") or {}).get("platform")
        platform = ExternalRef(id=system_platform) if system_platform else None

    times = raw.get("times") or {}
    videos = ((raw.get("videos") or {}).get("links")) or []

    return ExternalRun(
        id=raw["id"],
        players=[_parse_player(p) for p in player_items if isinstance(p, dict)],
        primary_time=times.get("primary"),
        primary_seconds=times.get("primary_t"),
        date=raw.get("date"),
        submitted=_parse_submitted(raw.get("submitted")),
        category=category,
        platform=platform,
        level=_ref(raw.get("level")),
        values=[
            ExternalRunValue(variable_id=var_id, value_id=value_id)
            for var_id, value_id in (raw.get("values") or {}).items()
        ],
        weblink=raw.get("weblink"),
        video_url=videos[0].get("uri") if videos and isinstance(videos[0], dict) else None,
        comment=raw.get("comment"),
    )


def parse_variable(raw: dict[str, Any]) -> ExternalVariable:
    values_node = (raw.get("values") or {}).get("values") or {}
    return ExternalVariable(
        id=raw["id"],
        name=raw.get("name", ""),
        category_id=raw.get("category"),
        is_subcategory=bool(raw.get("is-subcategory")),
        values={value_id: (v or {}).get("label", "") for value_id, v in values_node.items()},
    )


class SpeedrunComSource(CatalogSource):
    """speedrun.com data connector."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        headers = {"User-Agent": settings.src_user_agent, "Accept": "application/json"}
        if settings.src_api_key:
            headers["X-API-Key"] = settings.src_api_key
        http_client = CatalogHTTPClient(
            source_name="speedruncom",
            base_url=settings.src_base_url,
            headers=headers,
            timeout_s=settings.src_request_timeout_s,
            max_retries=settings.src_max_retries,
            rate_limiter=HostRateLimiter(rpm=settings.src_rpm_limit),
        )
        super().__init__(name="speedruncom", http_client=http_client)

    async def _get_data(self, path: str, params: dict[str, Any] | None, endpoint: str) -> Any:
        body = await self._http.get_json(path, params=params, endpoint=endpoint)
        return (body or {}).get("data")

    async def resolve_game_id(self, config: GameSourceConfig) -> Optional[str]:
        for params in ({"abbreviation": config.abbreviation}, {"name": config.name}):
            try:
                games = await self._get_data("/games", {**params, "max": 1}, "games")
            except httpx.HTTPError as exc:
                logger.error("src_game_lookup_failed", game=config.key, lookup=params, error=str(exc))
                continue
            if games:
                game_id = games[0].get("id")
                logger.info("src_game_resolved", game=config.key, game_id=game_id)
                return game_id
        logger.warning("src_game_not_found", game=config.key, abbreviation=config.abbreviation)
        return None

    async def fetch_runs_not_on_leaderboards(
        self, game_id: str, limit: int, offset: int = 0
    ) -> RunPage:
        params = {
            "game": game_id,
            "status": "verified",
            "orderby": "submitted",
            "direction": "desc",
            "embed": "players,category,level,platform",
            "max": min(limit, SRC_MAX_PAGE),
            "offset": offset,
        }
        items = await self._get_data("/runs", params, "runs") or []
        page = RunPage(fetched=len(items))
        for raw in items:
            try:
                page.runs.append(parse_run(raw))
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                run_id = str(raw.get("id") or "?") if isinstance(raw, dict) else "?"
                logger.warning("src_run_parse_failed", run_id=run_id, error=str(exc))
                page.unparseable.append(run_id)
        return page

    async def fetch_categories(self, game_id: str) -> list[ExternalCategory]:
        try:
            items = await self._get_data(f"/games/{game_id}/categories", None, "categories") or []
        except httpx.HTTPError as exc:
            logger.error("src_categories_failed", game_id=game_id, error=str(exc))
            return []
        return [
            ExternalCategory(
                id=c["id"],
                name=c.get("name", ""),
                type=CategoryScope.PER_LEVEL if c.get("type") == "per-level" else CategoryScope.PER_GAME,
            )
            for c in items
            if c.get("id")
        ]

    async def fetch_levels(self, game_id: str) -> list[ExternalLevel]:
        try:
            items = await self._get_data(f"/games/{game_id}/levels", None, "levels") or []
        except httpx.HTTPError as exc:
            logger.error("src_levels_failed", game_id=game_id, error=str(exc))
            return []
        return [ExternalLevel(id=lv["id"], name=lv.get("name", "")) for lv in items if lv.get("id")]

    async def fetch_platforms(self) -> list[ExternalPlatform]:
        platforms: list[ExternalPlatform] = []
        offset = 0
        try:
            while True:
                items = await self._get_data(
                    "/platforms", {"max": SRC_MAX_PAGE, "offset": offset}, "platforms"
                ) or []
                platforms.extend(
                    ExternalPlatform(id=p["id"], name=p.get("name", "")) for p in items if p.get("id")
                )
                if len(items) < SRC_MAX_PAGE:
                    break
                offset += SRC_MAX_PAGE
        except httpx.HTTPError as exc:
            logger.error("src_platforms_failed", fetched=len(platforms), error=str(exc))
            return []
        return platforms

    async def fetch_platform_by_id(self, platform_id: str) -> Optional[str]:
        try:
            data = await self._get_data(f"/platforms/{platform_id}", None, "platform")
        except httpx.HTTPError as exc:
            logger.warning("src_platform_lookup_failed", platform_id=platform_id, error=str(exc))
            return None
        return (data or {}).get("name") or None

    async def fetch_category_variables(self, category_id: str) -> list[ExternalVariable]:
        try:
            items = await self._get_data(f"/categories/{category_id}/variables", None, "variables") or []
        except httpx.HTTPError as exc:
            logger.error("src_variables_failed", category_id=category_id, error=str(exc))
            return []
        return [parse_variable(v) for v in items if v.get("id")]
