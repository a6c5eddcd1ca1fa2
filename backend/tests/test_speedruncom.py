"""
Unit tests for the speedrun.com connector: payload parsing and lookup fallbacks.

Run: pytest backend/tests/test_speedruncom.py -v
"""
from __future__ import annotations

from typing import Any, AsyncIterator
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from ingest.games import GAME_CONFIGS, get_game_config
from ingest.importer import RunImporter
from ingest.providers.speedruncom import SRC_MAX_PAGE, SpeedrunComSource, parse_run, parse_variable
from shared.config import Settings
from shared.models.enums import CategoryScope
from tests.conftest import InMemoryStore


def _raw_run(**overrides: Any) -> dict[str, Any]:
    raw: dict[str, Any] = {
        "id": "run1",
        "weblink": "https://www.speedrun.com/lsw/run/run1",
        "date": "2024-01-13",
        "submitted": "2024-01-14T10:00:00Z",
        "comment": "pb",
        "players": {
            "data": [
                {"rel": "user", "id": "u1", "names": {"international": " Runner ", "japanese": None}},
                {"rel": "guest", "name": "Partner"},
            ]
        },
        "category": {"data": {"id": "c-any", "name": "Any%", "type": "per-game"}},
        "level": {"data": []},
        "platform": {"data": {"id": "p-pc", "name": "PC"}},
        "system": {"platform": "p-pc", "emulated": False},
        "times": {"primary": "PT25M3S", "primary_t": 1503},
        "values": {"var1": "v1"},
        "videos": {"links": [{"uri": "https://youtu.be/abc"}]},
    }
    raw.update(overrides)
    return raw


# ── parse_run ───────────────────────────────────────────────────────────

def test_parse_run_embedded() -> None:
    run = parse_run(_raw_run())

    assert run.id == "run1"
    assert [p.name for p in run.players] == ["Runner", "Partner"]
    assert run.players[0].external_user_id == "u1"
    assert run.players[1].is_guest is True
    assert run.category is not None
    assert (run.category.id, run.category.name, run.category.type) == ("c-any", "Any%", CategoryScope.PER_GAME)
    assert run.level is None
    assert run.platform is not None and run.platform.name == "PC"
    assert (run.primary_time, run.primary_seconds) == ("PT25M3S", 1503)
    assert run.values[0].variable_id == "var1" and run.values[0].value_id == "v1"
    assert run.video_url == "https://youtu.be/abc"
    assert run.submitted is not None and run.submitted.year == 2024


def test_parse_run_bare_ids() -> None:
    run = parse_run(
        _raw_run(category="c-any", level="l1", platform=None, system={"platform": "p-gc"}, videos=None, times={})
    )

    assert run.category is not None and run.category.name is None and run.category.type is None
    assert run.level is not None and run.level.id == "l1"
    assert run.platform is not None and (run.platform.id, run.platform.name) == ("p-gc", None)
    assert run.video_url is None
    assert run.primary_seconds is None


def test_parse_run_per_level_category() -> None:
    run = parse_run(_raw_run(category={"data": {"id": "c-il", "name": "Any%", "type": "per-level"}}))
    assert run.category is not None and run.category.type == CategoryScope.PER_LEVEL


def test_parse_run_players_as_list() -> None:
    run = parse_run(_raw_run(players=[{"rel": "guest", "name": "Solo"}]))
    assert [p.name for p in run.players] == ["Solo"]


def test_parse_variable() -> None:
    variable = parse_variable(
        {
            "id": "v-sub",
            "name": "Glitches",
            "category": "c-any",
            "is-subcategory": True,
            "values": {"values": {"a": {"label": "Glitched"}, "b": {"label": "Glitchless"}}},
        }
    )
    assert variable.is_subcategory is True
    assert variable.values == {"a": "Glitched", "b": "Glitchless"}


# ── SpeedrunComSource ───────────────────────────────────────────────────

@pytest.fixture
def src() -> SpeedrunComSource:
    source = SpeedrunComSource(Settings(src_api_key="secret"))
    source._http.get_json = AsyncMock()  # type: ignore[method-assign]
    return source


def test_headers(src: SpeedrunComSource) -> None:
    headers = src._http.headers
    assert headers["User-Agent"] == "lsw1.dev/1.0"
    assert headers["X-API-Key"] == "secret"


@pytest.mark.asyncio
async def test_resolve_game_falls_back_to_name(src: SpeedrunComSource) -> None:
    src._http.get_json.side_effect = [{"data": []}, {"data": [{"id": "g1"}]}]

    game_id = await src.resolve_game_id(get_game_config("lsw"))

    assert game_id == "g1"
    second_params = src._http.get_json.await_args_list[1].kwargs["params"]
    assert second_params["name"] == "LEGO Star Wars: The Video Game"


@pytest.mark.asyncio
async def test_resolve_game_not_found(src: SpeedrunComSource) -> None:
    src._http.get_json.side_effect = [{"data": []}, httpx.ConnectError("down")]
    assert await src.resolve_game_id(get_game_config("lsw")) is None


@pytest.mark.asyncio
async def test_fetch_runs_request_and_parse(src: SpeedrunComSource) -> None:
    src._http.get_json.return_value = {"data": [_raw_run(), {"id": None, "players": "broken"}]}

    page = await src.fetch_runs_not_on_leaderboards("g1", limit=500, offset=200)

    assert [r.id for r in page.runs] == ["run1"]
    assert page.fetched == 2
    assert page.unparseable == ["?"]
    params = src._http.get_json.await_args.kwargs["params"]
    assert params["status"] == "verified"
    assert (params["orderby"], params["direction"]) == ("submitted", "desc")
    assert params["max"] == SRC_MAX_PAGE
    assert params["offset"] == 200


@pytest.mark.asyncio
async def test_fetch_runs_propagates_errors(src: SpeedrunComSource) -> None:
    src._http.get_json.side_effect = httpx.ConnectError("down")
    with pytest.raises(httpx.ConnectError):
        await src.fetch_runs_not_on_leaderboards("g1", limit=200)


@pytest.mark.asyncio
async def test_lookups_degrade_to_empty(src: SpeedrunComSource) -> None:
    src._http.get_json.side_effect = httpx.ConnectError("down")

    assert await src.fetch_categories("g1") == []
    assert await src.fetch_levels("g1") == []
    assert await src.fetch_platforms() == []
    assert await src.fetch_platform_by_id("p1") is None
    assert await src.fetch_category_variables("c1") == []


@pytest.mark.asyncio
async def test_fetch_categories_scope(src: SpeedrunComSource) -> None:
    src._http.get_json.return_value = {
        "data": [
            {"id": "c1", "name": "Any%", "type": "per-game"},
            {"id": "c2", "name": "Any%", "type": "per-level"},
        ]
    }

    categories = await src.fetch_categories("g1")

    assert [c.type for c in categories] == [CategoryScope.PER_GAME, CategoryScope.PER_LEVEL]


@pytest.mark.asyncio
async def test_fetch_platforms_pages(src: SpeedrunComSource) -> None:
    full_page = {"data": [{"id": f"p{i}", "name": f"P{i}"} for i in range(SRC_MAX_PAGE)]}
    src._http.get_json.side_effect = [full_page, {"data": [{"id": "last", "name": "Last"}]}]

    platforms = await src.fetch_platforms()

    assert len(platforms) == SRC_MAX_PAGE + 1
    assert src._http.get_json.await_args_list[1].kwargs["params"]["offset"] == SRC_MAX_PAGE


@pytest.mark.asyncio
async def test_fetch_platform_by_id(src: SpeedrunComSource) -> None:
    src._http.get_json.return_value = {"data": {"id": "p-gc", "name": "GameCube"}}
    assert await src.fetch_platform_by_id("p-gc") == "GameCube"


# ── Game configs ────────────────────────────────────────────────────────

def test_game_configs() -> None:
    assert set(GAME_CONFIGS) == {"lsw", "lsw2", "lsw_tcs"}
    with pytest.raises(KeyError):
        get_game_config("unknown")


# ── Non-JSON upstream responses ─────────────────────────────────────────

@pytest_asyncio.fixture
async def html_src() -> AsyncIterator[SpeedrunComSource]:
    source = SpeedrunComSource(Settings(metrics_enabled=False))
    source._http._client = httpx.AsyncClient(
        base_url="https://www.speedrun.com/api/v1",
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, text="<html>maintenance</html>", headers={"Content-Type": "text/html"})
        ),
    )
    yield source
    await source.close()


@pytest.mark.asyncio
async def test_html_page_degrades_lookups(html_src: SpeedrunComSource) -> None:
    assert await html_src.resolve_game_id(get_game_config("lsw")) is None
    assert await html_src.fetch_categories("g1") == []
    assert await html_src.fetch_platforms() == []


@pytest.mark.asyncio
async def test_html_page_reports_game_not_found(
    html_src: SpeedrunComSource, store: InMemoryStore, settings: Settings
) -> None:
    config = get_game_config("lsw")

    result = await RunImporter(html_src, store, settings=settings).import_runs(config)

    assert result.imported == 0
    assert result.errors == [f"Could not find {config.name} ({config.abbreviation}) on speedrun.com"]
