"""
Games the site imports from, keyed by the short name used on the command line.
"""
from __future__ import annotations

from shared.models.domain import GameSourceConfig

DEFAULT_CATEGORIES = ["Any%", "Free Play", "All Minikits", "100%"]
DEFAULT_PLATFORMS = ["PC", "PS2", "Xbox", "GameCube"]

GAME_CONFIGS: dict[str, GameSourceConfig] = {
    "lsw": GameSourceConfig(
        key="lsw",
        abbreviation="lsw",
        name="LEGO Star Wars: The Video Game",
        default_categories=DEFAULT_CATEGORIES,
        default_platforms=DEFAULT_PLATFORMS,
    ),
    "lsw2": GameSourceConfig(
        key="lsw2",
        abbreviation="lsw2",
        name="Lego Star Wars II: The Original Trilogy",
        default_categories=DEFAULT_CATEGORIES,
        default_platforms=DEFAULT_PLATFORMS,
    ),
    "lsw_tcs": GameSourceConfig(
        key="lsw_tcs",
        abbreviation="lsw_tcs",
        name="Lego Star Wars: The Complete Saga",
        default_categories=DEFAULT_CATEGORIES,
        default_platforms=DEFAULT_PLATFORMS,
    ),
}


def get_game_config(key: str) -> GameSourceConfig:
    """Look up a configured game. Raises KeyError listing the known keys."""
    try:
        return GAME_CONFIGS[key]
    except KeyError:
        raise KeyError(f"unknown game {key!r}; expected one of {sorted(GAME_CONFIGS)}") from None
