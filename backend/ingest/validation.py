"""
Format checks applied to an imported run before it is persisted.

Only the fields an entry cannot exist without are checked here. Missing
category, platform, or level is tolerated: an administrator fills those in
during verification.
"""
from __future__ import annotations

import re
from typing import Any, Mapping, Optional

from shared.models.enums import LeaderboardType, RunType

TIME_PATTERN = re.compile(r"^\d{1,2}:\d{2}:\d{2}$")
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Stand-in for an unnamed co-op partner; counts as a present name.
UNKNOWN_PLAYER = "Unknown"

_RUN_TYPES = {rt.value for rt in RunType}
_LEADERBOARD_TYPES = {lt.value for lt in LeaderboardType}


def _text(value: Any) -> str:
    if value is None:
        return ""
    if hasattr(value, "value"):
        value = value.value
    return str(value).strip()


def is_valid_time(value: Optional[str]) -> bool:
    return bool(value) and TIME_PATTERN.match(value) is not None


def is_valid_date(value: Optional[str]) -> bool:
    return bool(value) and DATE_PATTERN.match(value) is not None


def first_validation_error(fields: Mapping[str, Any]) -> Optional[str]:
    """
    Return the first critical problem with a prospective entry, or None.

    Checked in order: player name, time, date, run type, leaderboard type,
    and the second player on co-op runs.
    """
    if not _text(fields.get("player_name")):
        return "missing player name"

    time_value = _text(fields.get("time"))
    if not time_value:
        return "missing time"
    if not is_valid_time(time_value):
        return f"invalid time format {time_value!r} (expected HH:MM:SS)"

    date_value = _text(fields.get("date"))
    if not date_value:
        return "missing date"
    if not is_valid_date(date_value):
        return f"invalid date format {date_value!r} (expected YYYY-MM-DD)"

    run_type = _text(fields.get("run_type"))
    if run_type not in _RUN_TYPES:
        return f"invalid run type {run_type!r}"

    leaderboard_type = _text(fields.get("leaderboard_type"))
    if leaderboard_type not in _LEADERBOARD_TYPES:
        return f"invalid leaderboard type {leaderboard_type!r}"

    if run_type == RunType.CO_OP.value and not _text(fields.get("player2_name")):
        return "co-op run missing second player name"

    return None
