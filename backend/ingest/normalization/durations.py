"""
Run duration normalization.

Upstream runs carry a primary time as numeric seconds and/or an ISO-8601
duration (e.g. "PT1H2M5.5S"). The leaderboard stores HH:MM:SS.
"""
from __future__ import annotations

import math
import re
from typing import Optional

ZERO_TIME = "00:00:00"

_ISO_DURATION = re.compile(
    r"^P(?:(?P<days>\d+(?:\.\d+)?)D)?"
    r"(?:T(?:(?P<hours>\d+(?:\.\d+)?)H)?(?:(?P<minutes>\d+(?:\.\d+)?)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$"
)


def seconds_to_hms(seconds: Optional[float]) -> str:
    """
    Format whole seconds as zero-padded HH:MM:SS, truncating fractions.

    Hours are not wrapped, so runs of 100 hours or more produce a
    three-digit hour field. Missing, negative, or non-finite input gives
    "00:00:00".
    """
    if seconds is None or not math.isfinite(seconds) or seconds < 0:
        return ZERO_TIME
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def iso_duration_to_seconds(value: Optional[str]) -> Optional[float]:
    """Parse an ISO-8601 duration (days and time parts only). None if unparseable."""
    if not value:
        return None
    match = _ISO_DURATION.match(value.strip().upper())
    if not match or value.strip().upper() in ("P", "PT"):
        return None
    parts = {k: float(v) for k, v in match.groupdict().items() if v}
    return (
        parts.get("days", 0.0) * 86400
        + parts.get("hours", 0.0) * 3600
        + parts.get("minutes", 0.0) * 60
        + parts.get("seconds", 0.0)
    )


def iso_duration_to_hms(value: Optional[str]) -> str:
    """ISO-8601 duration to HH:MM:SS; unparseable input gives "00:00:00"."""
    return seconds_to_hms(iso_duration_to_seconds(value))


def is_missing_time(value: Optional[str]) -> bool:
    return not value or not value.strip() or value.strip() == ZERO_TIME


def repair_time(
    current: Optional[str],
    primary_seconds: Optional[float] = None,
    primary_time: Optional[str] = None,
) -> Optional[str]:
    """
    Fill a missing or zeroed time from the run's upstream duration.

    Numeric seconds win over the ISO string. Returns the existing value when
    it is already set, the repaired value when one of the sources yields a
    non-zero time, and otherwise the original value unchanged.
    """
    if not is_missing_time(current):
        return current
    if primary_seconds is not None and primary_seconds > 0:
        repaired = seconds_to_hms(primary_seconds)
        if repaired != ZERO_TIME:
            return repaired
    if primary_time:
        repaired = iso_duration_to_hms(primary_time)
        if repaired != ZERO_TIME:
            return repaired
    return current
