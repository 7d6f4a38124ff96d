"""Duration parsing utilities.

Parses the ISO 8601 duration strings used for lifecycle policy
(grace period, account hold, pending timeout, ledger retention)
and converts them to milliseconds.
"""

import re
from typing import Optional

MILLIS_PER_SECOND = 1000
MILLIS_PER_MINUTE = 60 * MILLIS_PER_SECOND
MILLIS_PER_HOUR = 60 * MILLIS_PER_MINUTE
MILLIS_PER_DAY = 24 * MILLIS_PER_HOUR
MILLIS_PER_WEEK = 7 * MILLIS_PER_DAY
MILLIS_PER_MONTH = 30 * MILLIS_PER_DAY  # Standard approximation for billing
MILLIS_PER_YEAR = 365 * MILLIS_PER_DAY  # Standard approximation for billing

_DATE_UNITS = {
    "D": MILLIS_PER_DAY,
    "W": MILLIS_PER_WEEK,
    "M": MILLIS_PER_MONTH,
    "Y": MILLIS_PER_YEAR,
}

_TIME_UNITS = {
    "H": MILLIS_PER_HOUR,
    "M": MILLIS_PER_MINUTE,
    "S": MILLIS_PER_SECOND,
}

_DURATION_PATTERN = re.compile(
    r"^P(?:(?P<date>(?:\d+[YMWD])+))?(?:T(?P<time>(?:\d+[HMS])+))?$"
)
_COMPONENT_PATTERN = re.compile(r"(\d+)([YMWDHS])")


def parse_duration(duration: str) -> int:
    """Parse an ISO 8601 duration string to milliseconds.

    Supports date components (Y, M, W, D) and time components after a
    ``T`` separator (H, M, S), e.g. ``P3D``, ``P1M``, ``PT12H``, ``P1DT6H``.

    Months are approximated as 30 days and years as 365 days,
    consistent with Google Play billing calculations.

    Args:
        duration: ISO 8601 duration string

    Returns:
        Duration in milliseconds

    Raises:
        ValueError: If the string is empty, malformed, or zero-length

    Examples:
        >>> parse_duration("P3D")
        259200000

        >>> parse_duration("PT30M")
        1800000
    """
    if not duration or not isinstance(duration, str):
        raise ValueError("Duration must be a non-empty string")

    normalized = duration.strip().upper()
    match = _DURATION_PATTERN.match(normalized)
    if not match or normalized in ("P", "PT"):
        raise ValueError(
            f"Unsupported duration format: '{duration}'. "
            "Expected ISO 8601 such as P3D, P1M, PT12H or P1DT6H"
        )

    total = 0
    date_part = match.group("date") or ""
    time_part = match.group("time") or ""

    for number, unit in _COMPONENT_PATTERN.findall(date_part):
        total += int(number) * _DATE_UNITS[unit]
    for number, unit in _COMPONENT_PATTERN.findall(time_part):
        total += int(number) * _TIME_UNITS[unit]

    if total <= 0:
        raise ValueError(f"Duration must be positive, got: '{duration}'")

    return total


def parse_optional_duration(duration: Optional[str]) -> Optional[int]:
    """Parse a duration that may be unset.

    Returns:
        Milliseconds, or None when no duration is configured
    """
    if duration is None or duration == "":
        return None
    return parse_duration(duration)


def validate_duration(duration: str) -> bool:
    """Check whether a string is a supported ISO 8601 duration."""
    try:
        parse_duration(duration)
        return True
    except ValueError:
        return False
