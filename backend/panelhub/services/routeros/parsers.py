from __future__ import annotations

import re
from typing import Any

_UNITS = {"w": 7 * 24 * 3600, "d": 24 * 3600, "h": 3600, "m": 60, "s": 1}
_PART = re.compile(r"(\d+)(ms|w|d|h|m|s)")


def parse_uptime(uptime: str | None) -> int:
    """RouterOS duration to seconds.

    Examples:
        "1w2d3h4m5s" -> 788645
        "5d10h"      -> 468000
        "1d02:03:04" -> 93784
    """
    if not uptime:
        return 0
    text = uptime.strip()
    seconds = 0
    clock = re.search(r"(\d+):(\d{2}):(\d{2})$", text)
    if clock:
        h, m, s = (int(x) for x in clock.groups())
        seconds += h * 3600 + m * 60 + s
        text = text[: clock.start()]
    for value, unit in _PART.findall(text):
        if unit == "ms":
            continue
        seconds += int(value) * _UNITS[unit]
    return seconds


def parse_bool(value: Any) -> bool:
    return str(value).strip().lower() in ("true", "yes")


def parse_int(value: Any) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0
