"""Go-style duration strings ("15m", "1h30m", "2.5s") with a "d" day suffix.

Durations are held as `datetime.timedelta` at millisecond resolution so a
value survives a format/parse cycle unchanged.
"""
import re
from datetime import timedelta

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}

_COMPONENT = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h|d)")


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as "90s", "1h30m" or "7d".

    Raises ValueError for empty, malformed or negative input. A bare "0" is
    accepted.
    """
    if value is None:
        raise ValueError("duration must not be empty")
    text = str(value).strip()
    if not text:
        raise ValueError("duration must not be empty")
    if text.startswith("-"):
        raise ValueError(f"negative duration not allowed: {text}")
    if text.startswith("+"):
        text = text[1:]
    if text == "0":
        return timedelta(0)

    pos = 0
    total = 0.0
    for match in _COMPONENT.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"invalid duration: {value!r}")
    return to_millis(timedelta(seconds=total))


def to_millis(value: timedelta) -> timedelta:
    """Round a timedelta to whole milliseconds."""
    return timedelta(milliseconds=round(value.total_seconds() * 1000))


def format_duration(value: timedelta) -> str:
    """Format a timedelta compactly: 900s -> "15m", 5400s -> "1h30m", 2.5s -> "2.5s"."""
    total_ms = int(round(value.total_seconds() * 1000))
    if total_ms == 0:
        return "0s"
    sign = "-" if total_ms < 0 else ""
    total_ms = abs(total_ms)
    if total_ms < 1000:
        return f"{sign}{total_ms}ms"

    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    seconds, millis = divmod(rem, 1000)

    out = sign
    if hours:
        out += f"{hours}h"
    if minutes:
        out += f"{minutes}m"
    if seconds or millis:
        if millis:
            out += f"{seconds}.{millis:03d}".rstrip("0") + "s"
        else:
            out += f"{seconds}s"
    return out
