"""Go-style duration strings: "30s", "20m", "1h30m", "250ms".

Intervals are typed by operators at the shell prompt and stored in config
files, so both directions are needed.
"""

import re
from datetime import timedelta

from worldkeep.errors import ValidationError

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(text):
    """Parse a duration like "1h30m" into a timedelta.

    Plain "0" is accepted without a unit. Raises ValidationError otherwise.
    """
    if isinstance(text, timedelta):
        return text
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        return timedelta(seconds=text)

    raw = str(text).strip()
    if not raw:
        raise ValidationError("empty duration")

    sign = 1
    body = raw
    if body[0] in "+-":
        sign = -1 if body[0] == "-" else 1
        body = body[1:]
    if body == "0":
        return timedelta(0)

    seconds = 0.0
    pos = 0
    while pos < len(body):
        m = _PART.match(body, pos)
        if not m:
            raise ValidationError(
                f"invalid duration {raw!r}. Examples: 1h, 20m, 30s, 1h30m"
            )
        seconds += float(m.group(1)) * _UNITS[m.group(2)]
        pos = m.end()
    if pos == 0:
        raise ValidationError(f"invalid duration {raw!r}")

    return timedelta(seconds=sign * seconds)


def _trim(value):
    text = f"{value:.9f}".rstrip("0").rstrip(".")
    return text or "0"


def format_duration(td):
    """Render a timedelta the way Go prints time.Duration (e.g. 30m0s)."""
    total = td.total_seconds()
    if total == 0:
        return "0s"

    sign = "-" if total < 0 else ""
    total = abs(total)
    if total < 1:
        ms = total * 1000
        if ms >= 1:
            return f"{sign}{_trim(ms)}ms"
        return f"{sign}{_trim(total * 1e6)}µs"

    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    seconds = round(seconds, 9)
    if hours:
        return f"{sign}{int(hours)}h{int(minutes)}m{_trim(seconds)}s"
    if minutes:
        return f"{sign}{int(minutes)}m{_trim(seconds)}s"
    return f"{sign}{_trim(seconds)}s"
