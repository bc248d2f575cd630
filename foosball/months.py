"""Calendar-month bucketing for match timestamps.

All bucketing happens in UTC. Naive datetimes and ISO strings without an
offset are read as UTC so the same match always lands in the same month no
matter where the server runs.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

ALL_MONTHS = "all"

_MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)

_MONTH_KEY_RE = re.compile(r"^(\d{4})-(\d{1,2})$")


class InvalidMonthError(ValueError):
    """Raised for month keys or timestamps that cannot be bucketed."""


def parse_played_at(value: Any) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    Accepts ``datetime`` objects and ISO-8601 strings (a trailing ``Z`` is
    allowed).
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as exc:
            raise InvalidMonthError(f"Unparseable played_at timestamp: {value!r}") from exc
    else:
        raise InvalidMonthError(f"Unparseable played_at timestamp: {value!r}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    try:
        return dt.astimezone(timezone.utc)
    except OverflowError as exc:
        raise InvalidMonthError(f"played_at is out of range in UTC: {value!r}") from exc


def month_of(value: Any) -> Tuple[int, int]:
    dt = parse_played_at(value)
    return dt.year, dt.month


def month_key(year: int, month: int) -> str:
    return f"{int(year)}-{int(month):02d}"


def month_label(year: int, month: int) -> str:
    return f"{_MONTH_NAMES[int(month) - 1]} {int(year)}"


def parse_month_key(key: str) -> Tuple[int, int]:
    """Split ``YYYY-MM`` (or the legacy unpadded ``YYYY-M``) into integers."""
    match = _MONTH_KEY_RE.match((key or "").strip()) if isinstance(key, str) else None
    if not match:
        raise InvalidMonthError(f"Invalid month key: {key!r}")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise InvalidMonthError(f"Invalid month key: {key!r}")
    return year, month


def month_bounds(year: int, month: int) -> Tuple[datetime, datetime]:
    """Return the half-open UTC range ``[start, end)`` covering one month."""
    if not 1 <= int(month) <= 12:
        raise InvalidMonthError(f"Invalid month: {month!r}")
    start = datetime(int(year), int(month), 1, tzinfo=timezone.utc)
    if int(month) == 12:
        end = datetime(int(year) + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(int(year), int(month) + 1, 1, tzinfo=timezone.utc)
    return start, end


def is_all(month_filter: Optional[str]) -> bool:
    return month_filter is None or month_filter == "" or month_filter == ALL_MONTHS


def filter_by_month(matches: Iterable[Dict[str, Any]], month_filter: Optional[str]) -> List[Dict[str, Any]]:
    """Keep the matches played in ``month_filter``; ``None``/``"all"`` keeps all."""
    if is_all(month_filter):
        return list(matches)
    wanted = parse_month_key(month_filter)  # type: ignore[arg-type]
    return [m for m in matches if month_of(m.get("played_at")) == wanted]


def compute_month_options(matches: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Return month filter options for the given matches.

    The synthetic ``all`` option always comes first, followed by one option
    per distinct month, most recent first.
    """
    seen = {month_of(m.get("played_at")) for m in matches}
    options: List[Dict[str, Any]] = [{"value": ALL_MONTHS, "label": "All"}]
    for year, month in sorted(seen, reverse=True):
        options.append(
            {
                "value": month_key(year, month),
                "label": month_label(year, month),
                "year": year,
                "month": month,
            }
        )
    return options


__all__ = [
    "ALL_MONTHS",
    "InvalidMonthError",
    "compute_month_options",
    "filter_by_month",
    "is_all",
    "month_bounds",
    "month_key",
    "month_label",
    "month_of",
    "parse_month_key",
    "parse_played_at",
]
