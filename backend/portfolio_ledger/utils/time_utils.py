from __future__ import annotations

from datetime import date, datetime


def parse_timestamp(text: str | None) -> datetime | None:
    """Parse an ISO-8601 date or timestamp into a naive local datetime.

    Timezone-aware values are converted to local time first, so that
    day-level comparisons line up with dates typed by the user.
    """
    raw = str(text or "").strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def day_of(text: str | None) -> date | None:
    parsed = parse_timestamp(text)
    return parsed.date() if parsed else None


def now_datetime_text() -> str:
    return datetime.now().replace(microsecond=0).isoformat()
