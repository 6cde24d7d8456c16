from __future__ import annotations

from datetime import UTC, datetime


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def utc_date_iso(moment: datetime) -> str:
    return moment.astimezone(UTC).date().isoformat()


def parse_iso_datetime(raw_value: object) -> datetime | None:
    if not isinstance(raw_value, str) or not raw_value.strip():
        return None
    parsed = datetime.fromisoformat(raw_value.strip())
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def text_or_none(value: object) -> str | None:
    if value is None:
        return None
    return str(value)
