from __future__ import annotations

import os
from datetime import datetime, timezone, timedelta, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def configured_timezone_name() -> str:
    return (os.getenv("PROCURA_TIMEZONE") or "UTC").strip()


def configured_timezone() -> tzinfo:
    name = configured_timezone_name()
    upper = name.upper()

    # Fixed Mountain Standard Time all year, no DST switch.
    if upper == "MST":
        return timezone(timedelta(hours=-7), name="MST")

    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        return timezone.utc


def now_local() -> datetime:
    return datetime.now(configured_timezone())


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
