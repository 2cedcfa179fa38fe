"""Date boundaries in the actor's timezone.

Due dates are calendar dates. Every "today" the core reasons about is the
actor's local today, and completion timestamps (stored as naive UTC) are
mapped to the actor's local calendar date before any rule arithmetic.
"""
from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

TimezoneResolver = Callable[[int], Optional[str]]


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def resolve_zone(name: str | None) -> ZoneInfo:
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", name)
        return ZoneInfo("UTC")


def local_date(moment: datetime, zone: ZoneInfo) -> date:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(zone).date()


def local_today(zone: ZoneInfo, now: datetime | None = None) -> date:
    return local_date(now or utcnow(), zone)
