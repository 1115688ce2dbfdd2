"""Time-zone day resolver.

Pure helpers that answer two questions for a client-declared IANA zone:
which calendar day an instant falls on there, and at which absolute instant
that day ends (the next local midnight). Zone names come from untrusted
clients, so they are checked against the known zone table and anything
unrecognised resolves to ``DEFAULT_TIME_ZONE`` instead of failing.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import FrozenSet, Optional
from zoneinfo import ZoneInfo, available_timezones

from . import config
from .errors import UnknownTimeZoneError

logger = logging.getLogger(__name__)

FALLBACK_TIME_ZONE = "UTC"


@dataclass(frozen=True)
class DayWindow:
    zone_name: str
    day: str
    finalize_at: datetime


@lru_cache(maxsize=1)
def _known_zones() -> FrozenSet[str]:
    return frozenset(available_timezones()) | {FALLBACK_TIME_ZONE}


def is_valid_time_zone(name: Optional[str]) -> bool:
    if not isinstance(name, str) or not name.strip():
        return False
    return name.strip() in _known_zones()


def require_time_zone(name: Optional[str]) -> ZoneInfo:
    if not is_valid_time_zone(name):
        raise UnknownTimeZoneError(name)
    return ZoneInfo(name.strip())


def default_zone_name() -> str:
    if is_valid_time_zone(config.DEFAULT_TIME_ZONE):
        return config.DEFAULT_TIME_ZONE.strip()
    return FALLBACK_TIME_ZONE


def resolve_zone(name: Optional[str]) -> ZoneInfo:
    """Return the zone for ``name``, or the default zone when it is unusable."""
    try:
        return require_time_zone(name)
    except UnknownTimeZoneError:
        fallback = default_zone_name()
        if name:
            logger.warning("Unknown time zone %r, falling back to %s", name, fallback)
        return ZoneInfo(fallback)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(now: Optional[datetime] = None) -> datetime:
    """Aware UTC instant for ``now``; naive values are taken to be UTC already."""
    if now is None:
        return utc_now()
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def local_date(zone: ZoneInfo, now: Optional[datetime] = None) -> date:
    return as_utc(now).astimezone(zone).date()


def local_day(zone: ZoneInfo, now: Optional[datetime] = None) -> str:
    return local_date(zone, now).isoformat()


def start_of_local_day(zone: ZoneInfo, day: date) -> datetime:
    """First instant of ``day`` in ``zone``, as an aware UTC datetime.

    If 00:00 is skipped by a DST jump, the wall-clock time is interpreted with
    the pre-transition offset, which lands on the first instant that does
    exist on that day.
    """
    wall = datetime.combine(day, time(0, 0), tzinfo=zone)
    return wall.astimezone(timezone.utc)


def next_local_midnight(zone: ZoneInfo, now: Optional[datetime] = None) -> datetime:
    now = as_utc(now)
    tomorrow = local_date(zone, now) + timedelta(days=1)
    midnight = start_of_local_day(zone, tomorrow)
    if midnight <= now:
        # The deadline must lie strictly in the future.
        midnight = start_of_local_day(zone, tomorrow + timedelta(days=1))
    return midnight


def resolve_day(time_zone: Optional[str], now: Optional[datetime] = None) -> DayWindow:
    now = as_utc(now)
    zone = resolve_zone(time_zone)
    return DayWindow(
        zone_name=zone.key,
        day=local_day(zone, now),
        finalize_at=next_local_midnight(zone, now),
    )


def to_iso(dt: datetime) -> str:
    """Storage format for instants: UTC, fixed microsecond precision."""
    return as_utc(dt).astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    return as_utc(datetime.fromisoformat(value))
