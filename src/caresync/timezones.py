"""Time zone helpers for converting between local instants and Google event times."""

import logging
import re
from datetime import date, datetime, time
from typing import Any, Dict, Optional

from dateutil import parser as date_parser
import pytz

logger = logging.getLogger(__name__)

# Offsets seen on events created by other clients, mapped to a representative zone.
OFFSET_TIME_ZONE_FALLBACKS = {
    '+00:00': 'UTC',
    '-04:00': 'America/New_York',
    '-05:00': 'America/New_York',
    '-06:00': 'America/Chicago',
    '-07:00': 'America/Denver',
    '-08:00': 'America/Los_Angeles',
    '-09:00': 'America/Anchorage',
    '-10:00': 'Pacific/Honolulu',
    '+01:00': 'Europe/Paris',
    '+02:00': 'Europe/Athens',
    '+03:00': 'Europe/Moscow',
    '+05:30': 'Asia/Kolkata',
    '+08:00': 'Asia/Shanghai',
    '+09:00': 'Asia/Tokyo',
    '+10:00': 'Australia/Sydney',
}

_OFFSET_SUFFIX = re.compile(r'([+-]\d{2}:\d{2}|Z)$')
_OFFSET_PARTS = re.compile(r'^([+-])(\d{2}):(\d{2})$')


def ensure_timezone_aware(dt: datetime) -> datetime:
    """Return dt as an aware datetime, assuming UTC for naive values."""
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt


def offset_for(instant: datetime, tz_name: str) -> str:
    """Return the ``±HH:MM`` offset of ``tz_name`` at ``instant``.

    Raises:
        pytz.UnknownTimeZoneError: If the zone name is not known
    """
    local = ensure_timezone_aware(instant).astimezone(pytz.timezone(tz_name))
    return local.isoformat()[-6:]


def format_instant_with_zone(instant: datetime, tz_name: str) -> Dict[str, str]:
    """Render an instant as a Google ``{dateTime, timeZone}`` pair.

    The ``dateTime`` carries the explicit offset of ``tz_name`` at that instant.

    Raises:
        pytz.UnknownTimeZoneError: If the zone name is not known
    """
    zone = pytz.timezone(tz_name)
    local = ensure_timezone_aware(instant).astimezone(zone).replace(microsecond=0)
    return {'dateTime': local.isoformat(), 'timeZone': zone.zone}


def parse_rfc3339(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_timezone_aware(date_parser.isoparse(value))


def parse_event_date(edge: Optional[Dict[str, Any]]) -> Optional[datetime]:
    """Parse a Google event ``start``/``end`` block into an aware instant.

    All-day ``date`` values resolve to midnight UTC.
    """
    if not edge:
        return None
    if edge.get('dateTime'):
        return parse_rfc3339(edge['dateTime'])
    if edge.get('date'):
        day = date_parser.isoparse(edge['date']).date()
        return datetime.combine(day, time.min, tzinfo=pytz.UTC)
    return None


def event_date_only(edge: Optional[Dict[str, Any]]) -> Optional[date]:
    instant = parse_event_date(edge)
    return instant.date() if instant else None


def extract_offset(date_time: Optional[str]) -> Optional[str]:
    if not date_time:
        return None
    match = _OFFSET_SUFFIX.search(date_time)
    return match.group(1) if match else None


def extract_event_time_zone(edge: Optional[Dict[str, Any]], fallback: Optional[str] = None) -> Optional[str]:
    if edge and (edge.get('timeZone') or '').strip():
        return edge['timeZone']
    return fallback


def infer_time_zone_from_offset(
    offset: Optional[str],
    reference: datetime,
    default_time_zone: str,
) -> Optional[str]:
    """Best-effort IANA zone for an RFC 3339 offset.

    Prefers the default zone when it has that offset at ``reference``, then the
    known fallback table, then a whole-hour ``Etc/GMT`` zone.
    """
    if not offset:
        return None
    normalized = '+00:00' if offset == 'Z' else offset

    try:
        if offset_for(reference, default_time_zone) == normalized:
            return default_time_zone
    except pytz.UnknownTimeZoneError:
        logger.debug(f"Default time zone {default_time_zone!r} is not known")

    mapped = OFFSET_TIME_ZONE_FALLBACKS.get(normalized)
    if mapped and mapped != 'UTC':
        return mapped

    match = _OFFSET_PARTS.match(normalized)
    if not match:
        return mapped
    sign, hours, minutes = match.group(1), int(match.group(2)), int(match.group(3))
    if minutes != 0 or hours > 14:
        return mapped
    if hours == 0:
        return 'UTC'
    # Etc/GMT zones use inverted signs
    etc_sign = '-' if sign == '+' else '+'
    return mapped or f"Etc/GMT{etc_sign}{hours}"
