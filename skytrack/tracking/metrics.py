"""
Derived journey metrics.

Pure functions over raw feed values: great-circle distance, route
progress, departure/arrival delay and estimated arrival. Every function
is total - missing or malformed optional inputs produce a neutral
default (0 or None) instead of an exception.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence, Mapping, Any

from skytrack.ingestion.aeroapi_client import PositionSample

EARTH_RADIUS_KM = 6371.0


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware UTC datetime, or None."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime the way AeroAPI does (second precision, Z suffix)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def timestamp_epoch(value: Any) -> int:
    """Unix seconds for an ISO-8601 string; 0 when it cannot be parsed."""
    parsed = parse_timestamp(value)
    return int(parsed.timestamp()) if parsed else 0


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two points in kilometers (haversine).

    (0, 0) is the feed's "no fix yet" placeholder, so either point
    sitting exactly there yields 0.
    """
    if (lat1 == 0 and lon1 == 0) or (lat2 == 0 and lon2 == 0):
        return 0.0

    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_lat / 2) ** 2 +
        math.cos(lat1_rad) * math.cos(lat2_rad) *
        math.sin(delta_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def _coordinates(location: Optional[Mapping[str, Any]]) -> Optional[tuple]:
    if not location:
        return None
    lat = location.get('latitude')
    lon = location.get('longitude')
    if lat is None or lon is None:
        return None
    try:
        return float(lat), float(lon)
    except (TypeError, ValueError):
        return None


def progress_percent(
    track: Sequence[PositionSample],
    last_sample: Optional[PositionSample],
    origin: Optional[Mapping[str, Any]],
    destination: Optional[Mapping[str, Any]],
) -> float:
    """
    Share of the origin-destination great-circle distance covered so far.

    Returns 0 for tracks with fewer than two samples or when any of the
    coordinates are unknown. Always in [0, 100], rounded to 1 decimal.
    """
    if len(track) < 2 or last_sample is None or not last_sample.has_position():
        return 0.0

    origin_point = _coordinates(origin)
    destination_point = _coordinates(destination)
    if origin_point is None or destination_point is None:
        return 0.0

    total = distance_km(*origin_point, *destination_point)
    if total <= 0:
        return 0.0

    covered = distance_km(*origin_point, last_sample.latitude, last_sample.longitude)
    percent = max(0.0, min(100.0, covered / total * 100))
    return round(percent, 1)


def _delay_seconds(actual: Any, scheduled: Any) -> int:
    actual_dt = parse_timestamp(actual)
    scheduled_dt = parse_timestamp(scheduled)
    if actual_dt is None or scheduled_dt is None:
        return 0
    return round((actual_dt - scheduled_dt).total_seconds())


def departure_delay_seconds(actual_off: Any, scheduled_off: Any) -> int:
    """Takeoff delay in seconds (negative when early); 0 if unknown."""
    return _delay_seconds(actual_off, scheduled_off)


def arrival_delay_seconds(actual_on: Any, scheduled_on: Any) -> int:
    """Touchdown delay in seconds (negative when early); 0 if unknown."""
    return _delay_seconds(actual_on, scheduled_on)


def estimated_arrival(actual_off: Any, filed_duration_seconds: Optional[int]) -> Optional[str]:
    """Takeoff time plus the filed en-route time, or None without a takeoff."""
    off = parse_timestamp(actual_off)
    if off is None:
        return None
    return format_timestamp(off + timedelta(seconds=filed_duration_seconds or 0))
