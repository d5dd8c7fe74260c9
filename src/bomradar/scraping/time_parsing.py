"""Parsing of the radar page's "last updated" section.

The section reads like::

    Observations: 11 minutes ago, 8:20 pm AEST at Gympie weather station,
    30 km from Pomona, QLD. Forecast: 41 minutes ago, 7:50 pm AEST

Times carry no date. They are anchored to today's date in the zone named by
the abbreviation and moved to yesterday if that would put them in the future.
"""

import logging
import re
from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from bomradar.cache.models import SnapshotMetadata, utcnow

logger = logging.getLogger(__name__)

# AEST is UTC+10 year-round in Brisbane; AEDT only appears for Sydney/Melbourne in summer
TIMEZONE_ABBREVIATIONS = {
    "AEST": "Australia/Brisbane",
    "AEDT": "Australia/Sydney",
    "ACST": "Australia/Darwin",
    "ACDT": "Australia/Adelaide",
    "AWST": "Australia/Perth",
}

_OBSERVATION_RE = re.compile(
    r"Observations:\s*(?:\d+\s*minutes?\s*ago|an?\s+(?:hour|minute)\s+ago)?[,\s]*"
    r"(\d{1,2}:\d{2}(?:\s*[ap]m)?)\s*([A-Z]{3,4})",
    re.IGNORECASE,
)
_FORECAST_RE = re.compile(
    r"Forecast:\s*(?:\d+\s*(?:minutes?|hours?)\s*ago|an?\s+(?:hour|minute)\s+ago)?[,\s]*"
    r"(\d{1,2}:\d{2}(?:\s*[ap]m)?)\s*([A-Z]{3,4})",
    re.IGNORECASE,
)
_STATION_RE = re.compile(r"at\s+([^,]+?)\s+weather\s+station", re.IGNORECASE)
_DISTANCE_RE = re.compile(r"(\d+)\s*km\s+from", re.IGNORECASE)
_TIME_FORMATS = ("%I:%M %p", "%I:%M%p", "%H:%M")


class ParseError(ValueError):
    """The last-updated text couldn't be parsed."""


def resolve_timezone(abbreviation: Optional[str], default_tz: str) -> ZoneInfo:
    """Map a site timezone abbreviation to a zone, falling back to default_tz."""
    if abbreviation:
        # Trailing "at" from "AESTat Gympie" when the divs run together
        abbreviation = abbreviation.upper()
        if abbreviation.endswith("AT") and abbreviation[:-2] in TIMEZONE_ABBREVIATIONS:
            abbreviation = abbreviation[:-2]
        zone = TIMEZONE_ABBREVIATIONS.get(abbreviation)
        if zone:
            return ZoneInfo(zone)
    return ZoneInfo(default_tz)


def parse_clock_time(value: str) -> time:
    """Parse "8:20 pm", "8:20pm" or "20:20".

    Raises:
        ParseError: If no format matches
    """
    cleaned = " ".join(value.split()).upper()
    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).time()
        except ValueError:
            continue
    raise ParseError(f"Unrecognized time: {value!r}")


def anchor_time(clock: time, tz: ZoneInfo, now: datetime) -> datetime:
    """Attach today's date in tz to a wall-clock time and convert to UTC.

    Times that would be in the future are taken to be from yesterday.
    """
    now_local = now.astimezone(tz)
    local = datetime.combine(now_local.date(), clock, tzinfo=tz)
    if local > now_local:
        local -= timedelta(days=1)
    return local.astimezone(timezone.utc)


def nearest_time(clock: time, tz: ZoneInfo, reference: datetime) -> datetime:
    """Attach the date in tz that puts a wall-clock time closest to reference.

    Unlike anchor_time, the result may lie after the reference (by up to 12
    hours), e.g. a radar frame newer than the station observation.
    """
    reference_local = reference.astimezone(tz)
    candidates = [
        datetime.combine(reference_local.date() + timedelta(days=delta), clock, tzinfo=tz).astimezone(timezone.utc)
        for delta in (-1, 0, 1)
    ]
    return min(candidates, key=lambda candidate: abs(candidate - reference))


def _extract(pattern: re.Pattern, label: str, text: str, now: datetime, default_tz: str) -> datetime:
    match = pattern.search(text)
    if match is None:
        raise ParseError(f"Could not find {label} time in text: {text!r}")
    clock = parse_clock_time(match.group(1))
    tz = resolve_timezone(match.group(2), default_tz)
    parsed = anchor_time(clock, tz, now)
    logger.debug(f"Parsed {label} time '{match.group(1)} {match.group(2)}' as {parsed.isoformat()}")
    return parsed


def parse_last_updated(
    text: str,
    now: Optional[datetime] = None,
    default_tz: str = "Australia/Brisbane",
) -> SnapshotMetadata:
    """Parse the last-updated section into snapshot metadata.

    Args:
        text: Raw section text
        now: Reference time for date anchoring (defaults to current UTC)
        default_tz: Zone for unknown abbreviations

    Returns:
        SnapshotMetadata with UTC observation/forecast times

    Raises:
        ParseError: If observation or forecast time is missing or invalid
    """
    now = now or utcnow()
    logger.info(f"Parsing last updated text: {text}")

    observation_time = _extract(_OBSERVATION_RE, "observation", text, now, default_tz)
    forecast_time = _extract(_FORECAST_RE, "forecast", text, now, default_tz)

    station = _STATION_RE.search(text)
    distance = _DISTANCE_RE.search(text)

    return SnapshotMetadata(
        observation_time=observation_time,
        forecast_time=forecast_time,
        station_name=station.group(1).strip() if station else None,
        station_distance=f"{distance.group(1)} km" if distance else None,
    )
