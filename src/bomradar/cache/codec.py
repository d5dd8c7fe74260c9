"""Snapshot token encoding.

A token pairs a location with a capture timestamp, e.g.
``gold_coast_qld_20251216_130831``. The timestamp suffix is fixed width and
zero padded, so tokens for one location sort chronologically as plain strings.
Decoding anchors the suffix from the right, so location tokens may contain the
separator themselves.
"""

import re
from datetime import datetime, timezone

from bomradar.cache.models import LocationKey, MalformedToken, as_utc

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
TIMESTAMP_WIDTH = 15  # len("YYYYMMDD_HHMMSS")
SEPARATOR = "_"

_SUFFIX_RE = re.compile(r"^(?P<location>.*)_(?P<stamp>\d{8}_\d{6})$")


def encode_token(location: LocationKey, timestamp: datetime) -> str:
    """Encode a location and capture timestamp into a filesystem-safe token.

    Sub-second precision is dropped.
    """
    stamp = as_utc(timestamp).strftime(TIMESTAMP_FORMAT)
    return f"{location.token}{SEPARATOR}{stamp}"


def decode_timestamp(token: str) -> datetime:
    """Decode only the timestamp suffix of a token.

    Raises:
        MalformedToken: If the suffix is missing or not a valid date/time.
    """
    match = _SUFFIX_RE.match(token)
    if match is None:
        raise MalformedToken(f"Token has no timestamp suffix: {token!r}")
    try:
        parsed = datetime.strptime(match.group("stamp"), TIMESTAMP_FORMAT)
    except ValueError as e:
        raise MalformedToken(f"Invalid timestamp in token {token!r}: {e}") from e
    return parsed.replace(tzinfo=timezone.utc)


def decode_token(token: str) -> tuple[LocationKey, datetime]:
    """Decode a token back into (location, capture timestamp).

    Raises:
        MalformedToken: If the timestamp suffix doesn't parse or the location
            portion is empty.
    """
    timestamp = decode_timestamp(token)
    location_token = token[: -(TIMESTAMP_WIDTH + len(SEPARATOR))]
    if not location_token:
        raise MalformedToken(f"Token has empty location: {token!r}")
    return LocationKey.from_token(location_token), timestamp


def token_prefix(location: LocationKey) -> str:
    """Prefix shared by every token for a location."""
    return f"{location.token}{SEPARATOR}"
