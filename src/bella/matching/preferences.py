"""Normalization helpers for queue preferences and locations."""

from __future__ import annotations

import math
import re
from typing import Iterable

# Clients send free-form labels from several generations of the UI.
_GENDER_PREFERENCE_LABELS = {
    "man": "MAN",
    "men": "MAN",
    "male": "MAN",
    "m": "MAN",
    "woman": "WOMAN",
    "women": "WOMAN",
    "female": "WOMAN",
    "f": "WOMAN",
    "nonbinary": "NONBINARY",
    "non-binary": "NONBINARY",
    "non_binary": "NONBINARY",
    "nb": "NONBINARY",
    "any": "ANY",
    "all": "ANY",
    "everyone": "ANY",
    "both": "ANY",
}

_LOCATION_RE = re.compile(r"^\s*(-?\d{1,3}(?:\.\d+)?)\s*[,;]\s*(-?\d{1,3}(?:\.\d+)?)\s*$")

EARTH_RADIUS_KM = 6371.0088


def normalize_gender_preference(label: str) -> str:
    """Map a client label onto MAN, WOMAN, NONBINARY or ANY."""

    key = label.strip().lower()
    try:
        return _GENDER_PREFERENCE_LABELS[key]
    except KeyError:
        raise ValueError(f"Unknown gender preference '{label}'") from None


def normalize_gender(label: str | None) -> str | None:
    """Map a profile gender label onto MAN, WOMAN or NONBINARY; unknown labels become None."""

    if not label:
        return None
    normalized = _GENDER_PREFERENCE_LABELS.get(label.strip().lower())
    if normalized == "ANY":
        return None
    return normalized


def normalize_interests(values: Iterable[object]) -> list[str]:
    seen = {str(value).strip().lower() for value in values if value is not None}
    seen.discard("")
    return sorted(seen)


def parse_location(value: str | None) -> tuple[float, float] | None:
    """Resolve a ``"lat,lng"`` string to coordinates; anything else is unresolvable."""

    if not value:
        return None
    match = _LOCATION_RE.match(value)
    if match is None:
        return None
    lat, lng = float(match.group(1)), float(match.group(2))
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return None
    return lat, lng


def haversine_km(first: tuple[float, float], second: tuple[float, float]) -> float:
    lat1, lng1 = map(math.radians, first)
    lat2, lng2 = map(math.radians, second)
    d_lat = lat2 - lat1
    d_lng = lng2 - lng1
    a = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


__all__ = [
    "EARTH_RADIUS_KM",
    "haversine_km",
    "normalize_gender",
    "normalize_gender_preference",
    "normalize_interests",
    "parse_location",
]
