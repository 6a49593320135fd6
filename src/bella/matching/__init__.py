"""Deterministic matching rules."""

from .preferences import (  # noqa: F401
    haversine_km,
    normalize_gender,
    normalize_gender_preference,
    normalize_interests,
    parse_location,
)
from .scoring import (  # noqa: F401
    Pairing,
    Waiter,
    is_compatible,
    pair_waiters,
    score_pair,
)

__all__ = [
    "Pairing",
    "Waiter",
    "haversine_km",
    "is_compatible",
    "normalize_gender",
    "normalize_gender_preference",
    "normalize_interests",
    "pair_waiters",
    "parse_location",
    "score_pair",
]
