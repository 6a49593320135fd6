"""Compatibility and scoring rules used by the matcher.

Everything here is pure: the matcher feeds in snapshots of the waiting queue
and gets back the pairs to propose for one tick.

Score = 0.5 * interest similarity + 0.3 * distance affinity + 0.2 * preference
overlap, clamped to [0, 1].
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Collection, Iterable, Mapping

from .preferences import haversine_km, normalize_interests, parse_location

INTEREST_WEIGHT = 0.5
DISTANCE_WEIGHT = 0.3
PREFERENCE_WEIGHT = 0.2

MIN_AGE = 18
MAX_AGE = 100


@dataclass(frozen=True, slots=True)
class Waiter:
    """A queue entry joined with the fields of the user reference the rules need."""

    user_id: str
    enqueued_at: float
    age: int | None
    gender: str | None
    interests: frozenset[str]
    age_min: int = MIN_AGE
    age_max: int = MAX_AGE
    gender_preference: str = "ANY"
    max_distance_km: float = 100.0
    location: tuple[float, float] | None = None

    @classmethod
    def from_preferences(
        cls,
        user_id: str,
        enqueued_at: float,
        preferences: Mapping[str, Any],
        *,
        age: int | None = None,
        gender: str | None = None,
        profile_interests: Iterable[str] = (),
        profile_location: str | None = None,
    ) -> "Waiter":
        """Build a waiter from stored (camelCase) preferences."""

        age_range = preferences.get("ageRange") or {}
        interests = normalize_interests([*profile_interests, *(preferences.get("interests") or [])])
        location = parse_location(preferences.get("location")) or parse_location(profile_location)
        return cls(
            user_id=user_id,
            enqueued_at=enqueued_at,
            age=age,
            gender=gender,
            interests=frozenset(interests),
            age_min=int(age_range.get("min", MIN_AGE)),
            age_max=int(age_range.get("max", MAX_AGE)),
            gender_preference=str(preferences.get("genderPreference") or "ANY"),
            max_distance_km=float(preferences.get("maxDistanceKm") or 100),
            location=location,
        )


@dataclass(frozen=True, slots=True)
class Pairing:
    first: Waiter
    second: Waiter
    score: float

    @property
    def user_ids(self) -> tuple[str, str]:
        return (self.first.user_id, self.second.user_id)


def distance_between(first: Waiter, second: Waiter) -> float | None:
    if first.location is None or second.location is None:
        return None
    return haversine_km(first.location, second.location)


def accepts(viewer: Waiter, other: Waiter) -> bool:
    """Whether *viewer*'s filters admit *other*."""

    if other.age is not None and not (viewer.age_min <= other.age <= viewer.age_max):
        return False
    if viewer.gender_preference != "ANY" and viewer.gender_preference != other.gender:
        return False
    distance = distance_between(viewer, other)
    if distance is not None and distance > viewer.max_distance_km:
        return False
    return True


def is_compatible(first: Waiter, second: Waiter) -> bool:
    if first.user_id == second.user_id:
        return False
    return accepts(first, second) and accepts(second, first)


def interest_similarity(first: Waiter, second: Waiter) -> float:
    union = first.interests | second.interests
    return len(first.interests & second.interests) / max(len(union), 1)


def distance_affinity(first: Waiter, second: Waiter) -> float:
    distance = distance_between(first, second)
    if distance is None:
        return 1.0
    reach = min(first.max_distance_km, second.max_distance_km)
    if reach <= 0:
        return 0.0
    return max(0.0, 1.0 - distance / reach)


def preference_overlap(first: Waiter, second: Waiter) -> float:
    """Mean of age-range overlap (in years) and gender-preference agreement."""

    low = max(first.age_min, second.age_min)
    high = min(first.age_max, second.age_max)
    union = max(first.age_max, second.age_max) - min(first.age_min, second.age_min) + 1
    age_overlap = max(0, high - low + 1) / max(union, 1)
    gender_agreement = 1.0 if first.gender_preference == second.gender_preference else 0.0
    return (age_overlap + gender_agreement) / 2


def score_pair(first: Waiter, second: Waiter) -> float:
    score = (
        INTEREST_WEIGHT * interest_similarity(first, second)
        + DISTANCE_WEIGHT * distance_affinity(first, second)
        + PREFERENCE_WEIGHT * preference_overlap(first, second)
    )
    return min(1.0, max(0.0, score))


def pair_waiters(
    waiters: Iterable[Waiter],
    *,
    excluded_pairs: Collection[frozenset[str]] = (),
) -> list[Pairing]:
    """Greedily pair waiters, oldest first, each with its best compatible partner.

    Ties on score go to the pair with the smaller sum of ``enqueued_at``.
    """

    ordered = sorted(waiters, key=lambda waiter: (waiter.enqueued_at, waiter.user_id))
    excluded = set(excluded_pairs)
    taken: set[str] = set()
    pairings: list[Pairing] = []

    for waiter in ordered:
        if waiter.user_id in taken:
            continue
        best: Waiter | None = None
        best_key: tuple[float, float] | None = None
        for candidate in ordered:
            if candidate.user_id == waiter.user_id or candidate.user_id in taken:
                continue
            if frozenset((waiter.user_id, candidate.user_id)) in excluded:
                continue
            if not is_compatible(waiter, candidate):
                continue
            key = (score_pair(waiter, candidate), -(waiter.enqueued_at + candidate.enqueued_at))
            if best_key is None or key > best_key:
                best, best_key = candidate, key
        if best is None or best_key is None:
            continue
        taken.update((waiter.user_id, best.user_id))
        pairings.append(Pairing(first=waiter, second=best, score=best_key[0]))

    return pairings


__all__ = [
    "Pairing",
    "Waiter",
    "accepts",
    "distance_affinity",
    "distance_between",
    "interest_similarity",
    "is_compatible",
    "pair_waiters",
    "preference_overlap",
    "score_pair",
]
