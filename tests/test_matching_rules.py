from __future__ import annotations

import pytest

from bella.matching import (
    Waiter,
    haversine_km,
    is_compatible,
    normalize_gender,
    normalize_gender_preference,
    normalize_interests,
    pair_waiters,
    parse_location,
    score_pair,
)

PREFS = {
    "ageRange": {"min": 25, "max": 35},
    "genderPreference": "ANY",
    "maxDistanceKm": 100,
    "interests": ["travel"],
}


def _waiter(user_id: str, enqueued_at: float = 0.0, prefs: dict | None = None, **profile) -> Waiter:
    return Waiter.from_preferences(user_id, enqueued_at, prefs if prefs is not None else PREFS, **profile)


def test_score_for_two_fresh_waiters_sharing_one_interest() -> None:
    first = _waiter("u1", age=27, gender="MAN", profile_interests=["coffee", "travel"])
    second = _waiter("u2", age=29, gender="WOMAN", profile_interests=["travel", "music"])

    assert is_compatible(first, second)
    assert score_pair(first, second) == pytest.approx(0.5 / 3 + 0.3 + 0.2, abs=1e-6)


def test_score_is_symmetric_and_bounded() -> None:
    first = _waiter("a", age=30, profile_interests=["chess"], profile_location="52.52,13.40")
    second = _waiter("b", age=31, profile_interests=["chess", "film"], profile_location="52.40,13.06")

    assert score_pair(first, second) == pytest.approx(score_pair(second, first))
    assert 0.0 <= score_pair(first, second) <= 1.0


def test_age_outside_range_is_incompatible() -> None:
    first = _waiter("a", age=27)
    second = _waiter("b", age=45)

    assert not is_compatible(first, second)


def test_unknown_age_does_not_exclude() -> None:
    assert is_compatible(_waiter("a", age=None), _waiter("b", age=30))


def test_gender_preference_must_hold_both_ways() -> None:
    wants_women = {**PREFS, "genderPreference": "WOMAN"}
    man = _waiter("a", prefs=wants_women, age=30, gender="MAN")
    other_man = _waiter("b", age=30, gender="MAN")
    woman = _waiter("c", age=30, gender="WOMAN")

    assert not is_compatible(man, other_man)
    assert is_compatible(man, woman)


def test_distance_filter_applies_only_when_both_locations_resolve() -> None:
    berlin = _waiter("a", age=30, profile_location="52.52,13.40")
    paris = _waiter("b", age=30, profile_location="48.85,2.35")
    nowhere = _waiter("c", age=30, profile_location="somewhere nice")

    assert not is_compatible(berlin, paris)
    assert is_compatible(berlin, nowhere)


def test_preference_location_overrides_profile_location() -> None:
    waiter = _waiter("a", prefs={**PREFS, "location": "48.85,2.35"}, profile_location="52.52,13.40")

    assert waiter.location == (48.85, 2.35)


def test_pair_waiters_prefers_best_score_and_skips_excluded_pairs() -> None:
    oldest = _waiter("a", 1.0, age=30, profile_interests=["chess", "film"])
    close = _waiter("b", 2.0, age=30, profile_interests=["chess", "film"])
    far = _waiter("c", 3.0, age=30, profile_interests=["surfing"])

    pairs = pair_waiters([far, close, oldest])
    assert [pairing.user_ids for pairing in pairs] == [("a", "b")]

    pairs = pair_waiters([far, close, oldest], excluded_pairs={frozenset(("a", "b"))})
    assert [pairing.user_ids for pairing in pairs] == [("a", "c")]


def test_pair_waiters_breaks_score_ties_by_wait_time() -> None:
    oldest = _waiter("a", 1.0, age=30)
    newer = _waiter("b", 5.0, age=30)
    older = _waiter("c", 2.0, age=30)

    pairs = pair_waiters([newer, older, oldest])

    assert [pairing.user_ids for pairing in pairs] == [("a", "c")]


def test_pair_waiters_never_pairs_a_user_twice() -> None:
    waiters = [_waiter(user_id, float(index), age=30) for index, user_id in enumerate("abcde")]

    pairs = pair_waiters(waiters)
    seen = [user_id for pairing in pairs for user_id in pairing.user_ids]

    assert len(pairs) == 2
    assert len(seen) == len(set(seen))


@pytest.mark.parametrize(
    ("label", "expected"),
    [("female", "WOMAN"), ("Men", "MAN"), (" non-binary ", "NONBINARY"), ("everyone", "ANY")],
)
def test_normalize_gender_preference(label: str, expected: str) -> None:
    assert normalize_gender_preference(label) == expected


def test_normalize_gender_preference_rejects_unknown_labels() -> None:
    with pytest.raises(ValueError):
        normalize_gender_preference("robots")


def test_normalize_gender_drops_any_and_unknown() -> None:
    assert normalize_gender("f") == "WOMAN"
    assert normalize_gender("any") is None
    assert normalize_gender("unknown") is None


def test_normalize_interests_lowercases_and_dedupes() -> None:
    assert normalize_interests(["Travel", "travel ", "", None, "Music"]) == ["music", "travel"]


def test_parse_location() -> None:
    assert parse_location("40.7128, -74.0060") == (40.7128, -74.006)
    assert parse_location("40.7;-74.0") == (40.7, -74.0)
    assert parse_location("Paris") is None
    assert parse_location("91,0") is None
    assert parse_location(None) is None


def test_haversine_km() -> None:
    assert haversine_km((0.0, 0.0), (0.0, 0.0)) == 0.0
    assert haversine_km((52.52, 13.40), (48.85, 2.35)) == pytest.approx(878, rel=0.01)
