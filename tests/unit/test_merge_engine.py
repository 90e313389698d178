from datetime import datetime, timedelta, timezone

import pytest

from eventplanner.dedup import MergeEngine, fingerprint, fingerprint_key
from eventplanner.errors import CandidateRejectedError
from eventplanner.models import AgeRange, CandidateEvent, Location, MergeType

NOW = datetime(2025, 6, 2, 17, 0, tzinfo=timezone.utc)
START = datetime(2025, 6, 14, 17, 0, tzinfo=timezone.utc)
LIBRARY = Location(address="100 Larkin St, San Francisco, CA", venue="Main Library")


def candidate(title="Storytime at Library", source="sfpl", start=START, location=LIBRARY, **fields):
    return CandidateEvent(title=title, source=source, start=start, location=location, scraped_at=NOW, **fields)


@pytest.fixture
def engine():
    return MergeEngine()


# --- Tests for fingerprints ---
def test_fingerprint_key_uses_household_local_date():
    late_evening_local = datetime(2025, 6, 15, 5, 0, tzinfo=timezone.utc)  # 22:00 on the 14th in LA
    key = fingerprint_key("Storytime!", late_evening_local, LIBRARY, "America/Los_Angeles")
    assert key.split("|")[:2] == ["storytime", "2025-06-14"]


def test_fingerprint_is_stable_across_whitespace_and_case():
    assert fingerprint(candidate(title="Storytime  at LIBRARY")) == fingerprint(candidate(title="storytime at library"))


def test_unfingerprintable_title_is_rejected():
    with pytest.raises(CandidateRejectedError):
        fingerprint(candidate(title="!!!"))


# --- Tests for merge ---
def test_fuzzy_merge_of_near_duplicate_titles(engine):
    outcome = engine.merge(
        [candidate("Storytime at Library", "sfpl"), candidate("Storytime At The Library", "eventbrite")],
        existing=[], now=NOW,
    )

    assert len(outcome.canonical) == 1
    event = outcome.canonical[0]
    assert event.sources == ["sfpl", "eventbrite"]
    assert event.merge_count == 2
    assert event.last_merged_at == NOW
    assert len(outcome.merges) == 1
    record = outcome.merges[0]
    assert record.merge_type == MergeType.FUZZY
    assert record.primary_event_id == event.id
    assert record.merged_event_id in event.alias_fingerprints
    assert record.merged_snapshot["source"] == "eventbrite"


def test_exact_merge_from_second_source(engine):
    first = engine.merge([candidate(source="sfpl")], existing=[], now=NOW)
    second = engine.merge([candidate(source="kidsoutandabout")], existing=first.canonical, now=NOW)

    assert second.created_ids == []
    assert second.updated_ids == [first.canonical[0].id]
    assert second.merges[0].merge_type == MergeType.EXACT
    assert second.merges[0].similarity == 1.0


def test_distinct_events_are_not_merged(engine):
    outcome = engine.merge(
        [candidate("Toddler Storytime", "sfpl"),
         candidate("Teen Robotics Club", "eventbrite", start=START + timedelta(hours=6))],
        existing=[], now=NOW,
    )
    assert len(outcome.canonical) == 2
    assert outcome.merges == []


def test_events_outside_window_are_never_fuzzy_matched(engine):
    outcome = engine.merge(
        [candidate(source="sfpl"), candidate("Storytime At The Library", "eventbrite", start=START + timedelta(days=7))],
        existing=[], now=NOW,
    )
    assert len(outcome.canonical) == 2


def test_same_source_resighting_is_not_a_merge(engine):
    first = engine.merge([candidate(source="sfpl")], existing=[], now=NOW)
    later = NOW + timedelta(hours=3)
    again = engine.merge([candidate(source="sfpl", description="Now with puppets")], first.canonical, now=later)

    event = again.canonical[0]
    assert again.merges == []
    assert event.merge_count == 1
    assert event.sources == ["sfpl"]
    assert event.last_seen_at == later
    assert event.description == "Now with puppets"


def test_two_sessions_from_one_source_stay_separate(engine):
    outcome = engine.merge(
        [candidate("Toddler Storytime", "sfpl"),
         candidate("Baby Storytime", "sfpl", start=START + timedelta(hours=1))],
        existing=[], now=NOW,
    )

    assert sorted(event.title for event in outcome.canonical) == ["Baby Storytime", "Toddler Storytime"]
    assert len(outcome.created_ids) == 2
    assert outcome.merges == []
    assert all(event.alias_fingerprints == [] for event in outcome.canonical)


def test_merge_is_idempotent(engine):
    batch = [candidate("Storytime at Library", "sfpl"), candidate("Storytime At The Library", "eventbrite")]
    first = engine.merge(batch, existing=[], now=NOW)
    second = engine.merge(batch, existing=first.canonical, now=NOW)

    assert second.created_ids == []
    assert second.merges == []
    assert second.canonical[0].sources == first.canonical[0].sources
    assert second.canonical[0].merge_count == first.canonical[0].merge_count


def test_merge_only_adds_information(engine):
    rich = candidate(
        source="sfpl",
        description="Songs, rhymes and a craft for little ones.",
        registration_url="https://sfpl.org/storytime",
        cost=0.0,
        age_range=AgeRange(min_age=0, max_age=5),
    )
    sparse = candidate(
        source="eventbrite",
        description="Storytime",
        registration_url="https://eventbrite.com/e/123",
        cost=5.0,
        image_url="https://img.example.com/story.png",
        location=Location(address="100 Larkin St", latitude=37.779, longitude=-122.416),
    )
    event = engine.merge([rich, sparse], existing=[], now=NOW).canonical[0]

    assert event.description == "Songs, rhymes and a craft for little ones."
    assert event.registration_url == "https://sfpl.org/storytime"
    assert event.alternate_urls == ["https://eventbrite.com/e/123"]
    assert event.image_url == "https://img.example.com/story.png"
    assert event.location.venue == "Main Library"
    assert event.location.has_coordinates
    assert event.age_range.max_age == 5
    # Disagreeing prices keep the higher one.
    assert event.cost == 5.0


def test_timed_sighting_replaces_all_day_start(engine):
    all_day = candidate(source="sfpl", start=datetime(2025, 6, 14, 7, 0, tzinfo=timezone.utc), all_day=True)
    timed = candidate(source="eventbrite", start=START)
    event = engine.merge([all_day, timed], existing=[], now=NOW).canonical[0]
    assert event.all_day is False
    assert event.start == START


def test_existing_events_are_not_mutated(engine):
    first = engine.merge([candidate(source="sfpl")], existing=[], now=NOW)
    original = first.canonical[0]
    engine.merge([candidate(source="eventbrite")], existing=[original], now=NOW)
    assert original.sources == ["sfpl"]


def test_rejected_candidates_are_reported(engine):
    outcome = engine.merge([candidate(title="???")], existing=[], now=NOW)
    assert outcome.canonical == []
    assert outcome.rejected[0].reason
