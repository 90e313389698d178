from datetime import datetime, timedelta, timezone

import pytest

from eventplanner.errors import IllegalTransitionError
from eventplanner.models import EventStatus, PaymentViolation, ViolationSeverity, ViolationType
from eventplanner.status import allowed_sources, assert_transition, can_transition
from eventplanner.store import to_mongo

NOW = datetime(2025, 6, 2, 17, 0, tzinfo=timezone.utc)
STALE_AFTER = timedelta(hours=2)


def test_to_mongo_strips_timezone_recursively():
    value = {"at": NOW, "nested": [{"at": NOW}], "plain": 3}
    assert to_mongo(value) == {"at": datetime(2025, 6, 2, 17, 0), "nested": [{"at": datetime(2025, 6, 2, 17, 0)}],
                               "plain": 3}


def test_events_round_trip_with_utc(store, event_factory):
    store.save_events([event_factory()])
    loaded = store.get_event("evt-1")
    assert loaded.start == datetime(2025, 6, 14, 17, 0, tzinfo=timezone.utc)
    assert loaded.location.venue == "Main Library"


def test_save_events_never_overwrites_status(store, event_factory):
    store.save_events([event_factory()])
    store.transition_event("evt-1", EventStatus.PROPOSED)

    store.save_events([event_factory(description="Updated by a later merge")])

    loaded = store.get_event("evt-1")
    assert loaded.status == EventStatus.PROPOSED
    assert loaded.description == "Updated by a later merge"


def test_find_by_fingerprint_or_alias(store, event_factory):
    store.save_events([event_factory(event_id="primary", alias_fingerprints=["alias-1"])])
    assert [e.id for e in store.find_events_by_fingerprints(["alias-1"])] == ["primary"]
    assert [e.id for e in store.find_events_by_fingerprints(["primary", "other"])] == ["primary"]
    assert store.find_events_by_fingerprints([]) == []


def test_conditional_transition(store, event_factory):
    store.save_events([event_factory()])

    assert store.update_event_status("evt-1", EventStatus.APPROVED) is None
    assert store.update_event_status("evt-1", EventStatus.PROPOSED).status == EventStatus.PROPOSED
    with pytest.raises(IllegalTransitionError) as exc_info:
        store.transition_event("evt-1", EventStatus.REGISTERED)
    assert exc_info.value.from_status == "proposed"
    with pytest.raises(IllegalTransitionError):
        store.transition_event("missing", EventStatus.PROPOSED)


def test_status_table():
    assert can_transition(EventStatus.APPROVED, EventStatus.REGISTERING)
    assert not can_transition(EventStatus.REGISTERED, EventStatus.CANCELLED)
    assert allowed_sources(EventStatus.REGISTERING) == ["approved", "registration_failed"]
    with pytest.raises(IllegalTransitionError):
        assert_transition("evt-1", "rejected", "approved")


def test_purge_only_touches_finished_statuses(store, event_factory):
    old = NOW - timedelta(days=60)
    store.save_events([
        event_factory(event_id="old-rejected", start=old, status=EventStatus.REJECTED),
        event_factory(event_id="old-registered", start=old, status=EventStatus.REGISTERED),
        event_factory(event_id="new-rejected", status=EventStatus.REJECTED),
    ])

    deleted = store.purge_events_older_than(NOW - timedelta(days=30), [EventStatus.REJECTED, EventStatus.CANCELLED])

    assert deleted == 1
    assert store.get_event("old-rejected") is None
    assert store.get_event("old-registered") is not None


# --- Tests for the run lock ---
def test_run_lock_is_exclusive(store):
    assert store.acquire_run_lock("discovery_run", "worker-a", NOW, STALE_AFTER)
    assert not store.acquire_run_lock("discovery_run", "worker-b", NOW + timedelta(minutes=5), STALE_AFTER)

    store.release_run_lock("discovery_run", "worker-a")
    assert store.acquire_run_lock("discovery_run", "worker-b", NOW + timedelta(minutes=6), STALE_AFTER)


def test_stale_lock_is_taken_over(store):
    assert store.acquire_run_lock("discovery_run", "crashed", NOW, STALE_AFTER)
    assert store.acquire_run_lock("discovery_run", "worker-b", NOW + timedelta(hours=3), STALE_AFTER)
    assert store.locks.find_one({"_id": "discovery_run"})["owner"] == "worker-b"


def test_release_by_other_owner_is_ignored(store):
    store.acquire_run_lock("discovery_run", "worker-a", NOW, STALE_AFTER)
    store.release_run_lock("discovery_run", "worker-b")
    assert not store.acquire_run_lock("discovery_run", "worker-c", NOW, STALE_AFTER)


# --- Tests for violations and flags ---
def violation(severity):
    return PaymentViolation(violation_type=ViolationType.PRICE_DETECTED, severity=severity, detected_at=NOW)


def test_count_violations_by_severity(store):
    for severity in (ViolationSeverity.WARNING, ViolationSeverity.HIGH, ViolationSeverity.CRITICAL):
        store.insert_payment_violation(violation(severity))

    assert store.count_violations("warning") == 3
    assert store.count_violations("high") == 2
    assert store.count_violations(ViolationSeverity.CRITICAL) == 1
    assert store.acknowledge_violations() == 3
    assert store.count_violations("warning") == 0
    assert len(store.list_violations()) == 3


def test_flags(store):
    assert store.get_flag("emergency_stop") is None
    store.set_flag("emergency_stop", True, "manual")
    assert store.get_flag("emergency_stop")["reason"] == "manual"
    assert store.clear_flag("emergency_stop")
    assert not store.clear_flag("emergency_stop")
