from datetime import timedelta

import pytest

from eventplanner.dedup import MergeEngine
from eventplanner.errors import DiscoveryRunInProgressError, EmergencyStopError
from eventplanner.filters import FilterEngine
from eventplanner.models import EventStatus, NotificationStatus, RegistrationAttempt, ScoreBreakdown
from eventplanner.notifications import NotificationService, SendReceipt
from eventplanner.notifications.channels import ChannelSender
from eventplanner.pipeline import RUN_LOCK_NAME, DiscoveryPipeline
from eventplanner.registration import PaymentGuard
from eventplanner.scoring import ScoringEngine

LIBRARY = {"address": "100 Larkin St, San Francisco, CA"}


def raw(title, date, source="sfpl", price="Free", **fields):
    item = {"source": source, "title": title, "date": date, "time": "10:00 AM", "venue": "Main Library",
            "location": LIBRARY, "price": price, "url": f"https://{source}.example.org/{title.lower().replace(' ', '-')}"}
    item.update(fields)
    return item


RAW_ITEMS = [
    raw("Toddler Storytime", "2025-06-14"),
    raw("Toddler Storytime", "2025-06-14", source="eventbrite"),
    raw("Family Art Workshop", "2025-06-21"),
    raw("Pottery Wheel Class", "2025-06-22", price="$80"),
    raw("Kids Science Day", "2025-06-28"),
    raw("Lego Club", "2025-07-05"),
    {"source": "sfpl", "title": "", "date": "2025-06-14"},
]
TITLE_SCORES = {"Toddler Storytime": 90.0, "Family Art Workshop": 80.0, "Kids Science Day": 70.0, "Lego Club": 60.0}


class TitleScorer:
    def score(self, event, now):
        value = TITLE_SCORES[event.title]
        return ScoreBreakdown(base_preference=value / 100, composite=value, final=value)


class RecordingSender(ChannelSender):
    def __init__(self):
        self.sent = []

    def send(self, recipient, subject, body):
        self.sent.append((recipient, subject))
        return SendReceipt(provider_message_id=f"<msg-{len(self.sent)}@example.com>")


class FakeAutomator:
    def __init__(self, guard, error=None):
        self.guard = guard
        self.error = error
        self.registered = []

    def register(self, event, triggered_by="automation"):
        if self.error is not None:
            raise self.error
        self.registered.append(event.id)
        return RegistrationAttempt(event_id=event.id, success=True, confirmation_number="OK1")


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def pipeline(store, household_provider, sender, now):
    notifications = NotificationService(store, {"email": sender}, clock=lambda: now, sleep=lambda delay: None)
    return DiscoveryPipeline(
        store, MergeEngine(), FilterEngine(max_workers=2), ScoringEngine(TitleScorer()),
        notifications, household_provider, channel="email", proposals_per_run=3, clock=lambda: now,
    )


def test_discovery_run_proposes_top_events(pipeline, store, sender, now):
    report = pipeline.run(RAW_ITEMS, now=now)

    assert report.mapped == 6
    assert report.rejected == 1
    assert report.created == 5
    assert report.merged == 1
    assert report.evaluated == 5
    assert report.passed == 4
    titles = [store.get_event(event_id).title for event_id in report.proposed_ids]
    assert titles == ["Toddler Storytime", "Family Art Workshop", "Kids Science Day"]
    assert [recipient for recipient, _ in sender.sent] == ["sam@example.com"] * 3
    assert sender.sent[0][1] == "New Family Event: Toddler Storytime (FREE)"

    storytime = store.get_event(report.proposed_ids[0])
    assert storytime.status == EventStatus.PROPOSED
    assert storytime.sources == ["sfpl", "eventbrite"]
    pottery = next(e for e in store.find_events_by_status(EventStatus.DISCOVERED) if e.title == "Pottery Wheel Class")
    assert not pottery.filter_result.passed
    assert pottery.filter_result.reasons == ["Too expensive ($80 > $50 budget)"]


def test_daily_cap_stops_further_proposals(pipeline, store, sender, now):
    pipeline.run(RAW_ITEMS, now=now)
    report = pipeline.run([], now=now + timedelta(hours=2))

    assert [store.get_event(event_id).title for event_id in report.ranked_ids] == ["Lego Club"]
    assert report.proposed_ids == []
    assert len(sender.sent) == 3


def test_rerun_merges_into_existing_events(pipeline, store, now):
    pipeline.run(RAW_ITEMS, now=now)
    report = pipeline.run([raw("Lego Club", "2025-07-05", source="library")], now=now + timedelta(hours=1))

    assert report.created == 0
    assert report.merged == 1
    lego = next(e for e in store.find_events_by_status(EventStatus.DISCOVERED) if e.title == "Lego Club")
    assert lego.sources == ["sfpl", "library"]


def test_run_lock_prevents_overlapping_runs(pipeline, store, now):
    store.acquire_run_lock(RUN_LOCK_NAME, "other-worker", now, timedelta(minutes=60))

    with pytest.raises(DiscoveryRunInProgressError):
        pipeline.run(RAW_ITEMS, now=now)
    assert store.find_events_by_status(EventStatus.DISCOVERED) == []


def test_run_lock_released_after_run(pipeline, store, now):
    pipeline.run([], now=now)
    assert store.acquire_run_lock(RUN_LOCK_NAME, "next-worker", now, timedelta(minutes=60))


def test_failed_notifications_are_counted(store, household_provider, now):
    pipeline = DiscoveryPipeline(
        store, MergeEngine(), FilterEngine(), ScoringEngine(TitleScorer()),
        NotificationService(store, {}, clock=lambda: now, sleep=lambda delay: None),
        household_provider, channel="sms", clock=lambda: now,
    )

    report = pipeline.run(RAW_ITEMS[:1], now=now)

    assert report.failed_notifications == 1
    assert report.proposed_ids == []
    assert store.notifications.find_one()["status"] == NotificationStatus.FAILED.value


# --- Tests for registration routing ---
def test_process_approved_routes_paid_events_to_manual(pipeline, store, event_factory):
    store.save_events([
        event_factory(event_id="free", status=EventStatus.APPROVED, registration_url="https://example.org/r"),
        event_factory(event_id="paid", status=EventStatus.APPROVED, cost=20.0),
        event_factory(event_id="unknown", status=EventStatus.APPROVED, cost=None),
        event_factory(event_id="proposed", status=EventStatus.PROPOSED),
    ])
    automator = FakeAutomator(PaymentGuard(store))

    attempts = pipeline.process_approved(automator)

    assert automator.registered == ["free"]
    assert [a.event_id for a in attempts] == ["free"]
    assert store.get_event("paid").status == EventStatus.MANUAL_REGISTRATION_SENT
    assert store.get_event("unknown").status == EventStatus.MANUAL_REGISTRATION_SENT
    assert store.get_event("proposed").status == EventStatus.PROPOSED


def test_process_approved_reraises_emergency_stop(pipeline, store, event_factory):
    store.save_events([event_factory(status=EventStatus.APPROVED, registration_url="https://example.org/r")])
    automator = FakeAutomator(PaymentGuard(store), error=EmergencyStopError("stop engaged"))

    with pytest.raises(EmergencyStopError):
        pipeline.process_approved(automator)


# --- Tests for housekeeping ---
def test_cleanup_keeps_events_mid_workflow(pipeline, store, event_factory, now):
    old = now - timedelta(days=120)
    store.save_events([
        event_factory(event_id="old-discovered", start=old),
        event_factory(event_id="old-proposed", start=old, status=EventStatus.PROPOSED),
        event_factory(event_id="upcoming"),
    ])

    assert pipeline.cleanup_old_events(days_to_keep=90, now=now) == 1
    assert store.get_event("old-discovered") is None
    assert store.get_event("old-proposed") is not None
    assert store.get_event("upcoming") is not None


def test_expire_notifications_delegates_to_service(pipeline, store, event_factory, now):
    event = event_factory()
    store.save_events([event])
    pipeline.notification_service.send(event, "sam@example.com", "email")

    assert pipeline.expire_notifications(now + timedelta(hours=25)) == 1
    assert store.get_event(event.id).status == EventStatus.CANCELLED
