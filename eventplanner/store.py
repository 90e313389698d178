"""
MongoDB persistence for the pipeline.

Every document is keyed by `_id`. Datetimes are written as naive UTC, which is
what MongoDB stores anyway, so that query values and stored values compare
like with like. Models re-attach UTC on the way out.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument, UpdateOne
from pymongo.errors import BulkWriteError, DuplicateKeyError

from eventplanner.errors import IllegalTransitionError
from eventplanner.models import (
    SEVERITY_RANK, CanonicalEvent, EventStatus, Interaction, InteractionType, MergeRecord,
    Notification, PaymentViolation, RegistrationAttempt, ResponseRecord,
)
from eventplanner.status import allowed_sources
from eventplanner.utils import utc_now

logger = logging.getLogger(__name__)

EMERGENCY_STOP_FLAG = "emergency_stop"
HOUSEHOLD_DOCUMENT_ID = "household"


def to_mongo(value: Any) -> Any:
    """Recursively converts aware datetimes to naive UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, dict):
        return {key: to_mongo(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_mongo(item) for item in value]
    return value


def _doc_to_model(doc: Dict[str, Any], model):
    data = dict(doc)
    data["id"] = data.pop("_id")
    return model.model_validate(data)


def _model_to_doc(model) -> Dict[str, Any]:
    doc = model.model_dump(mode="python")
    doc["_id"] = doc.pop("id")
    return to_mongo(doc)


class EventStore:
    """Repository over the pipeline's MongoDB collections."""

    def __init__(self, db):
        self.db = db
        self.events = db.canonical_events
        self.merge_records = db.merge_records
        self.notifications = db.notifications
        self.unmatched_responses = db.unmatched_responses
        self.registration_attempts = db.registration_attempts
        self.payment_violations = db.payment_violations
        self.interactions = db.interactions
        self.household_settings = db.household_settings
        self.forecasts = db.forecasts
        self.oauth_tokens = db.oauth_tokens
        self.system_flags = db.system_flags
        self.locks = db.locks

    def ensure_indexes(self) -> None:
        """Create indexes for the queries the pipeline runs."""
        self.events.create_index("alias_fingerprints", name="idx_alias_fingerprints")
        self.events.create_index("start", name="idx_start")
        self.events.create_index([("status", ASCENDING), ("start", ASCENDING)], name="idx_status_start")
        self.merge_records.create_index("primary_event_id", name="idx_primary_event_id")
        self.notifications.create_index([("recipient", ASCENDING), ("sent_at", DESCENDING)], name="idx_recipient_sent_at")
        self.notifications.create_index("provider_message_id", name="idx_provider_message_id", sparse=True)
        self.notifications.create_index([("status", ASCENDING), ("sent_at", ASCENDING)], name="idx_status_sent_at")
        self.registration_attempts.create_index("event_id", name="idx_attempt_event_id")
        self.payment_violations.create_index("detected_at", name="idx_detected_at")
        self.interactions.create_index("event_id", name="idx_interaction_event_id")
        logger.info("MongoDB indexes ensured")

    # --- canonical events ---

    def get_event(self, event_id: str) -> Optional[CanonicalEvent]:
        doc = self.events.find_one({"_id": event_id})
        return CanonicalEvent.from_document(doc) if doc else None

    def find_events_by_fingerprints(self, fingerprints: Iterable[str]) -> List[CanonicalEvent]:
        """Events whose id or recorded alias matches any of the fingerprints."""
        keys = list(set(fingerprints))
        if not keys:
            return []
        cursor = self.events.find({"$or": [{"_id": {"$in": keys}}, {"alias_fingerprints": {"$in": keys}}]})
        return [CanonicalEvent.from_document(doc) for doc in cursor]

    def find_events_in_window(self, start: datetime, end: datetime) -> List[CanonicalEvent]:
        cursor = self.events.find({"start": {"$gte": to_mongo(start), "$lte": to_mongo(end)}})
        return [CanonicalEvent.from_document(doc) for doc in cursor]

    def find_events_by_status(self, *statuses: EventStatus) -> List[CanonicalEvent]:
        values = [EventStatus(status).value for status in statuses]
        cursor = self.events.find({"status": {"$in": values}}).sort("start", ASCENDING)
        return [CanonicalEvent.from_document(doc) for doc in cursor]

    def save_events(self, events: Sequence[CanonicalEvent]) -> int:
        """
        Upserts canonical events keyed by id. Status is left out of the $set for
        existing documents so a concurrent transition is never overwritten by a
        merge; new documents get it through $setOnInsert.
        """
        operations = []
        for event in events:
            doc = to_mongo(event.to_document())
            status = doc.pop("status")
            operations.append(UpdateOne(
                {"_id": doc.pop("_id")},
                {"$set": doc, "$setOnInsert": {"status": status}},
                upsert=True,
            ))
        if not operations:
            return 0
        try:
            result = self.events.bulk_write(operations, ordered=False)
        except BulkWriteError as e:
            logger.error(f"Bulk write of canonical events failed: {e.details}")
            raise
        written = result.upserted_count + result.modified_count
        logger.debug(f"Saved {len(operations)} events ({result.upserted_count} new, {result.modified_count} modified)")
        return written

    def save_filter_and_score(self, event: CanonicalEvent) -> None:
        update = {
            "filter_result": event.filter_result.model_dump(mode="python") if event.filter_result else None,
            "score_breakdown": event.score_breakdown.model_dump(mode="python") if event.score_breakdown else None,
            "preference_score": event.preference_score,
            "start": event.start,
            "all_day": event.all_day,
            "extracted_time": event.extracted_time,
            "updated_at": utc_now(),
        }
        self.events.update_one({"_id": event.id}, {"$set": to_mongo(update)})

    def update_event_status(self, event_id: str, to_status: EventStatus,
                            expected_from: Optional[Sequence[EventStatus]] = None,
                            now: Optional[datetime] = None) -> Optional[CanonicalEvent]:
        """
        Conditional transition. Only matches when the current status is one of
        `expected_from` (default: every status the target can be entered from).
        Returns the updated event, or None when nothing matched.
        """
        sources = [EventStatus(s).value for s in expected_from] if expected_from else allowed_sources(to_status)
        doc = self.events.find_one_and_update(
            {"_id": event_id, "status": {"$in": sources}},
            {"$set": {"status": EventStatus(to_status).value, "updated_at": to_mongo(now or utc_now())}},
            return_document=ReturnDocument.AFTER,
        )
        return CanonicalEvent.from_document(doc) if doc else None

    def transition_event(self, event_id: str, to_status: EventStatus,
                         expected_from: Optional[Sequence[EventStatus]] = None,
                         now: Optional[datetime] = None) -> CanonicalEvent:
        """Like update_event_status, but raises IllegalTransitionError when the update does not apply."""
        updated = self.update_event_status(event_id, to_status, expected_from, now)
        if updated is not None:
            return updated
        current = self.events.find_one({"_id": event_id}, {"status": 1})
        current_status = current["status"] if current else "missing"
        raise IllegalTransitionError(event_id, current_status, EventStatus(to_status).value)

    def purge_events_older_than(self, cutoff: datetime, statuses: Sequence[EventStatus]) -> int:
        result = self.events.delete_many({
            "start": {"$lt": to_mongo(cutoff)},
            "status": {"$in": [EventStatus(s).value for s in statuses]},
        })
        return result.deleted_count

    # --- merge records ---

    def insert_merge_records(self, records: Sequence[MergeRecord]) -> None:
        if records:
            self.merge_records.insert_many([_model_to_doc(record) for record in records])

    def merge_records_for(self, primary_event_id: str) -> List[MergeRecord]:
        cursor = self.merge_records.find({"primary_event_id": primary_event_id}).sort("merged_at", ASCENDING)
        return [_doc_to_model(doc, MergeRecord) for doc in cursor]

    # --- notifications ---

    def insert_notification(self, notification: Notification) -> None:
        self.notifications.insert_one(_model_to_doc(notification))

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        doc = self.notifications.find_one({"_id": notification_id})
        return Notification.from_document(doc) if doc else None

    def update_notification(self, notification_id: str, updates: Dict[str, Any]) -> None:
        self.notifications.update_one({"_id": notification_id}, {"$set": to_mongo(updates)})

    def update_notification_if(self, notification_id: str, expected_statuses: Sequence[str],
                               updates: Dict[str, Any], sent_after: Optional[datetime] = None) -> Optional[Notification]:
        """Applies `updates` only while the notification is in one of `expected_statuses`."""
        query: Dict[str, Any] = {"_id": notification_id, "status": {"$in": [str(getattr(s, "value", s)) for s in expected_statuses]}}
        if sent_after is not None:
            query["sent_at"] = {"$gte": to_mongo(sent_after)}
        doc = self.notifications.find_one_and_update(query, {"$set": to_mongo(updates)},
                                                     return_document=ReturnDocument.AFTER)
        return Notification.from_document(doc) if doc else None

    def push_late_response(self, notification_id: str, record: ResponseRecord) -> None:
        self.notifications.update_one(
            {"_id": notification_id},
            {"$push": {"late_responses": to_mongo(record.model_dump(mode="python"))}},
        )

    def find_open_notifications(self, recipient: str, since: datetime,
                                open_statuses: Sequence[str]) -> List[Notification]:
        """Open notifications for a recipient sent at or after `since`, most recent first."""
        cursor = self.notifications.find({
            "recipient": recipient,
            "status": {"$in": [str(getattr(s, "value", s)) for s in open_statuses]},
            "sent_at": {"$gte": to_mongo(since)},
        }).sort("sent_at", DESCENDING)
        return [Notification.from_document(doc) for doc in cursor]

    def find_by_provider_message_id(self, provider_message_id: str) -> Optional[Notification]:
        doc = self.notifications.find_one({"provider_message_id": provider_message_id})
        return Notification.from_document(doc) if doc else None

    def find_expired_open(self, cutoff: datetime, open_statuses: Sequence[str]) -> List[Notification]:
        cursor = self.notifications.find({
            "status": {"$in": [str(getattr(s, "value", s)) for s in open_statuses]},
            "sent_at": {"$lt": to_mongo(cutoff)},
        })
        return [Notification.from_document(doc) for doc in cursor]

    def count_sent_since(self, since: datetime, exclude_statuses: Sequence[str] = ("failed",)) -> int:
        return self.notifications.count_documents({
            "sent_at": {"$gte": to_mongo(since)},
            "status": {"$nin": [str(getattr(s, "value", s)) for s in exclude_statuses]},
        })

    def record_unmatched_response(self, recipient: str, channel: str, text: str,
                                  received_at: datetime, in_reply_to: Optional[str] = None) -> None:
        self.unmatched_responses.insert_one(to_mongo({
            "recipient": recipient,
            "channel": channel,
            "text": text,
            "in_reply_to": in_reply_to,
            "received_at": received_at,
        }))

    # --- registration attempts and violations ---

    def insert_registration_attempt(self, attempt: RegistrationAttempt) -> None:
        self.registration_attempts.insert_one(_model_to_doc(attempt))

    def attempts_for(self, event_id: str) -> List[RegistrationAttempt]:
        cursor = self.registration_attempts.find({"event_id": event_id}).sort("attempted_at", ASCENDING)
        return [_doc_to_model(doc, RegistrationAttempt) for doc in cursor]

    def insert_payment_violation(self, violation: PaymentViolation) -> None:
        doc = _model_to_doc(violation)
        doc["acknowledged"] = False
        self.payment_violations.insert_one(doc)

    def count_violations(self, min_severity: str = "high") -> int:
        """Unacknowledged violations at or above `min_severity`."""
        floor = SEVERITY_RANK[str(getattr(min_severity, "value", min_severity))]
        severities = [name for name, rank in SEVERITY_RANK.items() if rank >= floor]
        return self.payment_violations.count_documents({"severity": {"$in": severities}, "acknowledged": False})

    def acknowledge_violations(self) -> int:
        result = self.payment_violations.update_many({"acknowledged": False}, {"$set": {"acknowledged": True}})
        return result.modified_count

    def list_violations(self) -> List[PaymentViolation]:
        cursor = self.payment_violations.find({}, {"acknowledged": 0}).sort("detected_at", ASCENDING)
        return [_doc_to_model(doc, PaymentViolation) for doc in cursor]

    # --- flags and locks ---

    def set_flag(self, name: str, value: Any, reason: Optional[str] = None) -> None:
        self.system_flags.update_one(
            {"_id": name},
            {"$set": to_mongo({"value": value, "reason": reason, "set_at": utc_now()})},
            upsert=True,
        )

    def get_flag(self, name: str) -> Optional[Dict[str, Any]]:
        return self.system_flags.find_one({"_id": name})

    def clear_flag(self, name: str) -> bool:
        return self.system_flags.delete_one({"_id": name}).deleted_count > 0

    def acquire_run_lock(self, name: str, owner: str, now: datetime, stale_after: timedelta) -> bool:
        """
        Takes the named lock unless another owner holds a fresh one. A lock older
        than `stale_after` is taken over.
        """
        held = {"locked": True, "owner": owner, "acquired_at": to_mongo(now)}
        try:
            self.locks.insert_one({"_id": name, **held})
            return True
        except DuplicateKeyError:
            pass
        doc = self.locks.find_one_and_update(
            {"_id": name, "$or": [{"locked": False}, {"acquired_at": {"$lt": to_mongo(now - stale_after)}}]},
            {"$set": held},
            return_document=ReturnDocument.AFTER,
        )
        return doc is not None

    def release_run_lock(self, name: str, owner: str) -> None:
        self.locks.update_one({"_id": name, "owner": owner}, {"$set": {"locked": False}})

    # --- household, interactions ---

    def get_household_settings(self) -> Optional[Dict[str, Any]]:
        return self.household_settings.find_one({"_id": HOUSEHOLD_DOCUMENT_ID})

    def save_household_settings(self, document: Dict[str, Any]) -> None:
        data = {key: value for key, value in document.items() if key != "_id"}
        self.household_settings.update_one({"_id": HOUSEHOLD_DOCUMENT_ID}, {"$set": to_mongo(data)}, upsert=True)

    def record_interaction(self, interaction: Interaction) -> None:
        self.interactions.insert_one(_model_to_doc(interaction))

    def list_interactions(self, limit: int = 1000) -> List[Interaction]:
        cursor = self.interactions.find({}).sort("recorded_at", DESCENDING).limit(limit)
        return [_doc_to_model(doc, Interaction) for doc in cursor]

    def attended_event_ids(self) -> Set[str]:
        return set(self.interactions.distinct("event_id", {"interaction_type": InteractionType.ATTENDED.value}))

    def visited_venues(self) -> Set[str]:
        venues = self.interactions.distinct("venue", {"interaction_type": {"$in": [
            InteractionType.ATTENDED.value, InteractionType.REGISTERED.value]}})
        return {venue for venue in venues if venue}

    # --- caches ---

    def get_cached_forecast(self, key: str) -> Optional[Dict[str, Any]]:
        doc = self.forecasts.find_one({"_id": key})
        if doc is None:
            return None
        doc.pop("_id")
        return doc

    def save_forecast(self, key: str, forecast: Dict[str, Any]) -> None:
        self.forecasts.update_one({"_id": key}, {"$set": to_mongo(forecast)}, upsert=True)

    def get_oauth_tokens(self, user: str, provider: str) -> Optional[Dict[str, Any]]:
        return self.oauth_tokens.find_one({"_id": f"{user}:{provider}"})

    def save_oauth_tokens(self, user: str, provider: str, tokens: Dict[str, Any]) -> None:
        data = {key: value for key, value in tokens.items() if key != "_id"}
        data.update(user=user, provider=provider)
        self.oauth_tokens.update_one({"_id": f"{user}:{provider}"}, {"$set": to_mongo(data)}, upsert=True)


def connect(app_settings) -> EventStore:
    """Builds an EventStore from settings and makes sure its indexes exist."""
    client = MongoClient(
        app_settings.mongodb.uri,
        serverSelectionTimeoutMS=app_settings.mongodb.server_selection_timeout_ms,
        tz_aware=True,
    )
    store = EventStore(client[app_settings.mongodb.database])
    store.ensure_indexes()
    return store
