"""
Discovery run orchestration: raw candidates in, proposals out.

    map -> merge -> persist -> filter -> calendar -> score -> persist -> propose

Approved events are handed to the registration automator separately, and
unanswered proposals are expired on their own schedule.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from eventplanner.dedup import MergeEngine, fingerprint
from eventplanner.errors import (
    CandidateRejectedError, DiscoveryRunInProgressError, EmergencyStopError, IllegalTransitionError,
    PaymentViolationError,
)
from eventplanner.filters import FilterContext, FilterEngine
from eventplanner.models import CanonicalEvent, Channel, EventStatus, NotificationStatus, RegistrationAttempt, new_id
from eventplanner.schema_adapter import map_candidates
from eventplanner.scoring import ScoringEngine
from eventplanner.utils import utc_now

logger = logging.getLogger(__name__)

RUN_LOCK_NAME = "discovery_run"
RETAINABLE_STATUSES = (
    EventStatus.DISCOVERED, EventStatus.REGISTERED, EventStatus.REJECTED, EventStatus.CANCELLED,
    EventStatus.REGISTRATION_FAILED, EventStatus.MANUAL_REGISTRATION_SENT,
)


@dataclass
class DiscoveryRunReport:
    started_at: datetime
    mapped: int = 0
    rejected: int = 0
    created: int = 0
    merged: int = 0
    evaluated: int = 0
    passed: int = 0
    ranked_ids: List[str] = field(default_factory=list)
    proposed_ids: List[str] = field(default_factory=list)
    failed_notifications: int = 0

    def summary(self) -> Dict[str, Any]:
        return {
            "mapped": self.mapped, "rejected": self.rejected, "created": self.created, "merged": self.merged,
            "evaluated": self.evaluated, "passed": self.passed, "proposed": len(self.proposed_ids),
            "failed_notifications": self.failed_notifications,
        }


class DiscoveryPipeline:
    def __init__(
        self,
        store,
        merge_engine: MergeEngine,
        filter_engine: FilterEngine,
        scoring_engine: ScoringEngine,
        notification_service,
        household_provider,
        calendar_checker=None,
        channel: str = Channel.EMAIL.value,
        recipients: Optional[Dict[str, Optional[str]]] = None,
        proposals_per_run: int = 3,
        prioritize_urgent: bool = False,
        run_lock_stale_after: timedelta = timedelta(minutes=60),
        days_to_keep: int = 90,
        max_parallel_sessions: int = 1,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.merge_engine = merge_engine
        self.filter_engine = filter_engine
        self.scoring_engine = scoring_engine
        self.notification_service = notification_service
        self.household_provider = household_provider
        self.calendar_checker = calendar_checker
        self.channel = Channel(channel).value
        self.recipients = recipients or {}
        self.proposals_per_run = proposals_per_run
        self.prioritize_urgent = prioritize_urgent
        self.run_lock_stale_after = run_lock_stale_after
        self.days_to_keep = days_to_keep
        self.max_parallel_sessions = max_parallel_sessions
        self.clock = clock

    @classmethod
    def from_settings(cls, app_settings, store, merge_engine, filter_engine, scoring_engine,
                      notification_service, household_provider, calendar_checker=None, **kwargs) -> "DiscoveryPipeline":
        return cls(
            store, merge_engine, filter_engine, scoring_engine, notification_service, household_provider,
            calendar_checker=calendar_checker,
            channel=app_settings.notifications.default_channel,
            recipients=app_settings.channel_recipients(),
            proposals_per_run=app_settings.scoring.proposals_per_run,
            prioritize_urgent=app_settings.scoring.prioritize_urgent,
            run_lock_stale_after=timedelta(minutes=app_settings.retention.run_lock_stale_minutes),
            days_to_keep=app_settings.retention.days_to_keep,
            max_parallel_sessions=app_settings.automation.max_parallel_sessions,
            **kwargs,
        )

    # --- discovery ---

    def run(self, raw_items: Iterable[Dict[str, Any]], now: Optional[datetime] = None) -> DiscoveryRunReport:
        """One discovery run under the store-backed run lock."""
        now = now or self.clock()
        owner = new_id()
        if not self.store.acquire_run_lock(RUN_LOCK_NAME, owner, now, self.run_lock_stale_after):
            raise DiscoveryRunInProgressError("Another discovery run holds the run lock")
        logger.info(f"Discovery run {owner} started")
        try:
            report = self._run(list(raw_items), now)
        finally:
            self.store.release_run_lock(RUN_LOCK_NAME, owner)
        logger.info(f"Discovery run {owner} finished: {report.summary()}")
        return report

    def _run(self, raw_items: List[Dict[str, Any]], now: datetime) -> DiscoveryRunReport:
        report = DiscoveryRunReport(started_at=now)
        household = self.household_provider.get()

        candidates, rejected = map_candidates(raw_items, timezone_name=household.timezone, now=now)
        report.mapped, report.rejected = len(candidates), len(rejected)

        outcome = self.merge_engine.merge(candidates, self._merge_candidates_for(candidates), now)
        report.rejected += len(outcome.rejected)
        report.created, report.merged = len(outcome.created_ids), len(outcome.merges)
        self.store.save_events(outcome.touched)
        self.store.insert_merge_records(outcome.merges)

        discovered = self.store.find_events_by_status(EventStatus.DISCOVERED)
        context = FilterContext(household=household, now=now,
                                attended_event_ids=frozenset(self.store.attended_event_ids()))
        passed = self.filter_engine.filter_events(discovered, context)
        passed = self.filter_engine.apply_calendar(passed, self.calendar_checker)
        ranked = self.scoring_engine.score(passed, prioritize_urgent=self.prioritize_urgent, now=now)
        for event in discovered:
            self.store.save_filter_and_score(event)

        report.evaluated, report.passed = len(discovered), len(ranked)
        report.ranked_ids = [event.id for event in ranked]

        for notification in self._propose(ranked, household, now):
            if notification.status == NotificationStatus.FAILED:
                report.failed_notifications += 1
            else:
                report.proposed_ids.append(notification.event_id)
        return report

    def _merge_candidates_for(self, candidates) -> List[CanonicalEvent]:
        """Stored events that a batch could merge into: fingerprint/alias hits plus everything in the date window."""
        if not candidates:
            return []
        fingerprints = []
        for candidate in candidates:
            try:
                fingerprints.append(fingerprint(candidate, self.merge_engine.timezone_name))
            except CandidateRejectedError:
                continue
        existing = {event.id: event for event in self.store.find_events_by_fingerprints(fingerprints)}
        earliest = min(candidate.start for candidate in candidates) - self.merge_engine.window
        latest = max(candidate.start for candidate in candidates) + self.merge_engine.window
        for event in self.store.find_events_in_window(earliest, latest):
            existing.setdefault(event.id, event)
        return list(existing.values())

    def _propose(self, ranked: List[CanonicalEvent], household, now: datetime) -> list:
        """Sends the top events, capped per run and by the household's daily limit."""
        local_midnight = household.tz.localize(datetime.combine(now.astimezone(household.tz).date(), time.min))
        sent_today = self.store.count_sent_since(local_midnight, exclude_statuses=[NotificationStatus.FAILED.value])
        budget = min(self.proposals_per_run, max(0, household.events_per_day_max - sent_today))
        if budget == 0 or not ranked:
            if ranked:
                logger.info(f"Daily proposal cap reached ({sent_today}/{household.events_per_day_max}); nothing sent")
            return []

        recipient = self.recipients.get(self.channel) or (
            household.contact.email if self.channel == Channel.EMAIL.value else household.contact.phone)
        if not recipient:
            logger.warning(f"No {self.channel} recipient configured; {len(ranked)} ranked events not proposed")
            return []

        notifications = []
        for event in ranked[:budget]:
            urgent = bool(event.score_breakdown and event.score_breakdown.is_urgent)
            notifications.append(self.notification_service.send(event, recipient, self.channel, urgent=urgent))
        return notifications

    # --- registration ---

    def process_approved(self, automator) -> List[RegistrationAttempt]:
        """
        Routes approved events: free ones to the automator, paid or unknown-cost
        ones to manual registration. An emergency stop halts the batch and is
        re-raised once in-flight sessions finish.
        """
        automator.guard.ensure_not_stopped()
        approved = self.store.find_events_by_status(EventStatus.APPROVED)
        free = [event for event in approved if event.is_free]
        for event in approved:
            if event.is_free:
                continue
            try:
                self.store.transition_event(event.id, EventStatus.MANUAL_REGISTRATION_SENT,
                                            expected_from=[EventStatus.APPROVED])
                logger.info(f"'{event.title}' requires payment or has unknown cost; sent for manual registration")
            except IllegalTransitionError as e:
                logger.warning(f"Could not route '{event.title}' to manual registration: {e}")

        attempts: List[RegistrationAttempt] = []
        stop: Optional[EmergencyStopError] = None
        with ThreadPoolExecutor(max_workers=self.max_parallel_sessions) as pool:
            futures = {pool.submit(automator.register, event): event for event in free}
            for future in as_completed(futures):
                event = futures[future]
                try:
                    attempts.append(future.result())
                except PaymentViolationError as e:
                    logger.error(f"Registration for '{event.title}' aborted by payment guard: {e}")
                    if e.attempt is not None:
                        attempts.append(e.attempt)
                except EmergencyStopError as e:
                    stop = stop or e
                    for pending in futures:
                        pending.cancel()
                except IllegalTransitionError as e:
                    logger.warning(f"Skipped '{event.title}': {e}")
        if stop is not None:
            raise stop
        logger.info(f"Processed {len(approved)} approved events: {len(attempts)} automation attempts")
        return attempts

    # --- housekeeping ---

    def expire_notifications(self, now: Optional[datetime] = None) -> int:
        return self.notification_service.expire_stale(now or self.clock())

    def cleanup_old_events(self, days_to_keep: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Deletes events that started more than `days_to_keep` days ago and are not mid-workflow."""
        days = days_to_keep if days_to_keep is not None else self.days_to_keep
        cutoff = (now or self.clock()) - timedelta(days=days)
        deleted = self.store.purge_events_older_than(cutoff, RETAINABLE_STATUSES)
        logger.info(f"Retention: deleted {deleted} events that started before {cutoff.isoformat()}")
        return deleted
