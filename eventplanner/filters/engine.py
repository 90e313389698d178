import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence

from eventplanner.collaborators import AgeClassifier, AgeVerdict, CalendarChecker
from eventplanner.filters import checks
from eventplanner.household import HouseholdConfig
from eventplanner.models import PASSED_SENTINEL, CanonicalEvent, CheckName, CheckResult, FilterResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FilterContext:
    """Everything a filtering pass reads: a household snapshot, the clock, attendance history."""
    household: HouseholdConfig
    now: datetime
    attended_event_ids: FrozenSet[str] = field(default_factory=frozenset)


class FilterEngine:
    """
    Runs every eligibility check on an event and collects all of their reasons.

    Checks are never short-circuited. A check that raises is recorded as a
    failure of that check and the remaining checks still run.
    """

    def __init__(
        self,
        weather_service=None,
        age_classifier: Optional[AgeClassifier] = None,
        max_workers: int = 4,
        past_grace: timedelta = timedelta(hours=1),
        advance_buffer: timedelta = timedelta(hours=1),
    ):
        self.weather_service = weather_service
        self.age_classifier = age_classifier
        self.max_workers = max_workers
        self.past_grace = past_grace
        self.advance_buffer = advance_buffer

    @classmethod
    def from_settings(cls, app_settings, weather_service=None, age_classifier=None) -> "FilterEngine":
        return cls(
            weather_service=weather_service,
            age_classifier=age_classifier,
            max_workers=app_settings.filters.max_workers,
            past_grace=timedelta(hours=app_settings.filters.past_grace_hours),
            advance_buffer=timedelta(hours=app_settings.filters.advance_buffer_hours),
        )

    # --- single event ---

    def filter(self, event: CanonicalEvent, context: FilterContext,
               verdict: Optional[AgeVerdict] = None) -> FilterResult:
        """
        Evaluates all checks for one event and attaches the result to it.

        A classifier verdict carrying an extracted time of day moves the event's
        start before the time-dependent checks run.
        """
        household = context.household
        if verdict is not None and verdict.extracted_time:
            checks.apply_extracted_time(event, verdict.extracted_time, household)

        results = [
            self._run(CheckName.AGE, lambda: checks.check_age(event, household, context.now, verdict)),
            self._run(CheckName.TIME_RANGE, lambda: checks.check_time_range(
                event, household, context.now, self.past_grace, self.advance_buffer)),
            self._run(CheckName.SCHEDULE, lambda: checks.check_schedule(event, household)),
            self._run(CheckName.BUDGET, lambda: checks.check_budget(event, household)),
            self._run(CheckName.CAPACITY, lambda: checks.check_capacity(event)),
            self._run(CheckName.NOVELTY, lambda: checks.check_novelty(event, context.attended_event_ids)),
            self._run(CheckName.WEATHER, lambda: checks.check_weather(event, self.weather_service, household)),
        ]

        failures = [result.reason for result in results if not result.passed]
        schedule = next(result for result in results if result.check == CheckName.SCHEDULE)
        result = FilterResult(
            passed=not failures,
            reasons=failures or [PASSED_SENTINEL],
            checks=results,
            is_during_nap_time=bool(schedule.details.get("nap_time")),
            evaluated_at=context.now,
        )
        event.filter_result = result
        return result

    def _run(self, name: CheckName, check: Callable[[], CheckResult]) -> CheckResult:
        try:
            return check()
        except Exception as e:
            logger.warning(f"{name.value} check raised {type(e).__name__}: {e}")
            return CheckResult(check=name, passed=False, reason=f"{name.value} check errored: {e}",
                               details={"error": repr(e)})

    # --- batches ---

    def classify_ages(self, events: Sequence[CanonicalEvent], context: FilterContext) -> Dict[str, AgeVerdict]:
        """One batched classifier call; on any failure every event falls back to its declared range."""
        if self.age_classifier is None or not events:
            return {}
        try:
            return self.age_classifier.evaluate_batch(events, context.household.child_ages(context.now)) or {}
        except Exception as e:
            logger.warning(f"Age classifier unavailable, falling back to declared age ranges: {e}")
            return {}

    def filter_events(self, events: Iterable[CanonicalEvent], context: FilterContext) -> List[CanonicalEvent]:
        """Filters a batch with bounded parallelism; returns the events that passed, in input order."""
        events = list(events)
        verdicts = self.classify_ages(events, context)
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            results = list(pool.map(lambda event: self.filter(event, context, verdicts.get(event.id)), events))

        passed = [event for event, result in zip(events, results) if result.passed]
        logger.info(f"Filtered {len(events)} events: {len(passed)} passed, {len(events) - len(passed)} rejected")
        return passed

    def apply_calendar(self, events: Iterable[CanonicalEvent], calendar_checker: Optional[CalendarChecker]) -> List[CanonicalEvent]:
        """
        Optional stage after filtering. A hard conflict excludes the event, a
        soft one is kept as a warning. Calendar failures keep the event.
        """
        events = list(events)
        if calendar_checker is None:
            return events

        kept: List[CanonicalEvent] = []
        for event in events:
            result = event.filter_result
            try:
                outcome = calendar_checker.check(event.start)
            except Exception as e:
                logger.warning(f"Calendar check failed for '{event.title}': {e}")
                if result is not None:
                    result.warnings.append(f"Calendar check failed: {e}")
                    result.checks.append(CheckResult(check=CheckName.CALENDAR, passed=True,
                                                     reason="Calendar check failed - defaulting to allow"))
                kept.append(event)
                continue

            detail = f" ({outcome.detail})" if outcome.detail else ""
            if outcome.has_conflict:
                reason = f"Calendar conflict{detail}"
                if result is not None:
                    result.checks.append(CheckResult(check=CheckName.CALENDAR, passed=False, reason=reason))
                    result.reasons = [r for r in result.reasons if r != PASSED_SENTINEL] + [reason]
                    result.passed = False
                continue

            if result is not None:
                if outcome.has_warning:
                    result.warnings.append(f"Calendar warning{detail}")
                result.checks.append(CheckResult(
                    check=CheckName.CALENDAR, passed=True,
                    reason=f"Calendar warning{detail}" if outcome.has_warning else "No calendar conflicts"))
            kept.append(event)
        return kept
