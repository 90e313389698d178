import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

import pytz

from eventplanner.cleaning import normalize_title
from eventplanner.dedup.location import venue_token
from eventplanner.dedup.similarity import SimilarityBreakdown, SimilarityWeights, event_similarity
from eventplanner.errors import CandidateRejectedError
from eventplanner.models import (
    AgeRange, CandidateEvent, CanonicalEvent, Location, MergeRecord, MergeType,
)
from eventplanner.utils import utc_now

logger = logging.getLogger(__name__)

# Below this age-range similarity the narrower of the two ranges is kept.
AGE_NARROWING_THRESHOLD = 0.8


def fingerprint_key(title: str, start: datetime, location: Location, timezone_name: str) -> str:
    """Readable identity key: normalized title | local date | venue token."""
    normalized = normalize_title(title)
    if not normalized:
        raise CandidateRejectedError(f"Title '{title}' normalizes to nothing")
    if start is None:
        raise CandidateRejectedError(f"Event '{title}' has no start date")
    bucket = start.astimezone(pytz.timezone(timezone_name)).date().isoformat()
    return "|".join([normalized, bucket, venue_token(location)])


def fingerprint(candidate: CandidateEvent, timezone_name: str = "America/Los_Angeles") -> str:
    """SHA256 of the fingerprint key; used as the CanonicalEvent id."""
    key = fingerprint_key(candidate.title, candidate.start, candidate.location, timezone_name)
    return hashlib.sha256(key.encode('utf-8')).hexdigest()


@dataclass
class RejectedCandidate:
    source: str
    title: str
    reason: str


@dataclass
class MergeOutcome:
    canonical: List[CanonicalEvent]
    merges: List[MergeRecord] = field(default_factory=list)
    rejected: List[RejectedCandidate] = field(default_factory=list)
    created_ids: List[str] = field(default_factory=list)
    updated_ids: List[str] = field(default_factory=list)

    @property
    def touched(self) -> List[CanonicalEvent]:
        ids = set(self.created_ids) | set(self.updated_ids)
        return [event for event in self.canonical if event.id in ids]


class MergeEngine:
    """
    Collapses candidate sightings into canonical events.

    Equal fingerprints merge exactly. Otherwise the best-scoring canonical event
    within `window` of the candidate's start absorbs it when the weighted
    similarity reaches `similarity_threshold`. Merges only ever add information.
    """

    def __init__(
        self,
        similarity_threshold: float = 0.75,
        weights: SimilarityWeights = SimilarityWeights(),
        timezone_name: str = "America/Los_Angeles",
        window: timedelta = timedelta(days=1),
    ):
        self.similarity_threshold = similarity_threshold
        self.weights = weights
        self.timezone_name = timezone_name
        self.window = window

    @classmethod
    def from_settings(cls, app_settings) -> "MergeEngine":
        merge_settings = app_settings.merge
        return cls(
            similarity_threshold=merge_settings.similarity_threshold,
            weights=SimilarityWeights(
                title=merge_settings.title_weight,
                location=merge_settings.location_weight,
                date=merge_settings.date_weight,
                time=merge_settings.time_weight,
                age=merge_settings.age_weight,
            ),
            timezone_name=app_settings.household.timezone,
            window=timedelta(days=merge_settings.candidate_window_days),
        )

    def merge(
        self,
        candidates: Iterable[CandidateEvent],
        existing: Iterable[CanonicalEvent],
        now: Optional[datetime] = None,
    ) -> MergeOutcome:
        now = now or utc_now()
        events = [event.model_copy(deep=True) for event in existing]
        by_fingerprint: Dict[str, CanonicalEvent] = {}
        for event in events:
            by_fingerprint[event.id] = event
            for alias in event.alias_fingerprints:
                by_fingerprint.setdefault(alias, event)

        outcome = MergeOutcome(canonical=events)
        for candidate in candidates:
            try:
                candidate_id = fingerprint(candidate, self.timezone_name)
            except CandidateRejectedError as e:
                logger.warning(f"Rejected candidate from {candidate.source}: {e.message}")
                outcome.rejected.append(RejectedCandidate(candidate.source, candidate.title, e.message))
                continue

            primary = by_fingerprint.get(candidate_id)
            merge_type = MergeType.EXACT
            if primary is not None:
                breakdown = self._similarity(primary, candidate)
            else:
                primary, breakdown = self._best_fuzzy_match(candidate, events)
                merge_type = MergeType.FUZZY

            if primary is None:
                event = self._create(candidate_id, candidate, now)
                events.append(event)
                by_fingerprint[candidate_id] = event
                outcome.created_ids.append(event.id)
                continue

            if merge_type == MergeType.FUZZY and candidate_id not in primary.alias_fingerprints:
                primary.alias_fingerprints.append(candidate_id)
                by_fingerprint[candidate_id] = primary

            record = self._absorb(primary, candidate, candidate_id, merge_type, breakdown, now)
            if record is not None:
                outcome.merges.append(record)
            if primary.id not in outcome.updated_ids and primary.id not in outcome.created_ids:
                outcome.updated_ids.append(primary.id)

        logger.info(
            f"Merge pass: {len(outcome.created_ids)} created, {len(outcome.merges)} merged, "
            f"{len(outcome.rejected)} rejected"
        )
        return outcome

    # --- matching ---

    def _similarity(self, event: CanonicalEvent, candidate: CandidateEvent) -> SimilarityBreakdown:
        return event_similarity(
            event.title, event.start, event.location, event.age_range, event.all_day,
            candidate.title, candidate.start, candidate.location, candidate.age_range, candidate.all_day,
            weights=self.weights,
        )

    def _best_fuzzy_match(
        self, candidate: CandidateEvent, events: List[CanonicalEvent]
    ) -> Tuple[Optional[CanonicalEvent], Optional[SimilarityBreakdown]]:
        best: Optional[CanonicalEvent] = None
        best_breakdown: Optional[SimilarityBreakdown] = None
        for event in events:
            # one source listing two items means two events
            if candidate.source in event.sources:
                continue
            if abs(event.start - candidate.start) > self.window:
                continue
            breakdown = self._similarity(event, candidate)
            if breakdown.total < self.similarity_threshold:
                continue
            if best_breakdown is None or breakdown.total > best_breakdown.total:
                best, best_breakdown = event, breakdown
        return best, best_breakdown

    # --- mutation ---

    def _create(self, event_id: str, candidate: CandidateEvent, now: datetime) -> CanonicalEvent:
        return CanonicalEvent(
            id=event_id,
            title=candidate.title,
            start=candidate.start,
            all_day=candidate.all_day,
            location=candidate.location.model_copy(),
            age_range=candidate.age_range,
            cost=candidate.cost,
            registration_url=candidate.registration_url,
            capacity=candidate.capacity,
            description=candidate.description,
            raw_content=candidate.raw_content,
            image_url=candidate.image_url,
            registration_opens=candidate.registration_opens,
            is_recurring=candidate.is_recurring,
            social_proof=candidate.social_proof,
            sources=[candidate.source],
            merge_count=1,
            first_seen_at=now,
            last_seen_at=now,
            updated_at=now,
        )

    def _absorb(
        self,
        event: CanonicalEvent,
        candidate: CandidateEvent,
        candidate_id: str,
        merge_type: MergeType,
        breakdown: SimilarityBreakdown,
        now: datetime,
    ) -> Optional[MergeRecord]:
        """Folds the candidate into `event`. Returns the audit record, or None for a same-source re-sighting."""
        self._enrich(event, candidate, breakdown)
        event.last_seen_at = now
        event.updated_at = now

        if candidate.source in event.sources:
            logger.debug(f"Re-sighting of '{event.title}' from {candidate.source}; refreshed without merge")
            return None

        event.sources.append(candidate.source)
        event.merge_count = event.merge_count + 1
        event.last_merged_at = now
        similarity = 1.0 if merge_type == MergeType.EXACT else breakdown.total
        logger.info(
            f"{MergeType(merge_type).value} merge of '{candidate.title}' ({candidate.source}) "
            f"into '{event.title}' ({similarity:.3f})"
        )
        return MergeRecord(
            primary_event_id=event.id,
            merged_event_id=candidate_id,
            merged_snapshot=candidate.model_dump(mode="json"),
            similarity=similarity,
            merge_type=merge_type,
            merged_at=now,
        )

    def _enrich(self, event: CanonicalEvent, candidate: CandidateEvent, breakdown: SimilarityBreakdown) -> None:
        url = candidate.registration_url
        if url and url != event.registration_url:
            if not event.registration_url:
                event.registration_url = url
            elif url not in event.alternate_urls:
                event.alternate_urls.append(url)

        if len(candidate.description) > len(event.description):
            event.description = candidate.description
        if len(candidate.raw_content) > len(event.raw_content):
            event.raw_content = candidate.raw_content
        if not event.image_url and candidate.image_url:
            event.image_url = candidate.image_url
        if event.registration_opens is None and candidate.registration_opens is not None:
            event.registration_opens = candidate.registration_opens
        if event.social_proof is None and candidate.social_proof is not None:
            event.social_proof = candidate.social_proof
        event.is_recurring = event.is_recurring or candidate.is_recurring

        event.location = _merge_location(event.location, candidate.location)
        event.cost = _merge_cost(event.cost, candidate.cost)
        event.age_range = _merge_age_range(event.age_range, candidate.age_range, breakdown.age)

        if candidate.capacity is not None:
            if event.capacity is None or candidate.capacity.available is not None:
                event.capacity = candidate.capacity

        if event.all_day and not candidate.all_day:
            tz = pytz.timezone(self.timezone_name)
            if event.start.astimezone(tz).date() == candidate.start.astimezone(tz).date():
                event.start = candidate.start
                event.all_day = False


def _merge_location(current: Location, incoming: Location) -> Location:
    merged = current.model_copy()
    if len(incoming.address or "") > len(current.address or ""):
        merged.address = incoming.address
    if not merged.venue and incoming.venue:
        merged.venue = incoming.venue
    if not merged.has_coordinates and incoming.has_coordinates:
        merged.latitude = incoming.latitude
        merged.longitude = incoming.longitude
    return merged


def _merge_cost(current: Optional[float], incoming: Optional[float]) -> Optional[float]:
    # Disagreeing sources keep the higher price.
    if current is None:
        return incoming
    if incoming is None:
        return current
    return max(current, incoming)


def _merge_age_range(current: Optional[AgeRange], incoming: Optional[AgeRange], similarity: float) -> Optional[AgeRange]:
    if current is None or current.is_empty:
        return incoming if incoming is not None and not incoming.is_empty else current
    if incoming is None or incoming.is_empty or similarity >= AGE_NARROWING_THRESHOLD:
        return current

    def span(age_range: AgeRange) -> float:
        return (age_range.max_age if age_range.max_age is not None else 18) - (age_range.min_age or 0)

    return incoming if span(incoming) < span(current) else current
