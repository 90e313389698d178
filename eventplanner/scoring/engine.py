import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from eventplanner.errors import CollaboratorUnavailableError
from eventplanner.models import CanonicalEvent, ScoreBreakdown
from eventplanner.utils import utc_now

logger = logging.getLogger(__name__)

SPECIAL_KEYWORDS = ("special", "premiere", "grand opening", "one night only", "exclusive", "annual", "festival")
SEASONAL_KEYWORDS = ("halloween", "christmas", "holiday", "easter", "thanksgiving", "lunar new year",
                     "pumpkin", "summer", "spring", "winter", "fall")
TRENDING_KEYWORDS = ("popular", "trending", "new", "limited", "selling fast")


@dataclass(frozen=True)
class ScoringWeights:
    preference: float = 0.50
    novelty: float = 0.20
    urgency: float = 0.15
    social: float = 0.15


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def is_urgent(event: CanonicalEvent, now: datetime, registration_window: timedelta = timedelta(hours=24),
              capacity_ratio: float = 0.2) -> bool:
    """Registration opens within the window, or little capacity is left."""
    if event.registration_opens is not None:
        until_open = event.registration_opens - now
        if timedelta(0) < until_open <= registration_window:
            return True
    if event.capacity is not None:
        ratio = event.capacity.ratio
        if ratio is not None and ratio <= capacity_ratio:
            return True
    return False


def novelty_score(event: CanonicalEvent, visited_venues: Iterable[str] = ()) -> float:
    text = f"{event.title} {event.description}".lower()
    venue = (event.location.venue or event.location.address or "").lower()
    if venue and venue in {v.lower() for v in visited_venues}:
        return 20.0
    if event.is_recurring:
        return 40.0
    if any(keyword in text for keyword in SPECIAL_KEYWORDS):
        return 95.0
    if any(keyword in text for keyword in SEASONAL_KEYWORDS):
        return 85.0
    return 75.0


def urgency_score(event: CanonicalEvent, now: datetime) -> float:
    score = 50.0
    if event.registration_opens is not None:
        hours = (event.registration_opens - now).total_seconds() / 3600
        if hours <= 2:
            score = 100.0
        elif hours <= 24:
            score = 90.0
        elif hours <= 72:
            score = 70.0

    ratio = event.capacity.ratio if event.capacity is not None else None
    if ratio is not None:
        if ratio <= 0.1:
            score = max(score, 95.0)
        elif ratio <= 0.3:
            score = max(score, 80.0)
        elif ratio <= 0.5:
            score = max(score, 65.0)

    days = (event.start - now).total_seconds() / 86400
    if days <= 7:
        score = max(score, 85.0)
    elif days <= 14:
        score = max(score, 70.0)
    return score


def social_score(event: CanonicalEvent) -> float:
    score = 50.0
    proof = event.social_proof
    if proof is not None:
        if proof.rating is not None and proof.rating >= 4.5:
            score += 20
        elif proof.rating is not None and proof.rating >= 4.0:
            score += 10
        if proof.review_count >= 100:
            score += 10
        score += min(25, proof.interested_count // 10 * 5)
    text = f"{event.title} {event.description}".lower()
    if any(keyword in text for keyword in TRENDING_KEYWORDS):
        score += 15
    return min(100.0, score)


class CompositePreferenceScorer:
    """Blends learned preference with novelty, urgency and social proof into 0-100."""

    def __init__(self, model, weights: ScoringWeights = ScoringWeights(),
                 visited_venues: Callable[[], Iterable[str]] = lambda: ()):
        self.model = model
        self.weights = weights
        self.visited_venues = visited_venues

    def score(self, event: CanonicalEvent, now: datetime) -> ScoreBreakdown:
        preference = self.model.predict(event)
        novelty = novelty_score(event, self.visited_venues())
        urgency = urgency_score(event, now)
        social = social_score(event)
        composite = clamp(
            self.weights.preference * preference * 100
            + self.weights.novelty * novelty
            + self.weights.urgency * urgency
            + self.weights.social * social
        )
        return ScoreBreakdown(
            base_preference=round(preference, 4),
            novelty=novelty,
            urgency=urgency,
            social=social,
            composite=round(composite, 2),
            final=round(composite, 2),
        )


class ScoringEngine:
    """
    Annotates filtered events with a final score and returns them ranked.

    Nap-window events lose `nap_penalty` points (floored at zero). When the
    preference scorer is unavailable a fixed neutral score is used instead.
    """

    def __init__(
        self,
        scorer,
        nap_penalty: float = 20.0,
        neutral_score: float = 50.0,
        neutral_nap_score: float = 30.0,
        urgent_registration_window: timedelta = timedelta(hours=24),
        urgent_capacity_ratio: float = 0.2,
    ):
        self.scorer = scorer
        self.nap_penalty = nap_penalty
        self.neutral_score = neutral_score
        self.neutral_nap_score = neutral_nap_score
        self.urgent_registration_window = urgent_registration_window
        self.urgent_capacity_ratio = urgent_capacity_ratio

    @classmethod
    def from_settings(cls, app_settings, scorer) -> "ScoringEngine":
        s = app_settings.scoring
        return cls(
            scorer,
            nap_penalty=s.nap_penalty,
            neutral_score=s.neutral_score,
            neutral_nap_score=s.neutral_nap_score,
            urgent_registration_window=timedelta(hours=s.urgent_registration_window_hours),
            urgent_capacity_ratio=s.urgent_capacity_ratio,
        )

    def score(self, events: Iterable[CanonicalEvent], prioritize_urgent: bool = False,
              now: Optional[datetime] = None) -> List[CanonicalEvent]:
        now = now or utc_now()
        events = list(events)
        for event in events:
            breakdown = self._score_one(event, now)
            event.score_breakdown = breakdown
            event.preference_score = breakdown.final
        return self.rank(events, prioritize_urgent)

    def _score_one(self, event: CanonicalEvent, now: datetime) -> ScoreBreakdown:
        nap = event.is_during_nap_time
        urgent = is_urgent(event, now, self.urgent_registration_window, self.urgent_capacity_ratio)
        try:
            breakdown = self.scorer.score(event, now)
        except CollaboratorUnavailableError as e:
            logger.warning(f"Preference model unavailable for '{event.title}', using neutral score: {e}")
            neutral = self.neutral_nap_score if nap else self.neutral_score
            return ScoreBreakdown(composite=neutral, final=neutral, used_neutral_fallback=True, is_urgent=urgent)

        penalty = self.nap_penalty if nap else 0.0
        final = round(clamp(breakdown.composite - penalty), 2)
        return breakdown.model_copy(update={"nap_penalty": penalty, "final": final, "is_urgent": urgent})

    @staticmethod
    def rank(events: List[CanonicalEvent], prioritize_urgent: bool = False) -> List[CanonicalEvent]:
        """
        Default: score descending, then start ascending. Urgent mode puts urgent
        events first in start order, then the rest in default order. Event id
        breaks any remaining tie.
        """
        def default_key(event: CanonicalEvent):
            return (-(event.preference_score or 0.0), event.start, event.id)

        if not prioritize_urgent:
            return sorted(events, key=default_key)

        urgent = [e for e in events if e.score_breakdown is not None and e.score_breakdown.is_urgent]
        rest = [e for e in events if not (e.score_breakdown is not None and e.score_breakdown.is_urgent)]
        return sorted(urgent, key=lambda e: (e.start, e.id)) + sorted(rest, key=default_key)
