"""
Household preference model learned from approve/reject/attend feedback.

The model is intentionally simple and explainable: category and keyword
tallies from positive and negative interactions, source reputation, cost
tolerance and favourite days/hours. Predictions are in [0, 1].
"""

import logging
import re
import threading
import time as time_module
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

import pytz
from pymongo.errors import PyMongoError

from eventplanner.errors import PreferenceModelUnavailableError
from eventplanner.models import CanonicalEvent, Interaction, InteractionType

logger = logging.getLogger(__name__)

POSITIVE_INTERACTIONS = {t.value for t in (InteractionType.APPROVED, InteractionType.REGISTERED, InteractionType.ATTENDED)}
NEGATIVE_INTERACTIONS = {t.value for t in (InteractionType.REJECTED, InteractionType.CANCELLED)}

KEYWORD_STOP_WORDS = frozenset({
    "the", "and", "for", "are", "with", "will", "this", "that", "from", "they", "has", "have",
    "can", "your", "you", "our", "all", "about", "event", "program", "activity", "time", "day",
    "week", "month", "year",
})

CATEGORY_RULES = (
    ("baby", ("baby", "infant")),
    ("toddler", ("toddler", "ages 2", "ages 3")),
    ("kids", ("kid", "child", "ages 4", "ages 5-")),
    ("family", ("family", "all ages")),
    ("reading", ("story", "reading", "book")),
    ("arts_crafts", ("art", "craft", "paint", "draw")),
    ("music_dance", ("music", "sing", "dance")),
    ("science", ("science", "stem", "experiment")),
    ("outdoor", ("outdoor", "nature", "hike", "park")),
    ("sports", ("sport", "swim", "play")),
    ("entertainment", ("movie", "film", "show")),
    ("educational", ("workshop", "class", "learn")),
)
VENUE_RULES = (
    ("museum", "museum"),
    ("library", "library"),
    ("park", "park"),
    ("community", "community"),
)

_WORD = re.compile(r"\b\w{3,}\b")


def categorize(title: str, description: str, venue: str, start: Optional[datetime],
               cost: Optional[float], tz) -> List[str]:
    title_text = (title or "").lower()
    venue_text = (venue or "").lower()
    categories = [name for name, needles in CATEGORY_RULES if any(n in title_text for n in needles)]
    categories.extend(name for name, needle in VENUE_RULES if needle in venue_text)

    if start is not None:
        local = start.astimezone(tz)
        categories.append("morning" if local.hour < 12 else "afternoon" if local.hour < 17 else "evening")
        categories.append("weekend" if local.weekday() >= 5 else "weekday")

    if cost == 0:
        categories.append("free")
    elif cost is not None and cost < 20:
        categories.append("low_cost")
    elif cost is not None:
        categories.append("paid")
    return categories


def extract_keywords(title: str, description: str) -> List[str]:
    words = _WORD.findall(f"{title} {description or ''}".lower())
    seen: Dict[str, None] = {}
    for word in words:
        if word not in KEYWORD_STOP_WORDS:
            seen.setdefault(word, None)
    return list(seen)


@dataclass
class PreferenceProfile:
    total_interactions: int = 0
    category_preferences: Dict[str, float] = field(default_factory=dict)
    source_preferences: Dict[str, float] = field(default_factory=dict)
    positive_keywords: List[str] = field(default_factory=list)
    negative_keywords: List[str] = field(default_factory=list)
    free_event_preference: float = 0.9
    max_accepted_cost: float = 25.0
    preferred_hours: Dict[int, int] = field(default_factory=dict)
    preferred_days: Dict[int, int] = field(default_factory=dict)

    @property
    def confidence(self) -> float:
        return min(self.total_interactions / 50, 1.0)

    @classmethod
    def default(cls) -> "PreferenceProfile":
        return cls(
            category_preferences={"family": 0.8, "free": 0.9, "weekend": 0.7, "educational": 0.6, "outdoor": 0.6},
            positive_keywords=["family", "kids", "fun", "educational", "interactive"],
            preferred_hours={10: 3, 11: 3, 14: 2, 15: 2},
            preferred_days={5: 3, 6: 2},
        )


class PreferenceModel:
    """
    Learns a PreferenceProfile from stored interactions and predicts interest.

    The learned profile is cached for `cache_seconds`. If the interaction
    history cannot be read, `predict` raises PreferenceModelUnavailableError.
    """

    def __init__(self, store, timezone_name: str = "America/Los_Angeles", cache_seconds: float = 3600,
                 clock: Callable[[], float] = time_module.monotonic):
        self.store = store
        self.tz = pytz.timezone(timezone_name)
        self.cache_seconds = cache_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._profile: Optional[PreferenceProfile] = None
        self._loaded_at: Optional[float] = None

    def invalidate(self) -> None:
        with self._lock:
            self._profile = None

    def profile(self) -> PreferenceProfile:
        with self._lock:
            now = self._clock()
            if self._profile is not None and self._loaded_at is not None and now - self._loaded_at < self.cache_seconds:
                return self._profile
            try:
                interactions = self.store.list_interactions()
            except PyMongoError as e:
                raise PreferenceModelUnavailableError(f"Interaction history unavailable: {e}") from e
            self._profile = self.learn(interactions)
            self._loaded_at = now
            logger.debug(f"Learned preferences from {self._profile.total_interactions} interactions")
            return self._profile

    def learn(self, interactions: Iterable[Interaction]) -> PreferenceProfile:
        interactions = list(interactions)
        if not interactions:
            return PreferenceProfile.default()

        positive = [i for i in interactions if i.interaction_type in POSITIVE_INTERACTIONS]
        negative = [i for i in interactions if i.interaction_type in NEGATIVE_INTERACTIONS]

        category_scores: Counter = Counter()
        keyword_scores: Counter = Counter()
        source_scores: Counter = Counter()
        hours: Counter = Counter()
        days: Counter = Counter()
        for interaction, weight, keyword_weight in (
            [(i, 2, 1.0) for i in positive] + [(i, -1, -0.5) for i in negative]
        ):
            for category in categorize(interaction.title, interaction.description, interaction.venue or "",
                                       interaction.start, interaction.cost, self.tz):
                category_scores[category] += weight
            for keyword in extract_keywords(interaction.title, interaction.description):
                keyword_scores[keyword] += keyword_weight
            if interaction.source:
                source_scores[interaction.source] += weight
            if weight > 0 and interaction.start is not None:
                local = interaction.start.astimezone(self.tz)
                hours[local.hour] += 1
                days[local.weekday()] += 1

        max_score = max(list(category_scores.values()) + [1])
        min_score = min(list(category_scores.values()) + [0])
        spread = (max_score - min_score) or 1
        categories = {name: max(0.0, (score - min_score) / spread) for name, score in category_scores.items()}

        ranked = keyword_scores.most_common()
        positive_keywords = [word for word, score in ranked[:10] if score > 0]
        negative_keywords = [word for word, score in sorted(ranked, key=lambda item: item[1])[:10] if score < 0]

        positive_costs = [i.cost for i in positive if i.cost is not None]
        free_positive = sum(1 for cost in positive_costs if cost == 0)
        free_negative = sum(1 for i in negative if i.cost == 0)

        return PreferenceProfile(
            total_interactions=len(interactions),
            category_preferences=categories,
            source_preferences=dict(source_scores),
            positive_keywords=positive_keywords,
            negative_keywords=negative_keywords,
            free_event_preference=free_positive / max(free_positive + free_negative, 1),
            max_accepted_cost=max(positive_costs + [0.0]),
            preferred_hours=dict(hours),
            preferred_days=dict(days),
        )

    def predict(self, event: CanonicalEvent) -> float:
        profile = self.profile()
        categories = categorize(event.title, event.description, event.location.venue or event.location.address,
                                event.start, event.cost, self.tz)
        keywords = extract_keywords(event.title, event.description)

        score = 0.5
        known = [profile.category_preferences[c] for c in categories if c in profile.category_preferences]
        if known:
            score += (sum(known) / len(known) - 0.5) * 0.3

        score += 0.05 * sum(1 for k in keywords if k in profile.positive_keywords)
        score -= 0.05 * sum(1 for k in keywords if k in profile.negative_keywords)

        for source in event.sources:
            if source in profile.source_preferences:
                score += max(-1.0, min(1.0, profile.source_preferences[source] / 10)) * 0.1
                break

        if event.cost == 0:
            score += (profile.free_event_preference - 0.5) * 0.2
        elif event.cost is not None and event.cost > profile.max_accepted_cost:
            score -= 0.3

        local = event.start.astimezone(self.tz)
        if profile.preferred_hours.get(local.hour):
            score += 0.05
        if profile.preferred_days.get(local.weekday()):
            score += 0.05
        return max(0.0, min(1.0, score))
