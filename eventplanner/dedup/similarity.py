"""
Scoring functions for candidate/canonical event pairs.

This module does not decide merges; it only computes scores.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from eventplanner.cleaning import significant_words
from eventplanner.dedup.location import compare_locations
from eventplanner.models import AgeRange, Location


@dataclass(frozen=True)
class SimilarityWeights:
    title: float = 0.40
    location: float = 0.25
    date: float = 0.20
    time: float = 0.10
    age: float = 0.05


@dataclass(frozen=True)
class SimilarityBreakdown:
    title: float
    location: float
    date: float
    time: float
    age: float
    total: float


# ------------------ STRING HELPERS ------------------ #

def levenshtein_distance(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def levenshtein_similarity(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / longest


def jaccard_similarity(a: str, b: str) -> float:
    tokens_a = set(a.split())
    tokens_b = set(b.split())
    if not tokens_a and not tokens_b:
        return 1.0
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def title_similarity(first: str, second: str) -> float:
    a = significant_words(first)
    b = significant_words(second)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return 0.7 * levenshtein_similarity(a, b) + 0.3 * jaccard_similarity(a, b)


# ------------------ FIELD SCORES ------------------ #

def date_proximity(first: datetime, second: datetime) -> float:
    hours = abs((first - second).total_seconds()) / 3600.0
    if hours <= 1:
        return 1.0
    return max(0.0, 1.0 - hours / 24.0)


def time_of_day_proximity(first: datetime, second: datetime, first_all_day: bool = False,
                          second_all_day: bool = False) -> float:
    if first_all_day or second_all_day:
        return 0.5
    minutes_a = first.hour * 60 + first.minute
    minutes_b = second.hour * 60 + second.minute
    diff = abs(minutes_a - minutes_b)
    diff = min(diff, 1440 - diff)
    if diff <= 30:
        return 1.0
    return max(0.0, 1.0 - diff / 480.0)


def age_range_similarity(first: Optional[AgeRange], second: Optional[AgeRange]) -> float:
    if first is None or second is None or first.is_empty or second.is_empty:
        return 0.5
    min_a, max_a = first.min_age or 0, first.max_age if first.max_age is not None else 18
    min_b, max_b = second.min_age or 0, second.max_age if second.max_age is not None else 18
    overlap = max(0.0, min(max_a, max_b) - max(min_a, min_b))
    union = max(max_a, max_b) - min(min_a, min_b)
    if union <= 0:
        return 1.0
    return overlap / union


# ------------------ COMBINED ------------------ #

def event_similarity(
    title_a: str, start_a: datetime, location_a: Location, age_a: Optional[AgeRange], all_day_a: bool,
    title_b: str, start_b: datetime, location_b: Location, age_b: Optional[AgeRange], all_day_b: bool,
    weights: SimilarityWeights = SimilarityWeights(),
) -> SimilarityBreakdown:
    """
    Weighted similarity of two sightings in [0, 1].

    A near-perfect title, location and date together earn a 0.1 bonus, capped at 1.0.
    """
    title = title_similarity(title_a, title_b)
    location = compare_locations(location_a, location_b)
    date = date_proximity(start_a, start_b)
    time_score = time_of_day_proximity(start_a, start_b, all_day_a, all_day_b)
    age = age_range_similarity(age_a, age_b)

    total = (
        weights.title * title
        + weights.location * location
        + weights.date * date
        + weights.time * time_score
        + weights.age * age
    )
    if title > 0.95 and location > 0.9 and date > 0.9:
        total += 0.1
    return SimilarityBreakdown(
        title=title, location=location, date=date, time=time_score, age=age,
        total=round(min(1.0, total), 4),
    )
