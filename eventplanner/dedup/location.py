"""
Address normalization and comparison.

Addresses from different scrapers spell the same venue differently
("Golden Gate Park" vs "GG Park, 501 Stanyan Street"), so comparison goes
through a canonical alias table before falling back to word overlap.
"""

import math
import re
from typing import Dict, List, Optional, Tuple

from eventplanner.models import Location

STREET_ABBREVIATIONS: Dict[str, List[str]] = {
    "st": ["street", "str"],
    "ave": ["avenue", "av"],
    "rd": ["road"],
    "blvd": ["boulevard"],
    "dr": ["drive"],
    "ln": ["lane"],
    "pl": ["place"],
    "ct": ["court"],
    "cir": ["circle"],
    "wy": ["way"],
    "pkwy": ["parkway"],
    "hwy": ["highway"],
}

VENUE_ALIASES: Dict[str, List[str]] = {
    "golden gate park": ["gg park", "golden gate", "ggp"],
    "yerba buena gardens": ["ybg", "yerba buena", "yerba buena center"],
    "california academy of sciences": ["cal academy", "cas", "academy of sciences"],
    "exploratorium": ["pier 15", "the exploratorium"],
    "san francisco zoo": ["sf zoo", "the zoo", "zoo"],
    "san francisco public library": ["sfpl", "main library", "sf public library"],
    "childrens creativity museum": ["creativity museum", "zeum"],
    "crissy field": ["crissy", "presidio crissy field"],
}

# Coordinates closer than this are the same venue.
SAME_VENUE_METERS = 100.0

_ZIP = re.compile(r"\b\d{5}(?:-\d{4})?\b")
_NON_WORD = re.compile(r"[^\w\s]")
_STREET_NUMBER = re.compile(r"^\s*(\d+)\b")

_ABBREVIATION_LOOKUP = {
    variant: short for short, variants in STREET_ABBREVIATIONS.items() for variant in variants
}


def normalize_address(address: Optional[str]) -> str:
    """Lower-cases, drops ZIP codes and punctuation, and abbreviates street suffixes."""
    if not address:
        return ""
    text = _ZIP.sub(" ", address.lower())
    text = _NON_WORD.sub(" ", text)
    words = [_ABBREVIATION_LOOKUP.get(word, word) for word in text.split()]
    return " ".join(words)


def canonical_location(address: Optional[str]) -> Optional[str]:
    """Returns the canonical venue name if the address names a known venue, else None."""
    normalized = normalize_address(address)
    if not normalized:
        return None
    padded = f" {normalized} "
    for canonical, aliases in VENUE_ALIASES.items():
        if f" {canonical} " in padded:
            return canonical
    for canonical, aliases in VENUE_ALIASES.items():
        for alias in aliases:
            if f" {normalize_address(alias)} " in padded:
                return canonical
    return None


def venue_token(location: Location) -> str:
    """Coarse venue key for fingerprints: canonical venue, else the first address segment."""
    for text in (location.venue, location.address):
        canonical = canonical_location(text)
        if canonical:
            return canonical.replace(" ", "-")
    for text in (location.venue, location.address):
        if text:
            first_segment = text.split(",")[0]
            normalized = normalize_address(first_segment)
            if normalized:
                return normalized.replace(" ", "-")
    return "unknown-venue"


def _street_number(address: str) -> Optional[str]:
    match = _STREET_NUMBER.match(address)
    return match.group(1) if match else None


def compare_addresses(first: Optional[str], second: Optional[str]) -> float:
    """Similarity of two free-text addresses in [0, 1]."""
    if not first or not second:
        return 0.0
    norm_a = normalize_address(first)
    norm_b = normalize_address(second)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0

    canonical_a = canonical_location(first)
    canonical_b = canonical_location(second)
    if canonical_a and canonical_a == canonical_b:
        return 0.95

    if norm_a in norm_b or norm_b in norm_a:
        return 0.8

    words_a = {word for word in norm_a.split() if len(word) > 2}
    words_b = {word for word in norm_b.split() if len(word) > 2}
    if not words_a or not words_b:
        return 0.0
    overlap = len(words_a & words_b) / max(len(words_a), len(words_b))

    number_a = _street_number(norm_a)
    if number_a and number_a == _street_number(norm_b) and overlap > 0.3:
        return min(0.9, overlap + 0.3)
    return overlap


def haversine_meters(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    lat1, lon1 = map(math.radians, a)
    lat2, lon2 = map(math.radians, b)
    h = math.sin((lat2 - lat1) / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin((lon2 - lon1) / 2) ** 2
    return 2 * 6371000.0 * math.asin(math.sqrt(h))


def compare_locations(first: Location, second: Location) -> float:
    """Location proximity: coordinates when both have them, else the best text comparison."""
    if first.has_coordinates and second.has_coordinates:
        distance = haversine_meters((first.latitude, first.longitude), (second.latitude, second.longitude))
        if distance <= SAME_VENUE_METERS:
            return 1.0
        # Fall through to text; geocoders disagree by a block or two.
    text_scores = [
        compare_addresses(a, b)
        for a in (first.address, first.venue)
        for b in (second.address, second.venue)
        if a and b
    ]
    return max(text_scores) if text_scores else 0.0
