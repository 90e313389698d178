import json
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytz
from dateutil import parser as dateutil_parser
from pydantic import ValidationError

from eventplanner.cleaning import clean_and_normalize_text, normalize_whitespace
from eventplanner.errors import CandidateRejectedError
from eventplanner.models import AgeRange, CandidateEvent, Capacity, Location, SocialProof
from eventplanner.utils import utc_now

logger = logging.getLogger(__name__)

FREE_MARKERS = ("free", "no cost", "no charge", "complimentary")

_DOLLAR_AMOUNT = re.compile(r'\$\s*(\d{1,3}(?:,\d{3})+|\d+)(?:\.(\d{1,2}))?')
_BARE_AMOUNT = re.compile(r'(?<![\w.])(\d{1,3}(?:,\d{3})+|\d+)(?:\.(\d{1,2}))?(?![\w.])')
_AGE_SPAN = re.compile(r'(\d+(?:\.\d+)?)\s*(?:-|–|to)\s*(\d+(?:\.\d+)?)')
_AGE_PLUS = re.compile(r'(\d+(?:\.\d+)?)\s*(?:\+|and up|and older|or older)')
_AGE_UNDER = re.compile(r'(?:under|up to|below)\s*(\d+(?:\.\d+)?)')


# --- Helper Functions ---

def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def _as_optional_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _parse_start(
    date_value: Any,
    time_value: Optional[str],
    timezone_name: str,
    now: datetime,
) -> Tuple[Optional[datetime], bool]:
    """
    Parses a scraped date (and optional separate time) into an aware UTC datetime.

    Returns (start, all_day). all_day is True when the source gave no time of day.
    A date without a year that would land more than a day in the past rolls to next year.
    """
    if isinstance(date_value, datetime):
        parsed = date_value
        has_time = True
        has_year = True
    elif isinstance(date_value, str) and date_value.strip():
        text = date_value.strip()
        if time_value:
            text = f"{text} {time_value.strip()}"
        local_now = now.astimezone(pytz.timezone(timezone_name))
        try:
            parsed = dateutil_parser.parse(text, default=datetime(local_now.year, 1, 1, 0, 0))
            probe = dateutil_parser.parse(text, default=datetime(local_now.year + 1, 1, 1, 1, 0))
        except (ValueError, OverflowError, TypeError) as e:
            logger.debug(f"Could not parse date string '{text}': {e}")
            return None, False
        has_time = parsed.hour == probe.hour
        has_year = parsed.year == probe.year
    else:
        return None, False

    if parsed.tzinfo is None or parsed.tzinfo.utcoffset(parsed) is None:
        tz = pytz.timezone(timezone_name)
        try:
            parsed = tz.localize(parsed, is_dst=None)
        except pytz.exceptions.InvalidTimeError:
            parsed = tz.localize(parsed, is_dst=False)

    start = parsed.astimezone(pytz.utc)
    if not has_year and start < now - timedelta(days=1):
        try:
            start = start.replace(year=start.year + 1)
        except ValueError:
            return None, False
    return start, not has_time


def _extract_cost(raw: Dict[str, Any]) -> Optional[float]:
    if raw.get("isFree") is True or raw.get("is_free") is True:
        return 0.0
    value = _first(raw, "cost", "price", "price_text", "priceText")
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value >= 0 else None

    text = str(value).strip().lower()
    # "Free parking; tickets $20" costs $20, and ranges cost their upper bound
    dollars = _amounts(_DOLLAR_AMOUNT, text)
    if any(amount > 0 for amount in dollars):
        return max(dollars)
    if dollars or any(marker in text for marker in FREE_MARKERS):
        return 0.0
    bare = _amounts(_BARE_AMOUNT, text)
    if not bare:
        logger.debug(f"Could not parse amount from price string: '{value}'")
        return None
    return max(bare)


def _amounts(pattern: re.Pattern, text: str) -> List[float]:
    amounts = []
    for whole, cents in pattern.findall(text):
        amounts.append(float(f"{whole.replace(',', '')}.{cents or '0'}"))
    return amounts


def _extract_age_range(raw: Dict[str, Any]) -> Optional[AgeRange]:
    value = _first(raw, "ageRange", "age_range", "ages")
    if value is None:
        return None
    if isinstance(value, dict):
        min_age = _first(value, "min", "min_age", "minAge")
        max_age = _first(value, "max", "max_age", "maxAge")
        if min_age is None and max_age is None:
            return None
        return AgeRange(min_age=min_age, max_age=max_age)

    text = str(value).lower()
    if "all ages" in text:
        return None
    span = _AGE_SPAN.search(text)
    if span:
        return AgeRange(min_age=float(span.group(1)), max_age=float(span.group(2)))
    plus = _AGE_PLUS.search(text)
    if plus:
        return AgeRange(min_age=float(plus.group(1)))
    under = _AGE_UNDER.search(text)
    if under:
        return AgeRange(max_age=float(under.group(1)))
    return None


def _extract_location(raw: Dict[str, Any]) -> Location:
    raw_location = raw.get("location")
    venue = _first(raw, "venue", "venue_name", "venueName")
    if isinstance(venue, dict):
        venue = venue.get("name")

    if isinstance(raw_location, str):
        return Location(address=clean_and_normalize_text(raw_location) or "", venue=clean_and_normalize_text(venue))
    if not isinstance(raw_location, dict):
        raw_location = {}

    coords = raw_location.get("coordinates", raw_location.get("geo")) or raw_location
    latitude = _first(coords, "latitude", "lat")
    longitude = _first(coords, "longitude", "lng", "lon")
    try:
        latitude = float(latitude) if latitude is not None else None
        longitude = float(longitude) if longitude is not None else None
    except (TypeError, ValueError):
        logger.debug(f"Could not parse coordinates: {coords}")
        latitude = longitude = None

    return Location(
        address=clean_and_normalize_text(_first(raw_location, "address", "full_address", "fullAddress")) or "",
        venue=clean_and_normalize_text(venue or _first(raw_location, "venue", "name")),
        latitude=latitude,
        longitude=longitude,
    )


def _extract_capacity(raw: Dict[str, Any]) -> Optional[Capacity]:
    value = raw.get("capacity")
    if isinstance(value, dict):
        available = _first(value, "available", "availableSpots")
        total = _first(value, "total", "totalSpots")
    else:
        available = _first(raw, "availableSpots", "available_spots")
        total = _first(raw, "totalSpots", "total_spots")
    if available is None and total is None:
        return None
    return Capacity(
        available=int(available) if available is not None else None,
        total=int(total) if total is not None else None,
    )


def _extract_social_proof(raw: Dict[str, Any]) -> Optional[SocialProof]:
    value = _first(raw, "socialProof", "social_proof")
    if not isinstance(value, dict):
        return None
    return SocialProof(
        rating=_first(value, "rating"),
        review_count=_first(value, "reviewCount", "review_count") or 0,
        interested_count=_first(value, "interestedCount", "interested_count") or 0,
    )


# --- Main Mapping Functions ---

def map_to_candidate(
    raw_data: Dict[str, Any],
    source: str,
    timezone_name: str = "America/Los_Angeles",
    now: Optional[datetime] = None,
) -> CandidateEvent:
    """
    Validates and coerces one scraped record into a CandidateEvent.

    Raises:
        CandidateRejectedError: the record has no title or no parseable date, or
            fails model validation. Rejected candidates are never retried.
    """
    if not raw_data or not isinstance(raw_data, dict):
        raise CandidateRejectedError("raw candidate is empty or not a dictionary", source=source)

    now = now or utc_now()
    source_name = normalize_whitespace(str(_first(raw_data, "source") or source or ""))
    title = clean_and_normalize_text(_first(raw_data, "title", "name"))
    start, all_day = _parse_start(
        _first(raw_data, "date", "startDate", "start", "start_date", "date_text"),
        _first(raw_data, "time", "startTime"),
        timezone_name,
        now,
    )

    missing = [name for name, value in (("source", source_name), ("title", title), ("date", start)) if not value]
    if missing:
        raise CandidateRejectedError(
            f"Essential data missing: {', '.join(missing)}",
            source=source_name,
            details={"title": title, "missing": missing},
        )

    opens_value = _first(raw_data, "registrationOpens", "registration_opens")
    registration_opens = None
    if opens_value is not None:
        registration_opens, _ = _parse_start(opens_value, None, timezone_name, now)

    try:
        return CandidateEvent(
            source=source_name,
            title=title,
            start=start,
            all_day=all_day,
            location=_extract_location(raw_data),
            age_range=_extract_age_range(raw_data),
            cost=_extract_cost(raw_data),
            registration_url=_first(raw_data, "registrationUrl", "registration_url", "url"),
            capacity=_extract_capacity(raw_data),
            description=clean_and_normalize_text(_first(raw_data, "description", "summary")) or "",
            raw_content=str(_first(raw_data, "rawContent", "raw_content", "raw_text") or ""),
            image_url=_first(raw_data, "imageUrl", "image_url", "image"),
            registration_opens=registration_opens,
            is_recurring=bool(_first(raw_data, "isRecurring", "is_recurring")),
            social_proof=_extract_social_proof(raw_data),
            source_event_id=_as_optional_str(_first(raw_data, "id", "source_event_id", "sourceEventId")),
            scraped_at=now,
        )
    except (ValidationError, TypeError, ValueError) as e:
        try:
            snapshot = json.dumps(raw_data, default=str)
        except (TypeError, ValueError):
            snapshot = repr(raw_data)
        logger.debug(f"Failed raw_data: {snapshot}")
        raise CandidateRejectedError(f"Candidate failed validation: {e}", source=source_name) from e


def map_candidates(
    raw_items: Iterable[Dict[str, Any]],
    default_source: str = "unknown",
    timezone_name: str = "America/Los_Angeles",
    now: Optional[datetime] = None,
) -> Tuple[List[CandidateEvent], List[CandidateRejectedError]]:
    """Maps a batch of raw records. Bad records are collected, never fatal to the batch."""
    candidates: List[CandidateEvent] = []
    rejected: List[CandidateRejectedError] = []
    for raw in raw_items:
        source = raw.get("source", default_source) if isinstance(raw, dict) else default_source
        try:
            candidates.append(map_to_candidate(raw, source, timezone_name=timezone_name, now=now))
        except CandidateRejectedError as e:
            logger.warning(f"Dropping candidate from {source}: {e.message}")
            rejected.append(e)
    logger.info(f"Mapped {len(candidates)} candidates, rejected {len(rejected)}.")
    return candidates, rejected
