"""
Independent eligibility checks.

Each check is a pure function returning a CheckResult; none of them log or
touch the store. The engine decides how to run, combine and report them.
"""

import math
import re
from datetime import datetime, time, timedelta
from typing import AbstractSet, Optional

from eventplanner.collaborators import AgeVerdict
from eventplanner.household import HouseholdConfig
from eventplanner.models import CanonicalEvent, CheckName, CheckResult

DEFAULT_MIN_AGE = 0
DEFAULT_MAX_AGE = 18

OUTDOOR_KEYWORDS = (
    "park", "outdoor", "garden", "beach", "playground", "trail", "hiking", "picnic",
    "festival", "farmers market", "zoo", "walking", "running", "cycling", "sports", "field",
)
INDOOR_KEYWORDS = (
    "library", "museum", "theater", "studio", "classroom", "center", "hall",
    "auditorium", "gallery", "planetarium",
)

_CLOCK_TIME = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*([AaPp][Mm])\s*$")


def _money(amount: float) -> str:
    return f"{amount:.0f}" if float(amount).is_integer() else f"{amount:.2f}"


def _years(value: float) -> str:
    return f"{value:g}"


# --- age ---

def parse_clock_time(text: Optional[str]) -> Optional[time]:
    """Parses "4:30 PM" style times. Returns None for ALL_DAY or anything unparseable."""
    if not text or text.strip().upper() == "ALL_DAY":
        return None
    match = _CLOCK_TIME.match(text)
    if not match:
        return None
    hour, minute, meridiem = int(match.group(1)), int(match.group(2)), match.group(3).upper()
    if not (1 <= hour <= 12 and 0 <= minute <= 59):
        return None
    if meridiem == "PM" and hour != 12:
        hour += 12
    elif meridiem == "AM" and hour == 12:
        hour = 0
    return time(hour, minute)


def apply_extracted_time(event: CanonicalEvent, extracted: Optional[str], household: HouseholdConfig) -> bool:
    """Moves the event start to the extracted local time of day. Returns True if the start changed."""
    clock = parse_clock_time(extracted)
    if clock is None:
        return False
    tz = household.tz
    local_day = event.start.astimezone(tz).date()
    local = tz.localize(datetime.combine(local_day, clock))
    event.start = local
    event.all_day = False
    event.extracted_time = extracted
    return True


def check_age(event: CanonicalEvent, household: HouseholdConfig, now: datetime,
              verdict: Optional[AgeVerdict] = None) -> CheckResult:
    if verdict is not None:
        if verdict.suitable:
            return CheckResult(check=CheckName.AGE, passed=True,
                               reason=f"Age appropriate: {verdict.reason}" if verdict.reason else "Age appropriate",
                               details={"source": "classifier"})
        return CheckResult(check=CheckName.AGE, passed=False,
                           reason=f"Age inappropriate: {verdict.reason}" if verdict.reason else "Age inappropriate",
                           details={"source": "classifier"})

    age_range = event.age_range
    if age_range is None or age_range.is_empty:
        return CheckResult(check=CheckName.AGE, passed=True, reason="No age restrictions")

    ages = household.child_ages(now)
    min_age = age_range.min_age if age_range.min_age is not None else DEFAULT_MIN_AGE
    max_age = age_range.max_age if age_range.max_age is not None else DEFAULT_MAX_AGE
    suitable = [age for age in ages if min_age <= age <= max_age]
    family = ", ".join(str(age) for age in ages) or "none"
    span = f"{_years(min_age)}-{_years(max_age)} years"
    if suitable:
        return CheckResult(check=CheckName.AGE, passed=True,
                           reason=f"Age appropriate ({span}, family: {family} years)",
                           details={"source": "declared_range"})
    return CheckResult(check=CheckName.AGE, passed=False,
                       reason=f"Age inappropriate ({span} vs family: {family} years)",
                       details={"source": "declared_range"})


# --- time range ---

def check_time_range(event: CanonicalEvent, household: HouseholdConfig, now: datetime,
                     past_grace: timedelta = timedelta(hours=1),
                     buffer: timedelta = timedelta(hours=1)) -> CheckResult:
    start = event.start
    if start is None:
        return CheckResult(check=CheckName.TIME_RANGE, passed=False, reason="Invalid date")

    local_year = start.astimezone(household.tz).year
    this_year = now.astimezone(household.tz).year
    if not this_year <= local_year <= this_year + 2:
        return CheckResult(check=CheckName.TIME_RANGE, passed=False, reason=f"Invalid year ({local_year})")

    if start < now - past_grace:
        return CheckResult(check=CheckName.TIME_RANGE, passed=False, reason="Event is in the past")

    until = start - now
    days_away = max(0, math.ceil(until.total_seconds() / 86400))
    min_lead = timedelta(days=household.min_advance_days)
    max_lead = timedelta(days=household.max_advance_months * 30)

    if until + buffer < min_lead:
        return CheckResult(
            check=CheckName.TIME_RANGE, passed=False,
            reason=f"Too soon ({days_away} days away, minimum {household.min_advance_days} days required)",
            details={"days_away": days_away},
        )
    if until > max_lead:
        return CheckResult(
            check=CheckName.TIME_RANGE, passed=False,
            reason=f"Too far ({days_away} days away, maximum {household.max_advance_months} months)",
            details={"days_away": days_away},
        )
    return CheckResult(check=CheckName.TIME_RANGE, passed=True,
                       reason=f"Within booking window ({days_away} days away)",
                       details={"days_away": days_away})


# --- schedule ---

def check_schedule(event: CanonicalEvent, household: HouseholdConfig) -> CheckResult:
    """
    Weekday and weekend start floors. Weekend events inside the nap window pass
    with `nap_time` set in details, which the scorer turns into a penalty.
    """
    local = event.start.astimezone(household.tz)
    day_name = local.strftime("%A")
    weekend = local.weekday() >= 5

    event_time = local.time().replace(second=0, microsecond=0)
    synthetic = False
    if event.all_day or (event_time == time(0, 0) and not event.extracted_time):
        event_time = household.all_day_weekend_time if weekend else household.all_day_weekday_time
        synthetic = True

    details = {"day": day_name, "time": event_time.strftime("%H:%M"), "weekend": weekend,
               "synthetic_time": synthetic, "nap_time": False}

    floor = household.weekend_earliest_time if weekend else household.weekday_earliest_time
    if event_time < floor:
        kind = "weekend" if weekend else "weekday"
        return CheckResult(
            check=CheckName.SCHEDULE, passed=False,
            reason=(f"Schedule conflict on {day_name}: {event_time.strftime('%H:%M')} is before "
                    f"earliest {kind} time {floor.strftime('%H:%M')}"),
            details=details,
        )

    if weekend and household.weekend_nap_start <= event_time <= household.weekend_nap_end:
        details["nap_time"] = True
        return CheckResult(
            check=CheckName.SCHEDULE, passed=True,
            reason=(f"{day_name} during nap time ({household.weekend_nap_start.strftime('%H:%M')}-"
                    f"{household.weekend_nap_end.strftime('%H:%M')}) - ranked lower"),
            details=details,
        )
    return CheckResult(check=CheckName.SCHEDULE, passed=True,
                       reason=f"Fits {day_name} schedule", details=details)


# --- budget, capacity, novelty ---

def check_budget(event: CanonicalEvent, household: HouseholdConfig) -> CheckResult:
    if event.cost is None:
        return CheckResult(check=CheckName.BUDGET, passed=True, reason="Cost unknown")
    if event.cost == 0:
        return CheckResult(check=CheckName.BUDGET, passed=True, reason="Free event")
    if event.cost > household.max_cost_per_event:
        return CheckResult(
            check=CheckName.BUDGET, passed=False,
            reason=f"Too expensive (${_money(event.cost)} > ${_money(household.max_cost_per_event)} budget)",
            details={"cost": event.cost, "ceiling": household.max_cost_per_event},
        )
    return CheckResult(check=CheckName.BUDGET, passed=True,
                       reason=f"Within budget (${_money(event.cost)})")


def check_capacity(event: CanonicalEvent) -> CheckResult:
    capacity = event.capacity
    if capacity is None or capacity.available is None:
        return CheckResult(check=CheckName.CAPACITY, passed=True, reason="No capacity restrictions")
    total = capacity.total if capacity.total is not None else "?"
    if capacity.available <= 0:
        return CheckResult(check=CheckName.CAPACITY, passed=False,
                           reason=f"No available spots (0/{total} available)")
    return CheckResult(check=CheckName.CAPACITY, passed=True,
                       reason=f"{capacity.available}/{total} spots available")


def check_novelty(event: CanonicalEvent, attended_event_ids: AbstractSet[str]) -> CheckResult:
    if event.previously_attended or event.id in attended_event_ids:
        return CheckResult(check=CheckName.NOVELTY, passed=False, reason="Previously attended")
    return CheckResult(check=CheckName.NOVELTY, passed=True, reason="New event")


# --- weather ---

def is_outdoor_event(event: CanonicalEvent) -> bool:
    text = " ".join([event.title, event.description, event.location.address or "",
                     event.location.venue or ""]).lower()
    if any(keyword in text for keyword in INDOOR_KEYWORDS):
        return False
    if any(keyword in text for keyword in OUTDOOR_KEYWORDS):
        return True
    return False


def check_weather(event: CanonicalEvent, weather_service, household: HouseholdConfig) -> CheckResult:
    """Advisory: any failure to get a forecast passes the event."""
    if not is_outdoor_event(event):
        return CheckResult(check=CheckName.WEATHER, passed=True, reason="Indoor event")
    if weather_service is None:
        return CheckResult(check=CheckName.WEATHER, passed=True,
                           reason="Weather check failed - defaulting to allow",
                           details={"error": "no weather service"})

    day = event.start.astimezone(household.tz).date()
    try:
        forecast = weather_service.get_forecast(event.location, day)
    except Exception as e:
        return CheckResult(check=CheckName.WEATHER, passed=True,
                           reason="Weather check failed - defaulting to allow",
                           details={"error": str(e)})

    summary = (f"{forecast.condition.lower()}, {forecast.temperature:.0f}°F, "
               f"precipitation: {forecast.precipitation_chance:.0f}%")
    details = {"forecast": forecast.model_dump(mode="json")}
    if not forecast.is_outdoor_friendly:
        return CheckResult(check=CheckName.WEATHER, passed=False,
                           reason=f"Weather unsuitable for outdoor event ({summary})", details=details)
    return CheckResult(check=CheckName.WEATHER, passed=True,
                       reason=f"Weather suitable ({summary})", details=details)
