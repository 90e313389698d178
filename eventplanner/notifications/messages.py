"""Approval request text for both channels."""

from datetime import datetime
from typing import Optional

from eventplanner.models import CanonicalEvent

SMS_LOCATION_LIMIT = 40


def _cost_line(event: CanonicalEvent) -> str:
    if event.is_free:
        return "Cost: FREE"
    if event.cost is None:
        return "Cost: unknown - check before booking"
    return f"COST: ${event.cost:g} - REQUIRES PAYMENT"


def _when(event: CanonicalEvent, tz) -> str:
    local = event.start.astimezone(tz)
    if event.all_day:
        return local.strftime("%a %b %d")
    return local.strftime("%a %b %d, %I:%M %p").replace(" 0", " ")


def _weeks_away(event: CanonicalEvent, now: datetime) -> int:
    return max(0, (event.start - now).days // 7)


def _ages(event: CanonicalEvent) -> str:
    low = event.age_range.min_age if event.age_range.min_age is not None else 0
    high = event.age_range.max_age if event.age_range.max_age is not None else 18
    return f"{low:g}-{high:g}"


def _truncate(text: Optional[str], limit: int) -> str:
    text = text or ""
    return text if len(text) <= limit else text[: limit - 3] + "..."


def build_subject(event: CanonicalEvent, urgent: bool = False) -> str:
    subject = f"New Family Event: {event.title}"
    if event.is_free:
        subject += " (FREE)"
    elif event.cost is not None:
        subject += f" (${event.cost:g})"
    if urgent:
        subject = f"URGENT: {subject}"
    return subject


def build_sms_body(event: CanonicalEvent, tz, now: datetime) -> str:
    lines = ["New family event found!", event.title]
    if event.social_proof is not None and event.social_proof.rating is not None:
        lines[-1] += f" ({event.social_proof.rating:.1f} stars)"
    lines.append(f"Date: {_when(event, tz)} ({_weeks_away(event, now)} weeks away)")
    lines.append(f"Location: {_truncate(event.location.venue or event.location.address, SMS_LOCATION_LIMIT)}")
    lines.append(_cost_line(event))
    if event.age_range is not None and not event.age_range.is_empty:
        lines.append(f"Ages: {_ages(event)}")
    lines.append("")
    if event.is_free:
        lines.append("Reply YES to book or NO to skip")
    else:
        lines.append("Reply YES to get the registration link or NO to skip")
    return "\n".join(lines)


def build_email_body(event: CanonicalEvent, tz, now: datetime) -> str:
    lines = [
        "Hi! I found a new event the family might enjoy.",
        "",
        event.title,
        f"When: {_when(event, tz)} ({_weeks_away(event, now)} weeks away)",
        f"Where: {event.location.venue or event.location.address}",
        _cost_line(event),
    ]
    if event.age_range is not None and not event.age_range.is_empty:
        lines.append(f"Ages: {_ages(event)}")
    if event.description:
        lines.extend(["", _truncate(event.description, 500)])
    if event.registration_url:
        lines.extend(["", f"Details: {event.registration_url}"])
    lines.append("")
    if event.is_free:
        lines.append("Reply YES and I'll book it automatically, or NO to skip.")
    else:
        lines.append("Reply YES and I'll send you the registration link, or NO to skip.")
    return "\n".join(lines)
