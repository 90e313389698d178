"""
Payment safety guard.

Automation may only ever complete free registrations. The guard refuses paid
or unknown-cost events before a browser exists, scans every rendered page for
payment signals, refuses sensitive form data, and trips a persisted emergency
stop once too many serious violations have piled up.
"""

import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from bs4 import BeautifulSoup

from eventplanner.errors import EmergencyStopError, PaymentViolationError
from eventplanner.models import (
    SEVERITY_RANK, CanonicalEvent, PaymentViolation, ViolationSeverity, ViolationType,
)
from eventplanner.sentry_setup import report_safety_alarm
from eventplanner.store import EMERGENCY_STOP_FLAG
from eventplanner.utils import utc_now

logger = logging.getLogger(__name__)

PAYMENT_KEYWORDS = (
    "credit card", "payment", "checkout", "billing", "purchase", "visa", "mastercard", "amex",
    "paypal", "stripe", "square checkout", "cvv", "security code", "expiry", "expiration", "card number",
)
PAYMENT_SELECTORS = (
    'input[type="number"][name*="card"]',
    'input[name*="credit"]',
    'input[name*="payment"]',
    'input[placeholder*="card"]',
    'input[placeholder*="payment"]',
    'input[id*="card"]',
    'input[id*="payment"]',
    ".payment-form",
    ".credit-card",
    '[class*="payment"]',
    '[class*="checkout"]',
    "stripe-card",
    'iframe[src*="stripe"]',
    'iframe[src*="paypal"]',
)
PRICE_SELECTORS = (
    ".price", ".cost", ".amount", ".total", ".fee",
    '[class*="price"]', '[class*="cost"]', '[class*="amount"]', '[class*="total"]', '[class*="fee"]',
)
SENSITIVE_FIELD_MARKERS = ("card", "credit", "payment", "cvv", "ssn", "account")

PRICE_PATTERN = re.compile(r"\$\s?(\d+(?:\.\d{2})?)")
_HIDDEN_STYLE = re.compile(r"display\s*:\s*none|visibility\s*:\s*hidden", re.IGNORECASE)


def _keyword_pattern(keyword: str) -> re.Pattern:
    return re.compile(r"\b" + re.escape(keyword) + r"\b", re.IGNORECASE)


_KEYWORD_PATTERNS = [(keyword, _keyword_pattern(keyword)) for keyword in PAYMENT_KEYWORDS]


def _hides_itself(tag) -> bool:
    attrs = tag.attrs or {}
    if "hidden" in attrs or attrs.get("aria-hidden") == "true" or attrs.get("type") == "hidden":
        return True
    return bool(_HIDDEN_STYLE.search(attrs.get("style", "") or ""))


def _is_hidden(element) -> bool:
    return _hides_itself(element) or any(_hides_itself(parent) for parent in element.parents)


def _visible_text(soup: BeautifulSoup) -> str:
    for tag in soup.find_all(["script", "style", "noscript", "template"]):
        tag.decompose()
    for tag in soup.find_all(_hides_itself):
        if not tag.decomposed:
            tag.decompose()
    return " ".join(soup.get_text(" ").split())


def find_prices(text: str) -> List[float]:
    return [amount for amount in (float(match) for match in PRICE_PATTERN.findall(text or "")) if amount > 0]


def _first_visible_price(soup: BeautifulSoup) -> Optional[Dict[str, Any]]:
    for selector in PRICE_SELECTORS:
        for element in soup.select(selector):
            if _is_hidden(element):
                continue
            prices = find_prices(element.get_text(" "))
            if prices:
                return {"type": ViolationType.PRICE_DETECTED.value, "selector": selector,
                        "amount": prices[0], "text": element.get_text(" ", strip=True)[:100]}
    return None


class PaymentGuard:
    def __init__(self, store, violation_threshold: int = 3, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.violation_threshold = violation_threshold
        self.clock = clock

    # --- emergency stop ---

    def is_stopped(self) -> bool:
        flag = self.store.get_flag(EMERGENCY_STOP_FLAG)
        return bool(flag and flag.get("value"))

    def ensure_not_stopped(self) -> None:
        flag = self.store.get_flag(EMERGENCY_STOP_FLAG)
        if flag and flag.get("value"):
            raise EmergencyStopError(
                f"Registration automation is under emergency stop: {flag.get('reason') or 'no reason recorded'}",
                {"set_at": str(flag.get("set_at"))},
            )

    def clear_emergency_stop(self) -> bool:
        """Operator action: lifts the stop and acknowledges the violations that tripped it."""
        acknowledged = self.store.acknowledge_violations()
        cleared = self.store.clear_flag(EMERGENCY_STOP_FLAG)
        logger.warning(f"Emergency stop cleared (was set: {cleared}, {acknowledged} violations acknowledged)")
        return cleared

    # --- violations ---

    def record_violation(self, violation_type: ViolationType, severity: ViolationSeverity,
                         event: Optional[CanonicalEvent], details: Dict[str, Any]) -> PaymentViolation:
        """
        Persists the violation and escalates it. Engages the emergency stop and
        raises EmergencyStopError once the count of serious violations reaches
        the threshold.
        """
        violation = PaymentViolation(
            violation_type=violation_type,
            severity=severity,
            event_id=event.id if event else None,
            event_title=event.title if event else None,
            details=details,
            detected_at=self.clock(),
        )
        self.store.insert_payment_violation(violation)

        message = f"PAYMENT VIOLATION [{violation.severity}] {violation.violation_type}: {event.title if event else 'n/a'} {details}"
        if SEVERITY_RANK[violation.severity] >= SEVERITY_RANK[ViolationSeverity.CRITICAL.value]:
            logger.critical(message)
            report_safety_alarm(message, violation_id=violation.id, event_id=violation.event_id,
                                violation_type=violation.violation_type)
        elif SEVERITY_RANK[violation.severity] >= SEVERITY_RANK[ViolationSeverity.HIGH.value]:
            logger.error(message)
        else:
            logger.warning(message)

        if SEVERITY_RANK[violation.severity] >= SEVERITY_RANK[ViolationSeverity.HIGH.value]:
            serious = self.store.count_violations(ViolationSeverity.HIGH.value)
            if serious >= self.violation_threshold:
                reason = f"{serious} payment violations (threshold {self.violation_threshold})"
                self.store.set_flag(EMERGENCY_STOP_FLAG, True, reason)
                logger.critical(f"EMERGENCY STOP engaged: {reason}")
                report_safety_alarm(f"Emergency stop engaged: {reason}", violation_id=violation.id)
                raise EmergencyStopError(f"Emergency stop engaged: {reason}", {"violation_id": violation.id})
        return violation

    def _violate(self, violation_type: ViolationType, severity: ViolationSeverity,
                 event: Optional[CanonicalEvent], message: str, details: Dict[str, Any]) -> None:
        violation = self.record_violation(violation_type, severity, event, details)
        raise PaymentViolationError(message, violation=violation, details=details)

    # --- pre-flight ---

    def preflight(self, event: CanonicalEvent) -> None:
        """Runs before any browser session exists. Only a known cost of exactly zero passes."""
        if event.cost is None:
            self._violate(ViolationType.INVALID_COST, ViolationSeverity.HIGH, event,
                          f"Refusing to automate '{event.title}': cost is unknown",
                          {"cost": None})
        if event.cost > 0:
            self._violate(ViolationType.PAID_EVENT_AUTOMATION, ViolationSeverity.CRITICAL, event,
                          f"Refusing to automate paid event '{event.title}' (${event.cost:g})",
                          {"cost": event.cost})

    # --- runtime ---

    def inspect_page(self, html: str) -> List[Dict[str, Any]]:
        """Returns every payment signal found in the rendered page, most serious first."""
        findings: List[Dict[str, Any]] = []
        soup = BeautifulSoup(html or "", "html.parser")

        for selector in PAYMENT_SELECTORS:
            matches = [element for element in soup.select(selector) if not _is_hidden(element)]
            if matches:
                findings.append({"type": ViolationType.PAYMENT_FIELD.value, "selector": selector,
                                 "count": len(matches)})

        price = _first_visible_price(soup)
        if price:
            findings.append(price)

        text = _visible_text(soup)
        for keyword, pattern in _KEYWORD_PATTERNS:
            if pattern.search(text):
                findings.append({"type": ViolationType.PAYMENT_KEYWORD.value, "keyword": keyword})

        if not any(f["type"] == ViolationType.PRICE_DETECTED.value for f in findings):
            prices = find_prices(text)
            if prices:
                findings.append({"type": ViolationType.PRICE_DETECTED.value, "selector": "body",
                                 "amount": prices[0]})
        return findings

    def assert_page_safe(self, html: str, event: CanonicalEvent) -> None:
        findings = self.inspect_page(html)
        if not findings:
            return
        first = findings[0]
        self._violate(ViolationType(first["type"]), ViolationSeverity.CRITICAL, event,
                      f"Payment signal on registration page for '{event.title}': {first}",
                      {"findings": findings})

    def validate_form_data(self, data: Mapping[str, Any], event: CanonicalEvent) -> None:
        sensitive = sorted(name for name in data if any(marker in name.lower() for marker in SENSITIVE_FIELD_MARKERS))
        if sensitive:
            self._violate(ViolationType.SENSITIVE_FORM_DATA, ViolationSeverity.CRITICAL, event,
                          f"Refusing to fill sensitive fields for '{event.title}': {', '.join(sensitive)}",
                          {"fields": sensitive})
