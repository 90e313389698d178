from unittest import mock

import pytest

from eventplanner.errors import EmergencyStopError, PaymentViolationError
from eventplanner.models import ViolationSeverity, ViolationType
from eventplanner.registration import PaymentGuard
from eventplanner.registration.guard import find_prices

FREE_FORM = """
<html><body>
  <h1>Toddler Storytime RSVP</h1>
  <p>Free admission. Space is limited.</p>
  <form><input name="name"><input type="email" name="email"><button type="submit">Register</button></form>
</body></html>
"""


@pytest.fixture
def guard(store):
    return PaymentGuard(store, violation_threshold=3)


def test_preflight_allows_known_free_event(guard, store, event_factory):
    guard.preflight(event_factory(cost=0.0))
    assert store.count_violations() == 0


def test_preflight_refuses_paid_event(guard, store, event_factory):
    with pytest.raises(PaymentViolationError) as exc_info:
        guard.preflight(event_factory(cost=12.5))

    violation = exc_info.value.violation
    assert violation.violation_type == ViolationType.PAID_EVENT_AUTOMATION
    assert violation.severity == ViolationSeverity.CRITICAL
    assert store.list_violations()[0].details == {"cost": 12.5}


def test_preflight_refuses_unknown_cost(guard, event_factory):
    with pytest.raises(PaymentViolationError) as exc_info:
        guard.preflight(event_factory(cost=None))
    assert exc_info.value.violation.violation_type == ViolationType.INVALID_COST
    assert exc_info.value.violation.severity == ViolationSeverity.HIGH


def test_free_registration_page_is_clean(guard):
    assert guard.inspect_page(FREE_FORM) == []


def test_visible_price_element_is_detected(guard):
    html = FREE_FORM.replace("</h1>", '</h1><span class="price">$10</span>')
    findings = guard.inspect_page(html)
    assert findings == [{"type": "price_detected", "selector": ".price", "amount": 10.0, "text": "$10"}]


def test_hidden_elements_are_ignored(guard):
    html = FREE_FORM.replace("</h1>", '</h1><div style="display: none"><span class="price">$25.00</span>'
                                      '<p>Enter your credit card</p></div><input type="hidden" name="payment_ref">')
    assert guard.inspect_page(html) == []


def test_zero_prices_do_not_count():
    assert find_prices("Tickets: $0 for kids, $0.00 for adults") == []
    assert find_prices("Parking $5, snacks $2.50") == [5.0, 2.5]


def test_payment_fields_and_keywords(guard):
    html = '<form><input name="credit_card_number"><p>Proceed to checkout</p></form>'
    findings = guard.inspect_page(html)

    assert findings[0] == {"type": "payment_field", "selector": 'input[name*="credit"]', "count": 1}
    assert {"type": "payment_keyword", "keyword": "checkout"} in findings


def test_assert_page_safe_records_critical_violation(guard, store, event_factory):
    html = '<div class="fee">Registration fee: $15.00</div>'
    with pytest.raises(PaymentViolationError):
        guard.assert_page_safe(html, event_factory())

    violation = store.list_violations()[0]
    assert violation.severity == ViolationSeverity.CRITICAL
    assert violation.violation_type == ViolationType.PRICE_DETECTED
    assert violation.details["findings"][0]["amount"] == 15.0


def test_sensitive_form_fields_are_refused(guard, event_factory):
    guard.validate_form_data({"email": "sam@example.com"}, event_factory())
    with pytest.raises(PaymentViolationError) as exc_info:
        guard.validate_form_data({"Card_Number": "4111", "cvv": "123"}, event_factory())
    assert exc_info.value.details == {"fields": ["Card_Number", "cvv"]}


# --- Tests for the emergency stop ---
def test_threshold_engages_emergency_stop(guard, store, event_factory):
    paid = event_factory(cost=20.0)
    with mock.patch("eventplanner.registration.guard.report_safety_alarm") as alarm:
        for _ in range(2):
            with pytest.raises(PaymentViolationError):
                guard.preflight(paid)
        assert not guard.is_stopped()

        with pytest.raises(EmergencyStopError):
            guard.preflight(paid)

    assert guard.is_stopped()
    assert "3 payment violations" in store.get_flag("emergency_stop")["reason"]
    assert alarm.call_count == 4
    with pytest.raises(EmergencyStopError):
        guard.ensure_not_stopped()


def test_warnings_do_not_count_toward_threshold(guard, event_factory):
    for _ in range(5):
        guard.record_violation(ViolationType.PAGE_VALIDATION_ERROR, ViolationSeverity.WARNING,
                               event_factory(), {"reason": "page did not render"})
    assert not guard.is_stopped()


def test_clearing_stop_acknowledges_violations(guard, store, event_factory):
    for _ in range(2):
        with pytest.raises(PaymentViolationError):
            guard.preflight(event_factory(cost=None))
    with pytest.raises(EmergencyStopError):
        guard.preflight(event_factory(cost=None))

    assert guard.clear_emergency_stop()
    assert not guard.is_stopped()
    assert store.count_violations() == 0
    guard.ensure_not_stopped()

    with pytest.raises(PaymentViolationError):
        guard.preflight(event_factory(cost=None))
    assert not guard.is_stopped()
