import pytest

from eventplanner.errors import EmergencyStopError, PaymentViolationError, TransientAutomationError
from eventplanner.models import EventStatus, InteractionType
from eventplanner.registration import BrowserSession, PaymentGuard, RegistrationAutomator
from eventplanner.registration.automator import detect_success, extract_confirmation_number
from eventplanner.store import EMERGENCY_STOP_FLAG

REGISTER_URL = "https://library.example.org/events/storytime/register"

FORM_PAGE = """
<html><body>
  <h1>Storytime RSVP</h1>
  <form>
    <input name="name"><input type="email" name="email"><input type="tel" name="phone">
    <button type="submit">Register</button>
  </form>
</body></html>
"""
SUCCESS_PAGE = '<html><body><div class="confirmation">Thank you! Confirmation number: ABC123</div></body></html>'


class FakeBrowserSession(BrowserSession):
    """Serves a fixed form page and switches to `after_submit` once submitted."""

    def __init__(self, page=FORM_PAGE, after_submit=SUCCESS_PAGE, navigate_errors=()):
        self.page = page
        self.after_submit = after_submit
        self.navigate_errors = list(navigate_errors)
        self.url = ""
        self.filled = {}
        self.closed = False

    def navigate(self, url):
        if self.navigate_errors:
            raise self.navigate_errors.pop(0)
        self.url = url

    def fill_field(self, selectors, value):
        self.filled[selectors[0]] = value
        return True

    def submit(self, selectors):
        self.page = self.after_submit
        self.url = self.url + "/done"
        return True

    def rendered_content(self):
        return self.page

    def current_url(self):
        return self.url

    def close(self):
        self.closed = True


class SessionFactory:
    def __init__(self, *sessions):
        self.sessions = list(sessions)
        self.created = []

    def __call__(self):
        session = self.sessions.pop(0)
        self.created.append(session)
        return session


@pytest.fixture
def guard(store):
    return PaymentGuard(store, violation_threshold=3)


def automator_for(store, guard, household_provider, factory):
    return RegistrationAutomator(store, guard, factory, household_provider,
                                 max_retries=2, sleep=lambda delay: None)


@pytest.fixture
def approved(store, event_factory):
    event = event_factory(title="Toddler Storytime", registration_url=REGISTER_URL, status=EventStatus.APPROVED)
    store.save_events([event])
    return event


def test_successful_registration(store, guard, household_provider, approved):
    session = FakeBrowserSession()
    factory = SessionFactory(session)

    attempt = automator_for(store, guard, household_provider, factory).register(approved)

    assert attempt.success
    assert attempt.confirmation_number == "ABC123"
    assert attempt.payment_completed is False
    assert store.get_event(approved.id).status == EventStatus.REGISTERED
    assert store.list_interactions()[0].interaction_type == InteractionType.REGISTERED
    assert session.filled['input[type="email"]'] == "sam@example.com"
    assert session.closed


def test_price_on_free_event_page_aborts(store, guard, household_provider, approved):
    priced = FORM_PAGE.replace("</h1>", '</h1><span class="price">$10</span>')
    session = FakeBrowserSession(page=priced)

    with pytest.raises(PaymentViolationError) as exc_info:
        automator_for(store, guard, household_provider, SessionFactory(session)).register(approved)

    assert session.filled == {}
    assert session.closed
    assert store.get_event(approved.id).status == EventStatus.REGISTRATION_FAILED
    [attempt] = store.attempts_for(approved.id)
    assert exc_info.value.attempt.id == attempt.id
    assert not attempt.success
    assert attempt.error_type == "payment_violation"
    assert attempt.payment_required
    assert attempt.payment_amount == 10.0
    assert attempt.payment_completed is False
    assert store.list_violations()[0].severity == "critical"


def test_payment_page_after_submit_is_caught(store, guard, household_provider, approved):
    checkout = '<html><body><h2>Checkout</h2><input name="credit_card"></body></html>'
    session = FakeBrowserSession(after_submit=checkout)

    with pytest.raises(PaymentViolationError):
        automator_for(store, guard, household_provider, SessionFactory(session)).register(approved)

    assert store.get_event(approved.id).status == EventStatus.REGISTRATION_FAILED


def test_paid_event_never_opens_a_browser(store, guard, household_provider, event_factory):
    paid = event_factory(cost=15.0, registration_url=REGISTER_URL, status=EventStatus.APPROVED)
    store.save_events([paid])
    factory = SessionFactory()

    with pytest.raises(PaymentViolationError):
        automator_for(store, guard, household_provider, factory).register(paid)

    assert factory.created == []
    assert store.get_event(paid.id).status == EventStatus.APPROVED
    assert store.attempts_for(paid.id)[0].payment_amount == 15.0


def test_emergency_stop_blocks_registration(store, guard, household_provider, approved):
    store.set_flag(EMERGENCY_STOP_FLAG, True, "operator stop")
    factory = SessionFactory()

    with pytest.raises(EmergencyStopError):
        automator_for(store, guard, household_provider, factory).register(approved)

    assert factory.created == []
    assert store.attempts_for(approved.id) == []
    assert store.get_event(approved.id).status == EventStatus.APPROVED


def test_missing_url_goes_to_manual_registration(store, guard, household_provider, event_factory):
    event = event_factory(registration_url=None, status=EventStatus.APPROVED)
    store.save_events([event])

    attempt = automator_for(store, guard, household_provider, SessionFactory()).register(event)

    assert not attempt.success
    assert attempt.error_type == "no_registration_url"
    assert store.get_event(event.id).status == EventStatus.MANUAL_REGISTRATION_SENT


def test_transient_navigation_failure_is_retried(store, guard, household_provider, approved):
    flaky = FakeBrowserSession(navigate_errors=[TransientAutomationError("timed out")])
    factory = SessionFactory(flaky, FakeBrowserSession())

    attempt = automator_for(store, guard, household_provider, factory).register(approved)

    assert attempt.success
    assert len(factory.created) == 2
    assert flaky.closed


def test_form_without_success_marker_fails(store, guard, household_provider, approved):
    session = FakeBrowserSession(after_submit="<html><body><p>Please review the form.</p></body></html>")

    attempt = automator_for(store, guard, household_provider, SessionFactory(session)).register(approved)

    assert not attempt.success
    assert attempt.error_type == "automation"
    assert store.get_event(approved.id).status == EventStatus.REGISTRATION_FAILED


def test_detect_success_and_confirmation_numbers():
    assert detect_success(SUCCESS_PAGE) == (True, "ABC123")
    assert detect_success("<p>You are registered!</p>") == (True, None)
    assert detect_success("<p>Loading</p>", "https://example.org/rsvp/thank-you") == (True, None)
    assert detect_success("<p>Loading</p>", "https://example.org/rsvp") == (False, None)
    assert extract_confirmation_number("Reference code: R-2291") == "R-2291"
    assert extract_confirmation_number("nothing here") is None
