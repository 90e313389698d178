import logging
import re
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from bs4 import BeautifulSoup

from eventplanner.errors import AutomationError, EmergencyStopError, PaymentViolationError, TransientAutomationError
from eventplanner.household import HouseholdConfig
from eventplanner.models import CanonicalEvent, EventStatus, Interaction, InteractionType, RegistrationAttempt
from eventplanner.registration.guard import PaymentGuard
from eventplanner.registration.session import BrowserSession, GuardedSession
from eventplanner.utils import retry_with_backoff, utc_now

logger = logging.getLogger(__name__)

NAME_SELECTORS = ('input[name*="parent"]', 'input[name="name"]', 'input[name*="fullname" i]', 'input[id*="name"]')
FIRST_NAME_SELECTORS = ('input[name*="firstName"]', 'input[name*="first_name"]', 'input[name*="first"]')
LAST_NAME_SELECTORS = ('input[name*="lastName"]', 'input[name*="last_name"]', 'input[name*="last"]')
EMAIL_SELECTORS = ('input[type="email"]', 'input[name*="email"]')
PHONE_SELECTORS = ('input[type="tel"]', 'input[name*="phone"]')
CHILDREN_SELECTORS = ('textarea[name*="child"]', 'input[name*="child"]', 'input[name*="attendee"]',
                      'textarea[name*="attendee"]')
ATTENDEE_COUNT_SELECTORS = ('input[name*="attendees"]', 'input[name*="guests"]', 'input[name*="size"]',
                            'input[name*="count"]')
SUBMIT_SELECTORS = (
    'button[type="submit"]',
    'input[type="submit"]',
    'button:has-text("Register")',
    'button:has-text("Sign Up")',
    'button:has-text("RSVP")',
    'button:has-text("Submit")',
    '.submit-btn',
    '.register-btn',
)

SUCCESS_SELECTORS = (
    '.success', '.confirmation', '.thank-you',
    '[class*="success"]', '[class*="confirmation"]',
    '[id*="success"]', '[id*="confirmation"]',
)
SUCCESS_TEXTS = (
    "thank you", "confirmation", "registered", "success", "we have received",
    "registration complete", "you are registered",
)
SUCCESS_URL_MARKERS = ("success", "confirmation", "thank")
CONFIRMATION_PATTERNS = (
    re.compile(r"confirmation\s*(?:number|code|id)\s*:\s*([A-Za-z0-9\-]+)", re.IGNORECASE),
    re.compile(r"reference\s*(?:number|code|id)\s*:\s*([A-Za-z0-9\-]+)", re.IGNORECASE),
    re.compile(r"registration\s*(?:number|code|id)\s*:\s*([A-Za-z0-9\-]+)", re.IGNORECASE),
    re.compile(r"\b(?:conf|ref|reg)(?:#|\s*:)\s*([A-Za-z0-9\-]{6,})", re.IGNORECASE),
)


def extract_confirmation_number(text: str) -> Optional[str]:
    for pattern in CONFIRMATION_PATTERNS:
        match = pattern.search(text or "")
        if match:
            return match.group(1).strip()
    return None


def detect_success(html: str, url: str = "") -> Tuple[bool, Optional[str]]:
    """Looks for a success element, success wording or a success URL. Returns (success, confirmation number)."""
    soup = BeautifulSoup(html or "", "html.parser")
    for selector in SUCCESS_SELECTORS:
        element = soup.select_one(selector)
        if element is not None:
            return True, extract_confirmation_number(element.get_text(" ", strip=True))

    text = soup.get_text(" ", strip=True)
    lowered = text.lower()
    if any(marker in lowered for marker in SUCCESS_TEXTS):
        return True, extract_confirmation_number(text)
    if any(marker in (url or "").lower() for marker in SUCCESS_URL_MARKERS):
        return True, None
    return False, None


def form_fields(household: HouseholdConfig, now: Optional[datetime] = None) -> List[Tuple[str, Sequence[str], str]]:
    """(field name, selectors, value) for every form field we know how to fill."""
    contact = household.contact
    first, _, last = contact.parent_name.partition(" ")
    children = ", ".join(f"{child.name} ({child.age_on((now or utc_now()).date())})" for child in household.children)
    return [
        ("parent_name", NAME_SELECTORS, contact.parent_name),
        ("first_name", FIRST_NAME_SELECTORS, first),
        ("last_name", LAST_NAME_SELECTORS, last),
        ("email", EMAIL_SELECTORS, contact.email),
        ("phone", PHONE_SELECTORS, contact.phone),
        ("children", CHILDREN_SELECTORS, children),
        ("attendees", ATTENDEE_COUNT_SELECTORS, str(len(household.children) + 1) if household.children else ""),
    ]


class RegistrationAutomator:
    """
    Registers for approved free events through a guarded browser session.

    Order of operations is fixed: emergency stop check, cost pre-flight (no
    browser is created for anything but a known free event), status move to
    registering, the guarded form flow with retries for transient failures,
    then the final status and a persisted attempt in every case.
    """

    def __init__(
        self,
        store,
        guard: PaymentGuard,
        session_factory: Callable[[], BrowserSession],
        household_provider,
        max_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        screenshot_directory: Optional[Path] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.guard = guard
        self.session_factory = session_factory
        self.household_provider = household_provider
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.screenshot_directory = screenshot_directory
        self.clock = clock
        self.sleep = sleep

    @classmethod
    def from_settings(cls, app_settings, store, guard, session_factory, household_provider, **kwargs) -> "RegistrationAutomator":
        automation = app_settings.automation
        return cls(
            store, guard, session_factory, household_provider,
            max_retries=automation.max_retries,
            base_delay=automation.retry_base_delay_s,
            max_delay=automation.retry_max_delay_s,
            screenshot_directory=automation.screenshot_directory,
            **kwargs,
        )

    def _attempt(self, event: CanonicalEvent, started: float, triggered_by: str, **fields) -> RegistrationAttempt:
        attempt = RegistrationAttempt(
            event_id=event.id,
            triggered_by=triggered_by,
            attempted_at=self.clock(),
            duration_ms=int((time.monotonic() - started) * 1000),
            **fields,
        )
        self.store.insert_registration_attempt(attempt)
        return attempt

    def register(self, event: CanonicalEvent, triggered_by: str = "automation") -> RegistrationAttempt:
        started = time.monotonic()
        self.guard.ensure_not_stopped()

        try:
            self.guard.preflight(event)
        except (PaymentViolationError, EmergencyStopError) as e:
            attempt = self._attempt(
                event, started, triggered_by, success=False,
                error_type="payment_violation" if isinstance(e, PaymentViolationError) else "emergency_stop",
                error_message=e.message, payment_required=True, payment_amount=event.cost,
            )
            if isinstance(e, PaymentViolationError):
                e.attempt = attempt
            raise

        if not event.registration_url:
            self.store.transition_event(event.id, EventStatus.MANUAL_REGISTRATION_SENT,
                                        expected_from=[EventStatus.APPROVED, EventStatus.REGISTRATION_FAILED])
            logger.info(f"'{event.title}' has no registration URL; left for manual registration")
            return self._attempt(event, started, triggered_by, success=False, error_type="no_registration_url",
                                 error_message="Event has no registration URL")

        self.store.transition_event(event.id, EventStatus.REGISTERING)
        household = self.household_provider.get()

        try:
            confirmation = retry_with_backoff(
                lambda: self._run_form(event, household),
                retryable=(TransientAutomationError,),
                max_retries=self.max_retries,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                sleep=self.sleep,
                logger=logger,
                operation_name=f"registration for '{event.title}'",
            )
        except PaymentViolationError as e:
            amount = next((f.get("amount") for f in e.details.get("findings", []) if f.get("amount")), None)
            attempt = self._fail(event, started, triggered_by, "payment_violation", e.message,
                                 payment_required=True, payment_amount=amount)
            e.attempt = attempt
            raise
        except EmergencyStopError as e:
            self._fail(event, started, triggered_by, "emergency_stop", e.message, payment_required=True)
            raise
        except AutomationError as e:
            error_type = "transient" if e.retryable else "automation"
            logger.error(f"Registration for '{event.title}' failed: {e}")
            return self._fail(event, started, triggered_by, error_type, e.message)
        except Exception as e:
            self._fail(event, started, triggered_by, "unexpected", str(e))
            raise

        self.store.transition_event(event.id, EventStatus.REGISTERED, expected_from=[EventStatus.REGISTERING])
        registered = self.store.get_event(event.id) or event
        self.store.record_interaction(Interaction.for_event(registered, InteractionType.REGISTERED, self.clock()))
        logger.info(f"Registered for '{event.title}' (confirmation: {confirmation or 'n/a'})")
        return self._attempt(event, started, triggered_by, success=True, confirmation_number=confirmation)

    def _fail(self, event: CanonicalEvent, started: float, triggered_by: str, error_type: str,
              message: str, **fields) -> RegistrationAttempt:
        self.store.update_event_status(event.id, EventStatus.REGISTRATION_FAILED,
                                       expected_from=[EventStatus.REGISTERING])
        return self._attempt(event, started, triggered_by, success=False, error_type=error_type,
                             error_message=message, **fields)

    def _run_form(self, event: CanonicalEvent, household: HouseholdConfig) -> Optional[str]:
        with self.session_factory() as raw_session:
            session = GuardedSession(raw_session, self.guard, event)
            try:
                session.navigate(event.registration_url)
                filled = [name for name, selectors, value in form_fields(household, self.clock())
                          if value and session.fill_field(selectors, value, name)]
                logger.debug(f"Filled {filled} on {session.current_url()}")
                if not session.submit(SUBMIT_SELECTORS):
                    raise AutomationError("No submit button found")

                html = session.rendered_content()
                self.guard.assert_page_safe(html, event)
                success, confirmation = detect_success(html, session.current_url())
                if not success:
                    raise AutomationError("No success indicators found after submit")
                return confirmation
            except AutomationError:
                self._screenshot(session, event)
                raise

    def _screenshot(self, session: BrowserSession, event: CanonicalEvent) -> None:
        if self.screenshot_directory is None:
            return
        stamp = self.clock().strftime("%Y%m%d_%H%M%S")
        path = session.screenshot(str(Path(self.screenshot_directory) / f"{event.id[:12]}_{stamp}.png"))
        if path:
            logger.info(f"Saved failure screenshot to {path}")
