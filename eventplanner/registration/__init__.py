from eventplanner.registration.automator import RegistrationAutomator, detect_success, extract_confirmation_number
from eventplanner.registration.guard import PaymentGuard
from eventplanner.registration.session import BrowserSession, GuardedSession

__all__ = [
    "BrowserSession", "GuardedSession", "PaymentGuard", "RegistrationAutomator",
    "detect_success", "extract_confirmation_number",
]
