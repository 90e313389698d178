from abc import ABC, abstractmethod
from typing import Optional, Sequence

from eventplanner.models import CanonicalEvent


class BrowserSession(ABC):
    """Opaque browser driving one external registration form."""

    @abstractmethod
    def navigate(self, url: str) -> None:
        """Loads the page. Raises TransientAutomationError on timeouts and navigation failures."""

    @abstractmethod
    def fill_field(self, selectors: Sequence[str], value: str) -> bool:
        """Fills the first visible field matching any selector. Returns False if none matched."""

    @abstractmethod
    def submit(self, selectors: Sequence[str]) -> bool:
        """Clicks the first visible submit control. Returns False if none matched."""

    @abstractmethod
    def rendered_content(self) -> str:
        """Current page HTML."""

    @abstractmethod
    def current_url(self) -> str:
        ...

    def screenshot(self, path: str) -> Optional[str]:
        return None

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
        return False


class GuardedSession(BrowserSession):
    """
    Wraps a session so the payment guard runs on every fill and before every
    submit. Callers never touch the raw session.
    """

    def __init__(self, session: BrowserSession, guard, event: CanonicalEvent):
        self._session = session
        self._guard = guard
        self._event = event

    def navigate(self, url: str) -> None:
        self._session.navigate(url)
        self._guard.assert_page_safe(self._session.rendered_content(), self._event)

    def fill_field(self, selectors: Sequence[str], value: str, field_name: str = "") -> bool:
        self._guard.validate_form_data({field_name or selectors[0]: value}, self._event)
        return self._session.fill_field(selectors, value)

    def submit(self, selectors: Sequence[str]) -> bool:
        self._guard.assert_page_safe(self._session.rendered_content(), self._event)
        return self._session.submit(selectors)

    def rendered_content(self) -> str:
        return self._session.rendered_content()

    def current_url(self) -> str:
        return self._session.current_url()

    def screenshot(self, path: str) -> Optional[str]:
        return self._session.screenshot(path)

    def close(self) -> None:
        self._session.close()
