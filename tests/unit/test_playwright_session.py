from unittest import mock

import pytest
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from eventplanner.errors import AutomationError, TransientAutomationError
from eventplanner.registration.browser import PlaywrightBrowserSession


@pytest.fixture
def page():
    with mock.patch("eventplanner.registration.browser.sync_playwright") as sync_playwright:
        playwright = sync_playwright.return_value.start.return_value
        browser = playwright.chromium.launch.return_value
        page = browser.new_page.return_value
        page.locator.return_value.first.is_visible.return_value = False
        yield page


@pytest.fixture
def session(page):
    return PlaywrightBrowserSession(headless=True, min_delay_ms=0, max_delay_ms=0)


def test_navigation_timeout_is_transient(session, page):
    page.goto.side_effect = PlaywrightTimeoutError("Timeout 30000ms exceeded")
    with pytest.raises(TransientAutomationError):
        session.navigate("https://example.org/register")


@pytest.mark.parametrize("status, error", [(503, TransientAutomationError), (404, AutomationError)])
def test_error_statuses(session, page, status, error):
    page.goto.return_value = mock.Mock(status=status)
    with pytest.raises(error) as exc_info:
        session.navigate("https://example.org/register")
    assert exc_info.type is error


def test_fill_uses_first_visible_field(session, page):
    hidden, visible = mock.Mock(), mock.Mock()
    hidden.first.is_visible.return_value = False
    visible.first.is_visible.return_value = True
    page.locator.side_effect = [hidden, visible]

    assert session.fill_field(['input[name*="parent"]', 'input[name="name"]'], "Sam Rivera")
    visible.first.fill.assert_called_once_with("Sam Rivera", timeout=5000)


def test_submit_without_button_returns_false(session):
    assert not session.submit(['button[type="submit"]'])


def test_context_manager_closes_browser():
    with mock.patch("eventplanner.registration.browser.sync_playwright") as sync_playwright:
        playwright = sync_playwright.return_value.start.return_value
        with PlaywrightBrowserSession() as session:
            session.current_url()
        playwright.chromium.launch.return_value.close.assert_called_once()
        playwright.stop.assert_called_once()
