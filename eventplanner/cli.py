import argparse
import json
import logging
import sys
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from eventplanner.config import Settings, ensure_directories_exist, settings
from eventplanner.dedup import MergeEngine
from eventplanner.errors import DiscoveryRunInProgressError, EmergencyStopError, EventPlannerError
from eventplanner.filters import FilterEngine
from eventplanner.household import HouseholdConfigProvider
from eventplanner.notifications import (
    GmailEmailChannel, GoogleOAuthRefresher, NotificationService, TokenManager, TwilioSmsChannel,
)
from eventplanner.pipeline import DiscoveryPipeline
from eventplanner.registration import PaymentGuard, RegistrationAutomator
from eventplanner.registration.browser import PlaywrightBrowserSession
from eventplanner.scoring import CompositePreferenceScorer, PreferenceModel, ScoringEngine, ScoringWeights
from eventplanner.sentry_setup import init_sentry
from eventplanner.store import EventStore, connect
from eventplanner.utils import setup_logger
from eventplanner.weather import WeatherService

logger = logging.getLogger(__name__)


@dataclass
class Components:
    store: EventStore
    household_provider: HouseholdConfigProvider
    pipeline: DiscoveryPipeline
    notification_service: NotificationService
    guard: PaymentGuard


def build_components(app_settings: Settings = settings, store: Optional[EventStore] = None) -> Components:
    """Wires the production collaborators from settings."""
    store = store or connect(app_settings)
    tz_name = app_settings.household.timezone
    notify = app_settings.notifications

    household_provider = HouseholdConfigProvider(store, app_settings.household)
    weather = WeatherService(app_settings.weather, store=store, timezone_name=tz_name)
    preference_model = PreferenceModel(store, tz_name, cache_seconds=app_settings.scoring.model_cache_seconds)
    scorer = CompositePreferenceScorer(
        preference_model,
        ScoringWeights(
            preference=app_settings.scoring.preference_weight,
            novelty=app_settings.scoring.novelty_weight,
            urgency=app_settings.scoring.urgency_weight,
            social=app_settings.scoring.social_weight,
        ),
        visited_venues=store.visited_venues,
    )

    token_manager = TokenManager(
        store,
        GoogleOAuthRefresher(notify.oauth_token_url, notify.google_client_id, notify.google_client_secret,
                             timeout=notify.request_timeout_s),
        refresh_margin=timedelta(seconds=notify.token_refresh_margin_seconds),
    )
    senders = {
        "email": GmailEmailChannel(token_manager, notify.sender_email, notify.gmail_api_url,
                                   user_id=notify.gmail_user_id, timeout=notify.request_timeout_s),
        "sms": TwilioSmsChannel(notify.twilio_account_sid, notify.twilio_auth_token, notify.twilio_from_number,
                                timeout=notify.request_timeout_s),
    }
    notification_service = NotificationService.from_settings(app_settings, store, senders)

    pipeline = DiscoveryPipeline.from_settings(
        app_settings,
        store,
        MergeEngine.from_settings(app_settings),
        FilterEngine.from_settings(app_settings, weather_service=weather),
        ScoringEngine.from_settings(app_settings, scorer),
        notification_service,
        household_provider,
    )
    guard = PaymentGuard(store, violation_threshold=app_settings.automation.violation_threshold)
    return Components(store, household_provider, pipeline, notification_service, guard)


def _load_candidates(path: Path) -> List[dict]:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("events", [])
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a list of event records")
    return data


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="eventplanner", description="Family event discovery and registration")
    sub = parser.add_subparsers(dest="command", required=True)

    discover = sub.add_parser("discover", help="Merge, filter, score and propose scraped candidates.")
    discover.add_argument("candidates", type=Path, help="JSON file with a list of raw scraped event records.")

    sub.add_parser("register-approved", help="Register approved free events; route paid ones to manual registration.")
    sub.add_parser("expire-notifications", help="Cancel proposals nobody answered within the response window.")

    cleanup = sub.add_parser("cleanup", help="Delete old events under the retention policy.")
    cleanup.add_argument("--days", type=int, default=None, help="Days to keep (default from settings).")

    respond = sub.add_parser("respond", help="Feed an inbound reply into the approval workflow.")
    respond.add_argument("--recipient", required=True, help="Phone number or email address the reply came from.")
    respond.add_argument("--channel", choices=["sms", "email"], required=True)
    respond.add_argument("--text", required=True)
    respond.add_argument("--in-reply-to", default=None, help="Email In-Reply-To header, if any.")

    sub.add_parser("clear-emergency-stop", help="Lift the registration emergency stop (operator action).")
    return parser


def main(argv: Optional[List[str]] = None, components: Optional[Components] = None) -> int:
    args = build_parser().parse_args(argv)
    ensure_directories_exist()
    setup_logger("eventplanner", "eventplanner_run", getattr(logging, settings.log_level.upper(), logging.INFO))
    init_sentry()

    try:
        components = components or build_components()
        if args.command == "discover":
            report = components.pipeline.run(_load_candidates(args.candidates))
            print(json.dumps(report.summary(), indent=2))
        elif args.command == "register-approved":
            automator = RegistrationAutomator.from_settings(
                settings, components.store, components.guard, _playwright_session_factory(),
                components.household_provider,
            )
            attempts = components.pipeline.process_approved(automator)
            print(json.dumps([attempt.model_dump(mode="json") for attempt in attempts], indent=2))
        elif args.command == "expire-notifications":
            print(f"Expired {components.pipeline.expire_notifications()} notifications")
        elif args.command == "cleanup":
            print(f"Deleted {components.pipeline.cleanup_old_events(args.days)} events")
        elif args.command == "respond":
            notification = components.notification_service.handle_inbound(
                args.recipient, args.text, args.channel, in_reply_to=args.in_reply_to)
            print(notification.status if notification else "unmatched")
        elif args.command == "clear-emergency-stop":
            cleared = components.guard.clear_emergency_stop()
            print("Emergency stop cleared" if cleared else "Emergency stop was not set")
    except DiscoveryRunInProgressError as e:
        logger.error(str(e))
        return 2
    except EmergencyStopError as e:
        logger.critical(str(e))
        return 3
    except EventPlannerError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        return 130
    return 0


def _playwright_session_factory():
    return lambda: PlaywrightBrowserSession.from_settings(settings.automation)


if __name__ == "__main__":
    sys.exit(main())
