import logging
import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.pymongo import PyMongoIntegration

from eventplanner.config import settings

logger = logging.getLogger(__name__)


def init_sentry() -> bool:
    """
    Initializes the Sentry SDK if a DSN is configured.
    Uses settings from eventplanner.config.settings.

    Returns:
        True if the SDK was initialized, False otherwise.
    """
    sentry_settings = settings.sentry
    app_environment = settings.environment

    if not sentry_settings.dsn:
        logger.info("Sentry DSN not found in settings. Sentry SDK will not be initialized.")
        return False

    effective_environment = sentry_settings.environment if sentry_settings.environment else app_environment
    logger.info(f"Sentry DSN found. Initializing Sentry SDK for environment: '{effective_environment}'.")

    integrations = [
        LoggingIntegration(
            level=logging.INFO,        # Capture info and above as breadcrumbs
            event_level=logging.ERROR  # Send errors as Sentry events
        ),
        PyMongoIntegration(),
    ]

    try:
        sentry_sdk.init(
            dsn=str(sentry_settings.dsn),
            environment=effective_environment,
            traces_sample_rate=sentry_settings.traces_sample_rate if sentry_settings.enable_performance_monitoring else 0.0,
            profiles_sample_rate=sentry_settings.profiles_sample_rate if sentry_settings.enable_performance_monitoring else 0.0,
            integrations=integrations,
        )
    except Exception as e:
        logger.error(f"Failed to initialize Sentry SDK: {e}", exc_info=True)
        return False
    logger.info("Sentry SDK initialized successfully.")
    return True


def report_safety_alarm(message: str, **context) -> None:
    """Sends a fatal-level Sentry event for a payment safety alarm. No-op without an active client."""
    with sentry_sdk.new_scope() as scope:
        scope.set_tag("alarm", "payment_safety")
        for key, value in context.items():
            scope.set_extra(key, value)
        sentry_sdk.capture_message(message, level="fatal")
