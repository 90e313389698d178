from pathlib import Path
from typing import Dict, Optional

from pydantic import Field, AliasChoices, HttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class MongoDBSettings(BaseSettings):
    """MongoDB connection and database settings."""
    uri: str = Field("mongodb://localhost:27017/", validation_alias=AliasChoices('MONGODB_URI', 'MONGO_URI'))
    database: str = Field("family_events", validation_alias=AliasChoices('MONGODB_DATABASE', 'MONGO_DATABASE'))
    server_selection_timeout_ms: int = Field(5000, validation_alias=AliasChoices('MONGODB_SERVER_SELECTION_TIMEOUT_MS'))

    model_config = SettingsConfigDict(
        env_prefix='MONGODB_',
        extra='ignore',
        populate_by_name=True
    )


class SentrySettings(BaseSettings):
    """Configuration for Sentry error tracking."""
    dsn: Optional[HttpUrl] = Field(None, validation_alias=AliasChoices('SENTRY_DSN'))
    environment: Optional[str] = Field(None, description="Overrides main app environment for Sentry if needed.")
    traces_sample_rate: float = Field(0.2, ge=0.0, le=1.0, description="Sentry performance monitoring traces sample rate.")
    profiles_sample_rate: float = Field(0.2, ge=0.0, le=1.0, description="Sentry profiling sample rate.")
    enable_performance_monitoring: bool = Field(True, description="Enable Sentry performance monitoring.")

    model_config = SettingsConfigDict(
        env_prefix='SENTRY_',
        extra='ignore',
        populate_by_name=True
    )


class HouseholdDefaults(BaseSettings):
    """
    Household preferences used when the store has no household document yet.
    Values stored in the `household_settings` collection take precedence.
    """
    timezone: str = Field("America/Los_Angeles", validation_alias=AliasChoices('HOUSEHOLD_TIMEZONE', 'TZ_NAME'))
    max_cost_per_event: float = Field(200.0, ge=0.0)
    min_advance_days: int = Field(2, ge=0)
    max_advance_months: int = Field(6, ge=1)
    weekday_earliest_time: str = "16:30"
    weekend_earliest_time: str = "08:00"
    weekend_nap_start: str = "12:00"
    weekend_nap_end: str = "14:00"
    all_day_weekday_time: str = "17:00"
    all_day_weekend_time: str = "10:00"
    events_per_day_max: int = Field(3, ge=0)
    config_cache_ttl_seconds: int = Field(300, ge=0)

    model_config = SettingsConfigDict(
        env_prefix='HOUSEHOLD_',
        extra='ignore',
        populate_by_name=True
    )


class MergeSettings(BaseSettings):
    """Tunables for fuzzy identity resolution."""
    similarity_threshold: float = Field(0.75, ge=0.0, le=1.0)
    title_weight: float = 0.40
    location_weight: float = 0.25
    date_weight: float = 0.20
    time_weight: float = 0.10
    age_weight: float = 0.05
    candidate_window_days: int = Field(1, ge=0, description="Existing events this many days either side of a candidate are fuzzy-match candidates.")

    model_config = SettingsConfigDict(
        env_prefix='MERGE_',
        extra='ignore'
    )


class FilterSettings(BaseSettings):
    max_workers: int = Field(4, ge=1)
    past_grace_hours: float = 1.0
    advance_buffer_hours: float = 1.0

    model_config = SettingsConfigDict(
        env_prefix='FILTER_',
        extra='ignore'
    )


class ScoringSettings(BaseSettings):
    """Composite weights and fallbacks for ranking."""
    preference_weight: float = 0.50
    novelty_weight: float = 0.20
    urgency_weight: float = 0.15
    social_weight: float = 0.15
    nap_penalty: float = 20.0
    neutral_score: float = 50.0
    neutral_nap_score: float = 30.0
    urgent_registration_window_hours: float = 24.0
    urgent_capacity_ratio: float = 0.2
    prioritize_urgent: bool = False
    proposals_per_run: int = Field(3, ge=0)
    model_cache_seconds: int = 3600

    model_config = SettingsConfigDict(
        env_prefix='SCORING_',
        extra='ignore'
    )


class NotificationSettings(BaseSettings):
    """Outbound channels and the approval response window."""
    response_window_hours: float = Field(24.0, gt=0)
    default_channel: str = Field("email", pattern="^(sms|email)$")
    email_recipient: Optional[str] = Field(None, validation_alias=AliasChoices('NOTIFY_EMAIL_RECIPIENT', 'PARENT1_EMAIL'))
    sms_recipient: Optional[str] = Field(None, validation_alias=AliasChoices('NOTIFY_SMS_RECIPIENT', 'TWILIO_TO_NUMBER'))
    sender_email: Optional[str] = Field(None, validation_alias=AliasChoices('NOTIFY_SENDER_EMAIL', 'GMAIL_SENDER'))
    gmail_user_id: str = "household"
    gmail_api_url: str = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
    oauth_token_url: str = "https://oauth2.googleapis.com/token"
    google_client_id: Optional[str] = Field(None, validation_alias=AliasChoices('NOTIFY_GOOGLE_CLIENT_ID', 'GOOGLE_CLIENT_ID'))
    google_client_secret: Optional[str] = Field(None, validation_alias=AliasChoices('NOTIFY_GOOGLE_CLIENT_SECRET', 'GOOGLE_CLIENT_SECRET'))
    token_refresh_margin_seconds: int = 300
    twilio_account_sid: Optional[str] = Field(None, validation_alias=AliasChoices('NOTIFY_TWILIO_ACCOUNT_SID', 'TWILIO_ACCOUNT_SID'))
    twilio_auth_token: Optional[str] = Field(None, validation_alias=AliasChoices('NOTIFY_TWILIO_AUTH_TOKEN', 'TWILIO_AUTH_TOKEN'))
    twilio_from_number: Optional[str] = Field(None, validation_alias=AliasChoices('NOTIFY_TWILIO_FROM_NUMBER', 'TWILIO_PHONE_NUMBER'))
    request_timeout_s: float = 15.0
    max_send_retries: int = Field(3, ge=0)

    model_config = SettingsConfigDict(
        env_prefix='NOTIFY_',
        extra='ignore',
        populate_by_name=True
    )


class WeatherSettings(BaseSettings):
    api_key: Optional[str] = Field(None, validation_alias=AliasChoices('WEATHER_API_KEY', 'OPENWEATHER_API_KEY'))
    base_url: str = "https://api.openweathermap.org/data/2.5"
    cache_ttl_hours: float = 6.0
    forecast_horizon_days: int = 5
    min_temperature_f: float = 45.0
    max_temperature_f: float = 85.0
    max_precipitation_chance: float = 50.0
    max_wind_mph: float = 20.0
    request_timeout_s: float = 10.0

    model_config = SettingsConfigDict(
        env_prefix='WEATHER_',
        extra='ignore',
        populate_by_name=True
    )


class AutomationSettings(BaseSettings):
    """Browser automation and payment guard settings."""
    headless: bool = Field(True, validation_alias=AliasChoices('AUTOMATION_HEADLESS', 'DEFAULT_HEADLESS_BROWSER'))
    navigation_timeout_ms: int = 30000
    user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36"
    min_delay_ms: int = 300
    max_delay_ms: int = 1200
    max_retries: int = Field(2, ge=0)
    retry_base_delay_s: float = 1.0
    retry_max_delay_s: float = 30.0
    max_parallel_sessions: int = Field(1, ge=1)
    violation_threshold: int = Field(3, ge=1, description="Violations of severity high or above before the emergency stop engages.")
    screenshot_directory: Path = Path("registration_screenshots")

    model_config = SettingsConfigDict(
        env_prefix='AUTOMATION_',
        extra='ignore',
        populate_by_name=True
    )


class RetentionSettings(BaseSettings):
    days_to_keep: int = Field(90, ge=1)
    run_lock_stale_minutes: int = 60

    model_config = SettingsConfigDict(
        env_prefix='RETENTION_',
        extra='ignore'
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field("development", validation_alias=AliasChoices('APP_ENV', 'ENVIRONMENT'))
    log_level: str = Field("INFO", validation_alias=AliasChoices('APP_LOG_LEVEL', 'LOG_LEVEL'))
    log_output_directory: Path = Field(Path("eventplanner_logs"), validation_alias=AliasChoices('LOG_OUTPUT_DIRECTORY'))

    mongodb: MongoDBSettings = MongoDBSettings()
    sentry: SentrySettings = SentrySettings()
    household: HouseholdDefaults = HouseholdDefaults()
    merge: MergeSettings = MergeSettings()
    filters: FilterSettings = FilterSettings()
    scoring: ScoringSettings = ScoringSettings()
    notifications: NotificationSettings = NotificationSettings()
    weather: WeatherSettings = WeatherSettings()
    automation: AutomationSettings = AutomationSettings()
    retention: RetentionSettings = RetentionSettings()

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        env_nested_delimiter='__',
        extra='ignore',
        populate_by_name=True
    )

    def channel_recipients(self) -> Dict[str, Optional[str]]:
        return {
            "email": self.notifications.email_recipient,
            "sms": self.notifications.sms_recipient,
        }


settings = Settings()


def ensure_directories_exist():
    # Call once at application startup.
    if settings.log_output_directory and not settings.log_output_directory.exists():
        settings.log_output_directory.mkdir(parents=True, exist_ok=True)
    screenshots = settings.automation.screenshot_directory
    if screenshots and not screenshots.exists():
        screenshots.mkdir(parents=True, exist_ok=True)
