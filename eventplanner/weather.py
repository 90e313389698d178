import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Optional

import pytz
import requests
from pydantic import BaseModel, Field

from eventplanner.config import WeatherSettings
from eventplanner.dedup.location import normalize_address
from eventplanner.errors import TransientCollaboratorError, WeatherUnavailableError
from eventplanner.models import Location, UtcDatetime
from eventplanner.utils import create_retrying_session, utc_now

logger = logging.getLogger(__name__)

BAD_CONDITIONS = ("rain", "thunderstorm", "snow", "drizzle")


class Forecast(BaseModel):
    temperature: float = Field(..., description="Degrees Fahrenheit")
    condition: str
    precipitation_chance: float = Field(..., ge=0, le=100)
    wind_speed: float = Field(..., ge=0, description="Miles per hour")
    is_outdoor_friendly: bool
    fetched_at: UtcDatetime = Field(default_factory=utc_now)


def assess_outdoor_friendly(temperature: float, condition: str, precipitation_chance: float,
                            wind_speed: float, weather_settings: WeatherSettings) -> bool:
    if not weather_settings.min_temperature_f <= temperature <= weather_settings.max_temperature_f:
        return False
    if condition.lower() in BAD_CONDITIONS and precipitation_chance > weather_settings.max_precipitation_chance:
        return False
    if wind_speed > weather_settings.max_wind_mph:
        return False
    return True


class WeatherService:
    """
    OpenWeatherMap 5-day forecast client with a MongoDB-backed cache.

    Cached forecasts are reused for `cache_ttl_hours`; a stale entry is simply
    refetched. Dates beyond the forecast horizon raise WeatherUnavailableError.
    Throttled and 5xx responses are retried by the session adapter; once those
    retries run out the lookup raises TransientCollaboratorError.
    """

    def __init__(self, weather_settings: WeatherSettings, store=None,
                 session: Optional[requests.Session] = None,
                 clock: Callable[[], datetime] = utc_now,
                 timezone_name: str = "America/Los_Angeles"):
        self.settings = weather_settings
        self.store = store
        self.session = session or create_retrying_session()
        self.clock = clock
        self.tz = pytz.timezone(timezone_name)

    @staticmethod
    def cache_key(location: Location, day: date) -> str:
        if location.has_coordinates:
            place = f"{location.latitude:.3f},{location.longitude:.3f}"
        else:
            place = normalize_address(location.address or location.venue)
        return f"{place}|{day.isoformat()}"

    def get_forecast(self, location: Location, day: date) -> Forecast:
        key = self.cache_key(location, day)
        now = self.clock()
        if self.store is not None:
            cached = self.store.get_cached_forecast(key)
            if cached is not None:
                forecast = Forecast.model_validate(cached)
                if now - forecast.fetched_at < timedelta(hours=self.settings.cache_ttl_hours):
                    return forecast

        forecast = self._fetch(location, day, now)
        if self.store is not None:
            self.store.save_forecast(key, forecast.model_dump(mode="python"))
        return forecast

    def _fetch(self, location: Location, day: date, now: datetime) -> Forecast:
        if not self.settings.api_key:
            raise WeatherUnavailableError("No weather API key configured")
        days_ahead = (day - now.astimezone(self.tz).date()).days
        if days_ahead < 0 or days_ahead > self.settings.forecast_horizon_days:
            raise WeatherUnavailableError(f"{day.isoformat()} is outside the forecast horizon")

        params: Dict[str, Any] = {"appid": self.settings.api_key, "units": "imperial"}
        if location.has_coordinates:
            params.update(lat=location.latitude, lon=location.longitude)
        elif location.address:
            params["q"] = location.address
        else:
            raise WeatherUnavailableError("Event has no usable location")

        try:
            response = self.session.get(f"{self.settings.base_url}/forecast", params=params,
                                        timeout=self.settings.request_timeout_s)
        except requests.RequestException as e:
            raise TransientCollaboratorError(f"Weather request failed: {e}") from e

        if response.status_code != 200:
            raise WeatherUnavailableError(f"Weather service returned {response.status_code}")

        return self._parse(response.json(), day, now)

    def _parse(self, payload: Dict[str, Any], day: date, now: datetime) -> Forecast:
        entries = []
        for entry in payload.get("list", []):
            local = datetime.fromtimestamp(entry["dt"], tz=pytz.utc).astimezone(self.tz)
            if local.date() == day:
                entries.append((abs(local.hour - 12), entry))
        if not entries:
            raise WeatherUnavailableError(f"No forecast entries for {day.isoformat()}")
        _, midday = min(entries, key=lambda item: item[0])

        temperature = float(midday["main"]["temp"])
        condition = (midday.get("weather") or [{}])[0].get("main", "Clear")
        precipitation = round(float(midday.get("pop", 0.0)) * 100, 1)
        wind = float(midday.get("wind", {}).get("speed", 0.0))
        return Forecast(
            temperature=temperature,
            condition=condition,
            precipitation_chance=precipitation,
            wind_speed=wind,
            is_outdoor_friendly=assess_outdoor_friendly(temperature, condition, precipitation, wind, self.settings),
            fetched_at=now,
        )
