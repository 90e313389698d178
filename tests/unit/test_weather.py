from datetime import date, datetime, timedelta, timezone
from unittest import mock

import pytest
import requests

from eventplanner.config import WeatherSettings
from eventplanner.errors import TransientCollaboratorError, WeatherUnavailableError
from eventplanner.models import Location
from eventplanner.weather import WeatherService, assess_outdoor_friendly

NOW = datetime(2025, 6, 2, 17, 0, tzinfo=timezone.utc)
EVENT_DAY = date(2025, 6, 4)
PARK = Location(venue="Golden Gate Park", latitude=37.77, longitude=-122.42)


def entry(when, temp, condition, pop, wind):
    return {"dt": int(when.timestamp()), "main": {"temp": temp}, "weather": [{"main": condition}],
            "pop": pop, "wind": {"speed": wind}}


def forecast_payload(condition="Clear", pop=0.1):
    return {"list": [
        entry(datetime(2025, 6, 4, 13, 0, tzinfo=timezone.utc), 55.0, "Clouds", 0.0, 3.0),   # 06:00 local
        entry(datetime(2025, 6, 4, 19, 0, tzinfo=timezone.utc), 72.0, condition, pop, 5.0),   # noon local
        entry(datetime(2025, 6, 5, 19, 0, tzinfo=timezone.utc), 90.0, "Clear", 0.0, 2.0),
    ]}


def ok_response(payload):
    resp = mock.Mock(spec=requests.Response)
    resp.status_code = 200
    resp.json.return_value = payload
    return resp


class Clock:
    def __init__(self, value):
        self.value = value

    def __call__(self):
        return self.value


@pytest.fixture
def settings():
    return WeatherSettings(api_key="test-key")


def test_picks_the_entry_closest_to_local_noon(settings):
    session = mock.Mock()
    session.get.return_value = ok_response(forecast_payload())
    service = WeatherService(settings, session=session, clock=lambda: NOW)

    forecast = service.get_forecast(PARK, EVENT_DAY)

    assert forecast.temperature == 72.0
    assert forecast.condition == "Clear"
    assert forecast.precipitation_chance == 10.0
    assert forecast.is_outdoor_friendly
    params = session.get.call_args.kwargs["params"]
    assert params["lat"] == 37.77
    assert params["units"] == "imperial"


def test_rainy_forecast_is_not_outdoor_friendly(settings):
    session = mock.Mock()
    session.get.return_value = ok_response(forecast_payload(condition="Rain", pop=0.8))
    forecast = WeatherService(settings, session=session, clock=lambda: NOW).get_forecast(PARK, EVENT_DAY)
    assert forecast.precipitation_chance == 80.0
    assert not forecast.is_outdoor_friendly


@pytest.mark.parametrize("temperature, condition, precipitation, wind, expected", [
    (70.0, "Clear", 0.0, 5.0, True),
    (40.0, "Clear", 0.0, 5.0, False),
    (90.0, "Clear", 0.0, 5.0, False),
    (70.0, "Drizzle", 60.0, 5.0, False),
    (70.0, "Drizzle", 30.0, 5.0, True),
    (70.0, "Clear", 0.0, 25.0, False),
])
def test_outdoor_friendly_rules(settings, temperature, condition, precipitation, wind, expected):
    assert assess_outdoor_friendly(temperature, condition, precipitation, wind, settings) is expected


def test_forecasts_are_cached_in_the_store(settings, store):
    session = mock.Mock()
    session.get.return_value = ok_response(forecast_payload())
    clock = Clock(NOW)
    service = WeatherService(settings, store=store, session=session, clock=clock)

    service.get_forecast(PARK, EVENT_DAY)
    clock.value = NOW + timedelta(hours=1)
    cached = service.get_forecast(PARK, EVENT_DAY)

    assert session.get.call_count == 1
    assert cached.temperature == 72.0
    assert store.get_cached_forecast("37.770,-122.420|2025-06-04") is not None

    clock.value = NOW + timedelta(hours=7)
    service.get_forecast(PARK, EVENT_DAY)
    assert session.get.call_count == 2


def test_missing_api_key_is_unavailable():
    session = mock.Mock()
    service = WeatherService(WeatherSettings(api_key=None), session=session, clock=lambda: NOW)
    with pytest.raises(WeatherUnavailableError):
        service.get_forecast(PARK, EVENT_DAY)
    session.get.assert_not_called()


def test_dates_beyond_horizon_are_unavailable(settings):
    session = mock.Mock()
    service = WeatherService(settings, session=session, clock=lambda: NOW)
    with pytest.raises(WeatherUnavailableError):
        service.get_forecast(PARK, EVENT_DAY + timedelta(days=10))
    session.get.assert_not_called()


def test_client_error_is_unavailable(settings):
    session = mock.Mock()
    session.get.return_value = mock.Mock(status_code=401)
    with pytest.raises(WeatherUnavailableError):
        WeatherService(settings, session=session, clock=lambda: NOW).get_forecast(PARK, EVENT_DAY)


def test_default_session_retries_throttling_and_server_errors(settings):
    service = WeatherService(settings, clock=lambda: NOW)
    retries = service.session.get_adapter("https://api.openweathermap.org").max_retries
    assert retries.total == 3
    assert retries.backoff_factor == 1
    assert set(retries.status_forcelist) == {429, 500, 502, 503, 504}


def test_exhausted_retries_are_transient(settings):
    session = mock.Mock()
    session.get.side_effect = requests.exceptions.RetryError("too many 503 error responses")
    service = WeatherService(settings, session=session, clock=lambda: NOW)
    with pytest.raises(TransientCollaboratorError):
        service.get_forecast(PARK, EVENT_DAY)
    assert session.get.call_count == 1
