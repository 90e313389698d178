import logging
import threading
import time as time_module
from datetime import date, datetime, time
from typing import Any, Callable, Dict, List, Optional

import pytz
from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pymongo.errors import PyMongoError

from eventplanner.config import HouseholdDefaults
from eventplanner.utils import utc_now

logger = logging.getLogger(__name__)


def _parse_clock(value: Any) -> Any:
    if isinstance(value, str):
        return datetime.strptime(value.strip(), "%H:%M").time()
    return value


class Child(BaseModel):
    name: str
    birth_date: date

    def age_on(self, day: date) -> int:
        return relativedelta(day, self.birth_date).years


class HouseholdContact(BaseModel):
    """Details used to fill registration forms."""
    parent_name: str = ""
    email: str = ""
    phone: str = ""


class HouseholdConfig(BaseModel):
    """Immutable snapshot of household preferences, threaded through each filtering call."""
    model_config = ConfigDict(frozen=True)

    timezone: str = "America/Los_Angeles"
    max_cost_per_event: float = 200.0
    min_advance_days: int = 2
    max_advance_months: int = 6
    weekday_earliest_time: time = time(16, 30)
    weekend_earliest_time: time = time(8, 0)
    weekend_nap_start: time = time(12, 0)
    weekend_nap_end: time = time(14, 0)
    all_day_weekday_time: time = time(17, 0)
    all_day_weekend_time: time = time(10, 0)
    events_per_day_max: int = 3
    children: List[Child] = Field(default_factory=list)
    contact: HouseholdContact = Field(default_factory=HouseholdContact)

    @field_validator(
        'weekday_earliest_time', 'weekend_earliest_time', 'weekend_nap_start',
        'weekend_nap_end', 'all_day_weekday_time', 'all_day_weekend_time',
        mode='before',
    )
    @classmethod
    def parse_times(cls, v):
        return _parse_clock(v)

    @property
    def tz(self):
        return pytz.timezone(self.timezone)

    def child_ages(self, now: Optional[datetime] = None) -> List[int]:
        today = (now or utc_now()).astimezone(self.tz).date()
        return [child.age_on(today) for child in self.children]

    @classmethod
    def from_sources(cls, defaults: HouseholdDefaults, document: Optional[Dict[str, Any]] = None) -> "HouseholdConfig":
        """Settings defaults overlaid with the stored household document, if any."""
        data: Dict[str, Any] = defaults.model_dump(exclude={"config_cache_ttl_seconds"})
        if document:
            data.update({key: value for key, value in document.items() if key != "_id" and value is not None})
        return cls.model_validate(data)


class HouseholdConfigProvider:
    """
    Time-bounded cache over the stored household document, so edits take
    effect without a restart. Falls back to settings defaults when the store
    is unreachable.
    """

    def __init__(self, store, defaults: HouseholdDefaults, ttl_seconds: Optional[float] = None,
                 clock: Callable[[], float] = time_module.monotonic):
        self.store = store
        self.defaults = defaults
        self.ttl_seconds = defaults.config_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[HouseholdConfig] = None
        self._loaded_at: Optional[float] = None

    def get(self) -> HouseholdConfig:
        with self._lock:
            now = self._clock()
            if self._cached is not None and self._loaded_at is not None and now - self._loaded_at < self.ttl_seconds:
                return self._cached
            self._cached = self._load()
            self._loaded_at = now
            return self._cached

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None
            self._loaded_at = None

    def _load(self) -> HouseholdConfig:
        try:
            document = self.store.get_household_settings()
        except PyMongoError as e:
            logger.warning(f"Could not load household settings, using defaults: {e}")
            document = None
        return HouseholdConfig.from_sources(self.defaults, document)
