import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator

from eventplanner.utils import ensure_utc, utc_now

UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


def new_id() -> str:
    return uuid.uuid4().hex


# --- Enumerations ---

class EventStatus(str, Enum):
    DISCOVERED = "discovered"
    PROPOSED = "proposed"
    APPROVED = "approved"
    REGISTERING = "registering"
    REGISTERED = "registered"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REGISTRATION_FAILED = "registration_failed"
    MANUAL_REGISTRATION_SENT = "manual_registration_sent"


class MergeType(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"


class Channel(str, Enum):
    SMS = "sms"
    EMAIL = "email"


class NotificationStatus(str, Enum):
    SENT = "sent"
    PENDING = "pending"
    DELIVERED = "delivered"
    APPROVED = "approved"
    REJECTED = "rejected"
    UNCLEAR = "unclear"
    CANCELLED = "cancelled"
    FAILED = "failed"


OPEN_NOTIFICATION_STATUSES = (NotificationStatus.SENT, NotificationStatus.PENDING, NotificationStatus.DELIVERED)


class ResponseClassification(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    UNCLEAR = "unclear"


class CheckName(str, Enum):
    AGE = "age"
    TIME_RANGE = "time_range"
    SCHEDULE = "schedule"
    BUDGET = "budget"
    CAPACITY = "capacity"
    NOVELTY = "novelty"
    WEATHER = "weather"
    CALENDAR = "calendar"


# Checks every filtering pass must account for; calendar is an optional later stage.
REQUIRED_CHECKS = (
    CheckName.AGE, CheckName.TIME_RANGE, CheckName.SCHEDULE, CheckName.BUDGET,
    CheckName.CAPACITY, CheckName.NOVELTY, CheckName.WEATHER,
)


class ViolationType(str, Enum):
    PAID_EVENT_AUTOMATION = "paid_event_automation"
    INVALID_COST = "invalid_cost"
    PAYMENT_KEYWORD = "payment_keyword"
    PAYMENT_FIELD = "payment_field"
    PRICE_DETECTED = "price_detected"
    SENSITIVE_FORM_DATA = "sensitive_form_data"
    PAGE_VALIDATION_ERROR = "page_validation_error"


class ViolationSeverity(str, Enum):
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_RANK = {ViolationSeverity.WARNING.value: 0, ViolationSeverity.HIGH.value: 1, ViolationSeverity.CRITICAL.value: 2}


class InteractionType(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    REGISTERED = "registered"
    ATTENDED = "attended"
    CANCELLED = "cancelled"


class DomainModel(BaseModel):
    """Shared config: enum members are stored as their plain values so documents go straight to MongoDB."""
    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)


# --- Event building blocks ---

class Location(DomainModel):
    address: str = ""
    venue: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @field_validator('latitude')
    def latitude_must_be_valid(cls, v):
        if v is not None and not (-90 <= v <= 90):
            raise ValueError('Latitude must be between -90 and 90')
        return v

    @field_validator('longitude')
    def longitude_must_be_valid(cls, v):
        if v is not None and not (-180 <= v <= 180):
            raise ValueError('Longitude must be between -180 and 180')
        return v

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class AgeRange(DomainModel):
    min_age: Optional[float] = Field(None, ge=0)
    max_age: Optional[float] = Field(None, ge=0)

    @model_validator(mode='after')
    def check_bounds(self):
        if self.min_age is not None and self.max_age is not None and self.min_age > self.max_age:
            raise ValueError('min_age cannot exceed max_age')
        return self

    @property
    def is_empty(self) -> bool:
        return self.min_age is None and self.max_age is None


class Capacity(DomainModel):
    available: Optional[int] = Field(None, ge=0)
    total: Optional[int] = Field(None, ge=0)

    @property
    def ratio(self) -> Optional[float]:
        if self.available is None or not self.total:
            return None
        return self.available / self.total


class SocialProof(DomainModel):
    rating: Optional[float] = Field(None, ge=0, le=5)
    review_count: int = Field(0, ge=0)
    interested_count: int = Field(0, ge=0)


class CandidateEvent(DomainModel):
    """One source's unvalidated-at-origin, validated-at-ingestion sighting of an event."""
    model_config = ConfigDict(use_enum_values=True, frozen=True)

    source: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    start: UtcDatetime
    all_day: bool = False
    location: Location = Field(default_factory=Location)
    age_range: Optional[AgeRange] = None
    cost: Optional[float] = Field(None, ge=0)
    registration_url: Optional[str] = None
    capacity: Optional[Capacity] = None
    description: str = ""
    raw_content: str = ""
    image_url: Optional[str] = None
    registration_opens: Optional[UtcDatetime] = None
    is_recurring: bool = False
    social_proof: Optional[SocialProof] = None
    source_event_id: Optional[str] = None
    scraped_at: UtcDatetime = Field(default_factory=utc_now)


# --- Decision results ---

class CheckResult(DomainModel):
    check: CheckName
    passed: bool
    reason: str
    details: Dict[str, Any] = Field(default_factory=dict)


PASSED_SENTINEL = "Passed all filters"


class FilterResult(DomainModel):
    passed: bool
    reasons: List[str] = Field(default_factory=list)
    checks: List[CheckResult] = Field(default_factory=list)
    is_during_nap_time: bool = False
    warnings: List[str] = Field(default_factory=list)
    evaluated_at: UtcDatetime = Field(default_factory=utc_now)

    def check(self, name: CheckName) -> Optional[CheckResult]:
        for result in self.checks:
            if result.check == name:
                return result
        return None


class ScoreBreakdown(DomainModel):
    base_preference: Optional[float] = None
    novelty: Optional[float] = None
    urgency: Optional[float] = None
    social: Optional[float] = None
    composite: float
    nap_penalty: float = 0.0
    final: float
    used_neutral_fallback: bool = False
    is_urgent: bool = False


# --- System of record ---

class CanonicalEvent(DomainModel):
    id: str
    title: str
    start: UtcDatetime
    all_day: bool = False
    location: Location = Field(default_factory=Location)
    age_range: Optional[AgeRange] = None
    cost: Optional[float] = Field(None, ge=0)
    registration_url: Optional[str] = None
    alternate_urls: List[str] = Field(default_factory=list)
    capacity: Optional[Capacity] = None
    description: str = ""
    raw_content: str = ""
    image_url: Optional[str] = None
    registration_opens: Optional[UtcDatetime] = None
    is_recurring: bool = False
    social_proof: Optional[SocialProof] = None
    status: EventStatus = EventStatus.DISCOVERED
    sources: List[str] = Field(default_factory=list)
    alias_fingerprints: List[str] = Field(default_factory=list)
    merge_count: int = Field(1, ge=1)
    first_seen_at: UtcDatetime = Field(default_factory=utc_now)
    last_merged_at: Optional[UtcDatetime] = None
    last_seen_at: Optional[UtcDatetime] = None
    filter_result: Optional[FilterResult] = None
    score_breakdown: Optional[ScoreBreakdown] = None
    preference_score: Optional[float] = None
    previously_attended: bool = False
    extracted_time: Optional[str] = None
    updated_at: UtcDatetime = Field(default_factory=utc_now)

    @property
    def is_free(self) -> bool:
        return self.cost is not None and self.cost == 0

    @property
    def is_during_nap_time(self) -> bool:
        return bool(self.filter_result and self.filter_result.is_during_nap_time)

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(mode="python")
        doc["_id"] = doc.pop("id")
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "CanonicalEvent":
        data = dict(doc)
        data["id"] = data.pop("_id")
        return cls.model_validate(data)


class MergeRecord(DomainModel):
    model_config = ConfigDict(use_enum_values=True, frozen=True)

    id: str = Field(default_factory=new_id)
    primary_event_id: str
    merged_event_id: str
    merged_snapshot: Dict[str, Any]
    similarity: float = Field(..., ge=0, le=1)
    merge_type: MergeType
    merged_at: UtcDatetime = Field(default_factory=utc_now)


class ResponseRecord(DomainModel):
    text: str
    received_at: UtcDatetime
    classification: ResponseClassification
    applied: bool = False
    note: Optional[str] = None


class Notification(DomainModel):
    id: str = Field(default_factory=new_id)
    event_id: str
    recipient: str
    channel: Channel
    subject: Optional[str] = None
    body: str
    status: NotificationStatus = NotificationStatus.SENT
    sent_at: UtcDatetime = Field(default_factory=utc_now)
    delivered_at: Optional[UtcDatetime] = None
    response_text: Optional[str] = None
    response_at: Optional[UtcDatetime] = None
    classification: Optional[ResponseClassification] = None
    provider_message_id: Optional[str] = None
    retry_count: int = Field(0, ge=0)
    error_message: Optional[str] = None
    late_responses: List[ResponseRecord] = Field(default_factory=list)

    @model_validator(mode='after')
    def sms_has_no_email_fields(self):
        if self.channel == Channel.SMS and (self.subject is not None or self.provider_message_id is not None):
            raise ValueError('SMS notifications carry neither a subject nor a provider message id')
        return self

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_NOTIFICATION_STATUSES

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(mode="python")
        doc["_id"] = doc.pop("id")
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Notification":
        data = dict(doc)
        data["id"] = data.pop("_id")
        return cls.model_validate(data)


class RegistrationAttempt(DomainModel):
    """One registration attempt. `payment_completed` is typed so it can only ever be False."""
    model_config = ConfigDict(use_enum_values=True, frozen=True)

    id: str = Field(default_factory=new_id)
    event_id: str
    success: bool
    confirmation_number: Optional[str] = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    payment_required: bool = False
    payment_amount: Optional[float] = None
    payment_completed: Literal[False] = False
    triggered_by: str = "automation"
    attempted_at: UtcDatetime = Field(default_factory=utc_now)
    duration_ms: Optional[int] = None


class PaymentViolation(DomainModel):
    model_config = ConfigDict(use_enum_values=True, frozen=True)

    id: str = Field(default_factory=new_id)
    violation_type: ViolationType
    severity: ViolationSeverity
    event_id: Optional[str] = None
    event_title: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    detected_at: UtcDatetime = Field(default_factory=utc_now)


class Interaction(DomainModel):
    """Household feedback on an event, the training data for the preference model."""
    model_config = ConfigDict(use_enum_values=True, frozen=True)

    id: str = Field(default_factory=new_id)
    event_id: str
    interaction_type: InteractionType
    title: str = ""
    description: str = ""
    source: Optional[str] = None
    cost: Optional[float] = None
    start: Optional[UtcDatetime] = None
    venue: Optional[str] = None
    recorded_at: UtcDatetime = Field(default_factory=utc_now)

    @classmethod
    def for_event(cls, event: CanonicalEvent, interaction_type: InteractionType, now: Optional[datetime] = None) -> "Interaction":
        return cls(
            event_id=event.id,
            interaction_type=interaction_type,
            title=event.title,
            description=event.description,
            source=event.sources[0] if event.sources else None,
            cost=event.cost,
            start=event.start,
            venue=event.location.venue or event.location.address,
            recorded_at=now or utc_now(),
        )
