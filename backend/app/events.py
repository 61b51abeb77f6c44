import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class EventCategory(str, Enum):
    USER = "user"
    LESSON = "lesson"
    CERTIFICATION = "certification"
    PAYMENT = "payment"
    AI = "ai"
    GAMIFICATION = "gamification"


class InvalidEventError(ValueError):
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


class NewEvent(BaseModel):
    """An event as submitted for ingestion, before it gets an id and timestamp."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    event_name: str
    category: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip: Optional[str] = None
    country: Optional[str] = None
    referrer: Optional[str] = None


class AnalyticsEvent(NewEvent):
    id: str
    timestamp: datetime

    @classmethod
    def from_new(cls, event: NewEvent, timestamp: datetime) -> "AnalyticsEvent":
        return cls(id=new_event_id(), timestamp=timestamp, **event.model_dump())

    def prop(self, key: str) -> Any:
        return self.properties.get(key)


class _Properties(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, strict=True)


class UserProperties(_Properties):
    page: Optional[str] = None
    referrer: Optional[str] = None


class LessonProperties(_Properties):
    lesson_id: str = Field(alias="lessonId")
    action: Optional[str] = None
    time_spent: Optional[float] = Field(None, alias="timeSpent", ge=0)
    completion_percentage: Optional[float] = Field(None, alias="completionPercentage", ge=0, le=100)


class AIProperties(_Properties):
    question: Optional[str] = Field(None, max_length=100)
    response_length: Optional[int] = Field(None, alias="responseLength", ge=0)
    response_time: Optional[float] = Field(None, alias="responseTime", ge=0)
    language: Optional[str] = None
    satisfaction: Optional[float] = Field(None, ge=0, le=5)


class CertificationProperties(_Properties):
    certification_id: str = Field(alias="certificationId")
    score: Optional[float] = None
    passed: Optional[bool] = None
    time_spent: Optional[float] = Field(None, alias="timeSpent", ge=0)


class PaymentProperties(_Properties):
    amount: Optional[float] = Field(None, ge=0)
    plan: Optional[str] = None
    currency: Optional[str] = None


class GamificationProperties(_Properties):
    points: Optional[int] = None
    achievement_id: Optional[str] = Field(None, alias="achievementId")
    level: Optional[int] = Field(None, ge=0)


PROPERTY_SCHEMAS: Dict[EventCategory, Type[_Properties]] = {
    EventCategory.USER: UserProperties,
    EventCategory.LESSON: LessonProperties,
    EventCategory.AI: AIProperties,
    EventCategory.CERTIFICATION: CertificationProperties,
    EventCategory.PAYMENT: PaymentProperties,
    EventCategory.GAMIFICATION: GamificationProperties,
}


def validate_event(event: NewEvent) -> None:
    """Check that the category is known and the properties fit its schema.

    Raises InvalidEventError describing the first problem found.
    """
    try:
        category = EventCategory(event.category)
    except ValueError:
        raise InvalidEventError(f"Unknown category: {event.category!r}")

    for key, value in event.properties.items():
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise InvalidEventError(f"Property {key!r} must be a scalar, got {type(value).__name__}")

    try:
        PROPERTY_SCHEMAS[category].model_validate(event.properties)
    except ValidationError as exc:
        raise InvalidEventError(f"Invalid {category.value} properties: {exc.errors()[0]['msg']}")
