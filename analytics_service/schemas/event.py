# Pydantic schemas

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from datetime import datetime
from uuid import UUID
from typing import Any

from analytics_service.core.config import settings


class EventCreate(BaseModel):
    """Schema for tracking a single event

    ``type`` is also accepted as ``event`` (the SDK's wire name); identifiers
    are accepted in camelCase or snake_case.
    """

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    type: str = Field(..., min_length=1, max_length=100, validation_alias=AliasChoices("type", "event"))
    properties: dict[str, Any] = Field(default_factory=dict)
    user_id: str | None = Field(default=None, max_length=255, validation_alias=AliasChoices("userId", "user_id"))
    session_id: str | None = Field(
        default=None, max_length=255, validation_alias=AliasChoices("sessionId", "session_id")
    )
    # Parsed leniently by the pipeline; unparseable values fall back to ingestion time
    timestamp: datetime | str | None = None

    @field_validator('type')
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError('Field cannot be empty or whitespace')
        return v.strip()


class EventBatchCreate(BaseModel):
    """Schema for batch event tracking"""

    events: list[EventCreate] = Field(..., min_length=1, max_length=settings.max_batch_size)


class TrackResponse(BaseModel):
    """Response for single event tracking"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    event_id: UUID
    timestamp: datetime


class BatchTrackResponse(BaseModel):
    """Response for batch tracking"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    event_ids: list[UUID]
    count: int


class EventResponse(BaseModel):
    """A stored event as read back from either store"""

    id: UUID
    event_type: str
    properties: dict[str, Any]
    user_id: str | None = None
    session_id: str | None = None
    timestamp: datetime

    model_config = {"from_attributes": True}


class EventListResponse(BaseModel):
    """Durable store listing"""

    events: list[EventResponse]
    count: int
    offset: int
    limit: int
