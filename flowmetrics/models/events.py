"""
Stage event and interval models.

RawStageEvent is what the CRM reports; StageInterval is what the normalizer
reconstructs from it and what storage persists. All datetimes are naive UTC.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class RawStageEvent(BaseModel):
    """
    One CRM-reported stage transition for one entity.

    new_stage_id is kept as the raw string the source sent; the normalizer
    decides whether it is usable.
    """

    model_config = ConfigDict(frozen=True)

    event_id: int = Field(description="External event ID, globally unique")
    entity_id: int = Field(description="CRM entity (deal) ID")
    pipeline_id: int = Field(description="Pipeline the entity was in")
    new_stage_id: Optional[str] = Field(default=None, description="Stage entered (raw)")
    new_stage_name: Optional[str] = Field(default=None, description="Display name of stage entered")
    old_stage_id: Optional[str] = Field(default=None, description="Stage left (raw)")
    timestamp: datetime = Field(description="When the transition happened")

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return to_naive_utc(v)

    @field_validator("new_stage_id", "old_stage_id", mode="before")
    @classmethod
    def coerce_stage_id(cls, v):
        if v is None:
            return None
        return str(v)


class StageInterval(BaseModel):
    """
    A reconstructed period during which an entity occupied one stage.

    left_at is None while the entity is still in the stage. Once closed,
    duration_seconds is the whole number of seconds between entry and exit.
    """

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "event_id": 900123,
                "entity_id": 4711,
                "pipeline_id": 1,
                "stage_id": 7,
                "stage_name": "Quote Sent",
                "entered_at": "2026-03-02T09:15:00",
                "left_at": "2026-03-05T16:40:00",
                "duration_seconds": 285900,
            }
        },
    )

    event_id: int = Field(description="Source event that opened this interval")
    entity_id: int
    pipeline_id: int
    stage_id: int
    stage_name: str
    entered_at: datetime
    left_at: Optional[datetime] = None
    duration_seconds: Optional[int] = Field(default=None, ge=0)

    @field_validator("entered_at", "left_at")
    @classmethod
    def normalize_datetimes(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v) if v is not None else None

    @model_validator(mode="after")
    def validate_bounds(self) -> "StageInterval":
        """left_at must not precede entered_at; duration is set iff closed."""
        if self.left_at is not None and self.left_at < self.entered_at:
            raise ValueError("left_at must be >= entered_at")
        if (self.left_at is None) != (self.duration_seconds is None):
            raise ValueError("duration_seconds must be set exactly when left_at is set")
        return self

    @property
    def is_open(self) -> bool:
        return self.left_at is None


class EntityMetadata(BaseModel):
    """Cached per-entity descriptor, refreshed on every ingestion of the entity."""

    entity_id: int
    title: str
    current_pipeline_id: Optional[int] = None
    current_stage_id: Optional[int] = None
    status: Optional[str] = None
    first_fetched_at: datetime = Field(default_factory=utcnow)
    last_fetched_at: datetime = Field(default_factory=utcnow)
