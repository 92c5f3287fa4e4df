"""
Flow metric models: time windows, per-entity durations and aggregate results.
"""

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .enums import MatchMode, MetricStatus
from .mappings import MetricDefinition, StageMapping

# Dashboard period codes and the number of days each one covers.
PERIOD_DAYS = {
    "7d": 7,
    "14d": 14,
    "1m": 30,
    "3m": 90,
}


class ResolvedWindow(BaseModel):
    """Concrete bounds a window resolved to. A None bound is unbounded."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None


class TimeWindow(BaseModel):
    """
    Optional restriction on which entities a metric covers.

    Either since_days (relative to the start of the current UTC day) or an
    explicit start/end pair, never both. The window is applied to the moment
    an entity entered the mapping's start stage.
    """

    since_days: Optional[int] = Field(default=None, ge=1)
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_shape(self) -> "TimeWindow":
        if self.since_days is not None and (self.start is not None or self.end is not None):
            raise ValueError("Use either since_days or start/end, not both")
        if self.since_days is None and self.start is None and self.end is None:
            raise ValueError("A time window needs since_days or a start/end bound")
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError("Window start must not be after window end")
        return self

    @classmethod
    def from_period(cls, period: Optional[str]) -> Optional["TimeWindow"]:
        """
        Parse a dashboard period code.

        Args:
            period: One of 7d, 14d, 1m, 3m or all. None and "all" mean no window.

        Raises:
            ValueError: For unknown period codes.
        """
        if period is None or period == "all":
            return None
        if period not in PERIOD_DAYS:
            raise ValueError(f"Unknown period '{period}', expected one of 7d, 14d, 1m, 3m, all")
        return cls(since_days=PERIOD_DAYS[period])

    def resolve(self, now: datetime) -> ResolvedWindow:
        """Resolve to absolute bounds. since_days is anchored to UTC midnight of `now`."""
        if self.since_days is not None:
            midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
            return ResolvedWindow(start=midnight - timedelta(days=self.since_days))
        return ResolvedWindow(start=self.start, end=self.end)


class EntityDuration(BaseModel):
    """Elapsed time between start and end stage for one entity."""

    entity_id: int
    title: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    days: Optional[float] = Field(default=None, description="None while still in progress")

    @property
    def in_progress(self) -> bool:
        return self.ended_at is None


class DistributionBucket(BaseModel):
    """Completed-entity count whose duration falls in [lower_days, upper_days)."""

    lower_days: float
    upper_days: Optional[float] = Field(default=None, description="None for the open last bucket")
    count: int = 0


class FlowMetric(BaseModel):
    """Aggregated stage-to-stage duration for one canonical stage."""

    canonical_stage: str
    match_mode: MatchMode
    count: int = Field(default=0, description="Entities with both a start and an end")
    in_progress_count: int = Field(default=0, description="Entities started but not finished")
    average_days: float = 0.0
    best_days: Optional[float] = None
    worst_days: Optional[float] = None
    median_days: Optional[float] = None
    distribution: list[DistributionBucket] = Field(default_factory=list)
    window_applied: bool = False
    window: Optional[ResolvedWindow] = None

    @property
    def has_data(self) -> bool:
        return self.count > 0


class MetricView(BaseModel):
    """A flow metric together with its mapping, definition and status."""

    canonical_stage: str
    average: float
    count: int
    status: MetricStatus
    mapping: StageMapping
    definition: Optional[MetricDefinition] = None
    metric: FlowMetric
    entities: Optional[list[EntityDuration]] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "canonical_stage": "Procurement",
                "average": 7.42,
                "count": 18,
                "status": "watch",
            }
        }
    )
