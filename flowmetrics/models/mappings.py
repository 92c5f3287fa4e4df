"""
Stage mapping and metric definition models.

A stage mapping addresses its start and end stage either by CRM stage ID or,
for legacy rows, by stage name. The two forms are a tagged union validated
once when the mapping is written; everything downstream works with the typed
address.
"""

import re
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .enums import MatchMode
from .events import utcnow

METRIC_KEY_PATTERN = re.compile(r"^[a-z0-9-]+$")
SAME_STAGE_MESSAGE = "Start stage and end stage must be different"


class StageIdAddress(BaseModel):
    """Start/end stages addressed by CRM stage ID (authoritative)."""

    kind: Literal["id"] = "id"
    start_stage_id: int
    end_stage_id: int

    @model_validator(mode="after")
    def validate_distinct(self) -> "StageIdAddress":
        if self.start_stage_id == self.end_stage_id:
            raise ValueError(SAME_STAGE_MESSAGE)
        return self

    @property
    def match_mode(self) -> MatchMode:
        return MatchMode.ID


class StageNameAddress(BaseModel):
    """
    Start/end stages addressed by stage display name.

    Names can be renamed upstream, so this form is only a fallback for
    mappings that predate stage IDs.
    """

    kind: Literal["name"] = "name"
    start_stage: str = Field(min_length=1)
    end_stage: str = Field(min_length=1)

    @model_validator(mode="after")
    def validate_distinct(self) -> "StageNameAddress":
        if self.start_stage == self.end_stage:
            raise ValueError(SAME_STAGE_MESSAGE)
        return self

    @property
    def match_mode(self) -> MatchMode:
        return MatchMode.NAME


StageAddress = Annotated[Union[StageIdAddress, StageNameAddress], Field(discriminator="kind")]


def resolve_stage_address(
    start_stage_id: Optional[int] = None,
    end_stage_id: Optional[int] = None,
    start_stage: Optional[str] = None,
    end_stage: Optional[str] = None,
) -> Union[StageIdAddress, StageNameAddress]:
    """
    Build a typed stage address from loose columns.

    IDs win when both ID columns are set. Otherwise both names must be set.

    Raises:
        ValueError: If neither a complete ID pair nor a complete name pair is given,
            if an ID is not positive, or if start and end are the same stage.
            The message is a single operator-facing sentence.
    """
    if start_stage_id is not None and end_stage_id is not None:
        if start_stage_id <= 0 or end_stage_id <= 0:
            raise ValueError("Stage IDs must be positive")
        if start_stage_id == end_stage_id:
            raise ValueError(SAME_STAGE_MESSAGE)
        return StageIdAddress(start_stage_id=start_stage_id, end_stage_id=end_stage_id)

    start_name = start_stage.strip() if start_stage else ""
    end_name = end_stage.strip() if end_stage else ""
    if start_name and end_name:
        if start_name == end_name:
            raise ValueError(SAME_STAGE_MESSAGE)
        return StageNameAddress(start_stage=start_name, end_stage=end_name)

    raise ValueError(
        "Mapping must define both start and end stage IDs, or both start and end stage names"
    )


class StageMappingInput(BaseModel):
    """
    Loose write-side shape of a stage mapping, as an operator submits it.

    Nothing here is cross-validated; the mapping store checks the whole
    payload and reports every problem at once.
    """

    canonical_stage: str = Field(description="Business-process stage name, e.g. 'Procurement'")
    start_stage_id: Optional[int] = None
    end_stage_id: Optional[int] = None
    start_stage: Optional[str] = None
    end_stage: Optional[str] = None
    avg_min_days: Optional[int] = Field(default=None, description="At or below: on target")
    avg_max_days: Optional[int] = Field(default=None, description="At or above: attention")
    metric_comment: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "canonical_stage": "Procurement",
                "start_stage_id": 12,
                "end_stage_id": 15,
                "avg_min_days": 5,
                "avg_max_days": 10,
                "metric_comment": "Supplier lead times rose after the holidays.",
            }
        }
    )


class StageMapping(BaseModel):
    """A validated stage mapping with its typed address."""

    mapping_id: int
    canonical_stage: str = Field(min_length=1)
    address: StageAddress
    avg_min_days: Optional[int] = Field(default=None, ge=0)
    avg_max_days: Optional[int] = Field(default=None, ge=0)
    metric_comment: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def validate_thresholds(self) -> "StageMapping":
        if (
            self.avg_min_days is not None
            and self.avg_max_days is not None
            and self.avg_min_days > self.avg_max_days
        ):
            raise ValueError("avg_min_days must be <= avg_max_days")
        return self

    @property
    def match_mode(self) -> MatchMode:
        return self.address.match_mode


class MetricDefinitionInput(BaseModel):
    """Write-side shape of a metric definition."""

    metric_key: str = Field(description="Lowercase letters, digits and hyphens")
    display_title: str
    canonical_stage: str
    sort_order: int = 0
    is_active: bool = True


class MetricDefinitionUpdate(BaseModel):
    """Partial update of a metric definition; unset fields are left alone."""

    metric_key: Optional[str] = None
    display_title: Optional[str] = None
    canonical_stage: Optional[str] = None
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None


class MetricDefinition(BaseModel):
    """A dashboard metric, linked to one stage mapping by canonical stage."""

    metric_id: int
    metric_key: str
    display_title: str = Field(min_length=1)
    canonical_stage: str
    sort_order: int = 0
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("metric_key")
    @classmethod
    def validate_metric_key(cls, v: str) -> str:
        if not METRIC_KEY_PATTERN.match(v):
            raise ValueError("metric_key may contain only lowercase letters, digits and hyphens")
        return v
