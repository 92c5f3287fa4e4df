"""
Pydantic v2 data models for the deal flow metrics engine.

Model Organization:
    - enums: Enumeration types (metric status, failure kinds, run states)
    - events: Raw CRM stage events, reconstructed stage intervals, entity metadata
    - mappings: Stage mappings (ID- or name-addressed) and metric definitions
    - metrics: Time windows, per-entity durations and aggregated flow metrics
    - ingestion: Ingestion run reports, progress snapshots and sync-run records

Usage:
    >>> from flowmetrics.models import RawStageEvent
    >>> event = RawStageEvent(
    ...     event_id=1,
    ...     entity_id=4711,
    ...     pipeline_id=1,
    ...     new_stage_id="7",
    ...     new_stage_name="Quote Sent",
    ...     timestamp=datetime(2026, 3, 2, 9, 15),
    ... )
"""

from .enums import EntityState, FailureKind, MatchMode, MetricStatus, SyncStatus, SyncType
from .events import EntityMetadata, RawStageEvent, StageInterval, to_naive_utc, utcnow
from .ingestion import (
    EntityFailure,
    EntityOutcome,
    IngestionProgress,
    IngestionReport,
    SyncRun,
)
from .mappings import (
    METRIC_KEY_PATTERN,
    MetricDefinition,
    MetricDefinitionInput,
    MetricDefinitionUpdate,
    StageAddress,
    StageIdAddress,
    StageMapping,
    StageMappingInput,
    StageNameAddress,
    resolve_stage_address,
)
from .metrics import (
    PERIOD_DAYS,
    DistributionBucket,
    EntityDuration,
    FlowMetric,
    MetricView,
    ResolvedWindow,
    TimeWindow,
)

__all__ = [
    # Enums
    "EntityState",
    "FailureKind",
    "MatchMode",
    "MetricStatus",
    "SyncStatus",
    "SyncType",
    # Events
    "EntityMetadata",
    "RawStageEvent",
    "StageInterval",
    "to_naive_utc",
    "utcnow",
    # Ingestion
    "EntityFailure",
    "EntityOutcome",
    "IngestionProgress",
    "IngestionReport",
    "SyncRun",
    # Mappings
    "METRIC_KEY_PATTERN",
    "MetricDefinition",
    "MetricDefinitionInput",
    "MetricDefinitionUpdate",
    "StageAddress",
    "StageIdAddress",
    "StageMapping",
    "StageMappingInput",
    "StageNameAddress",
    "resolve_stage_address",
    # Metrics
    "PERIOD_DAYS",
    "DistributionBucket",
    "EntityDuration",
    "FlowMetric",
    "MetricView",
    "ResolvedWindow",
    "TimeWindow",
]
