"""
Abstract storage interface for the deal flow metrics engine.

The backing store is the only shared mutable resource in the engine. All
persistence goes through this contract so the engine can be tested against an
in-memory fake and run against DuckDB without code changes.

Tables:
- Intervals: reconstructed stage occupancy, keyed by source event ID
- Entity metadata: per-deal freshness cache
- Configuration: stage mappings and metric definitions
- Operational: sync-run bookkeeping
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Union

from flowmetrics.models.events import EntityMetadata, StageInterval
from flowmetrics.models.ingestion import SyncRun
from flowmetrics.models.mappings import (
    MetricDefinition,
    MetricDefinitionInput,
    StageIdAddress,
    StageMapping,
    StageNameAddress,
)
from flowmetrics.models.metrics import EntityDuration, ResolvedWindow


class StorageBackend(ABC):
    """
    Abstract base class for all storage implementations.

    Implementations must make interval writes idempotent on event_id and
    must never rewrite an interval that is already closed.
    """

    # =========================================================================
    # Stage Intervals
    # =========================================================================

    @abstractmethod
    def upsert_intervals(self, intervals: list[StageInterval]) -> int:
        """
        Insert or update intervals keyed by event_id.

        A stored open interval takes the incoming left_at/duration_seconds.
        A stored closed interval is left untouched.

        Returns:
            Number of intervals written or refreshed

        Raises:
            StorageError: If the write fails (nothing from the call is kept)
        """
        pass

    @abstractmethod
    def read_intervals(self, entity_id: Optional[int] = None) -> list[StageInterval]:
        """Read intervals ordered by entity, then entered_at."""
        pass

    @abstractmethod
    def count_intervals(self, entity_id: Optional[int] = None) -> int:
        """Count stored intervals, optionally for one entity."""
        pass

    @abstractmethod
    def interval_stats(self) -> dict:
        """
        Summary of stored flow data.

        Returns:
            {"total_records", "entities", "open_intervals", "oldest", "newest"}
        """
        pass

    @abstractmethod
    def purge_intervals_before(self, cutoff: datetime) -> int:
        """Delete intervals that were entered before cutoff. Returns rows deleted."""
        pass

    @abstractmethod
    def read_stage_pair_durations(
        self,
        address: Union[StageIdAddress, StageNameAddress],
        window: Optional[ResolvedWindow] = None,
    ) -> list[EntityDuration]:
        """
        Per-entity start/end points for a stage pair.

        The start point is the entity's first entry into the start stage; the
        end point is its first entry into the end stage at or after that
        start. Entities with no end point are returned with ended_at=None.
        The window restricts on the start point and is applied in the query.
        """
        pass

    # =========================================================================
    # Entity Metadata
    # =========================================================================

    @abstractmethod
    def upsert_entity_metadata(self, metadata: EntityMetadata) -> None:
        """Insert or refresh metadata, preserving first_fetched_at."""
        pass

    @abstractmethod
    def read_entity_metadata(self, entity_id: int) -> Optional[EntityMetadata]:
        pass

    # =========================================================================
    # Stage Mappings
    # =========================================================================

    @abstractmethod
    def write_mapping(
        self,
        canonical_stage: str,
        address: Union[StageIdAddress, StageNameAddress],
        avg_min_days: Optional[int] = None,
        avg_max_days: Optional[int] = None,
        metric_comment: Optional[str] = None,
    ) -> StageMapping:
        """Insert a new mapping and return it with its assigned ID."""
        pass

    @abstractmethod
    def update_mapping(
        self,
        mapping_id: int,
        canonical_stage: str,
        address: Union[StageIdAddress, StageNameAddress],
        avg_min_days: Optional[int] = None,
        avg_max_days: Optional[int] = None,
        metric_comment: Optional[str] = None,
    ) -> Optional[StageMapping]:
        """Replace a mapping's content. Returns None if it does not exist."""
        pass

    @abstractmethod
    def update_mapping_comment(
        self, mapping_id: int, metric_comment: Optional[str]
    ) -> Optional[StageMapping]:
        pass

    @abstractmethod
    def read_mapping(self, mapping_id: int) -> Optional[StageMapping]:
        pass

    @abstractmethod
    def read_mapping_by_stage(self, canonical_stage: str) -> Optional[StageMapping]:
        pass

    @abstractmethod
    def read_mappings(self) -> list[StageMapping]:
        """All mappings ordered by canonical stage."""
        pass

    @abstractmethod
    def delete_mapping(self, mapping_id: int) -> bool:
        pass

    # =========================================================================
    # Metric Definitions
    # =========================================================================

    @abstractmethod
    def write_definition(self, definition: MetricDefinitionInput) -> MetricDefinition:
        pass

    @abstractmethod
    def update_definition(self, metric_id: int, **updates) -> Optional[MetricDefinition]:
        """Update selected columns. Returns None if the definition does not exist."""
        pass

    @abstractmethod
    def read_definition(self, metric_id: int) -> Optional[MetricDefinition]:
        pass

    @abstractmethod
    def read_definition_by_key(self, metric_key: str) -> Optional[MetricDefinition]:
        pass

    @abstractmethod
    def read_definitions(self, active_only: bool = False) -> list[MetricDefinition]:
        """Definitions ordered by sort_order, then display_title."""
        pass

    @abstractmethod
    def delete_definition(self, metric_id: int) -> bool:
        pass

    # =========================================================================
    # Sync Runs
    # =========================================================================

    @abstractmethod
    def write_sync_run(self, run: SyncRun) -> str:
        """Insert or replace a sync-run record. Returns its run_id."""
        pass

    @abstractmethod
    def read_sync_runs(self, limit: int = 10) -> list[SyncRun]:
        """Most recent runs first."""
        pass

    @abstractmethod
    def read_last_completed_sync(self) -> Optional[SyncRun]:
        pass
