"""
Ingestion run models: per-entity outcomes, progress snapshots, run reports
and the persisted sync-run record.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .enums import EntityState, FailureKind, SyncStatus, SyncType
from .events import utcnow


class EntityFailure(BaseModel):
    """Why one entity could not be ingested."""

    entity_id: int
    kind: FailureKind
    reason: str
    attempts: int = 1


class EntityOutcome(BaseModel):
    """Result of one attempt at one entity."""

    entity_id: int
    state: EntityState
    intervals_written: int = 0
    no_data: bool = False
    failure: Optional[EntityFailure] = None


class IngestionProgress(BaseModel):
    """Snapshot emitted periodically while a run is in flight."""

    phase: str = Field(description="'initial' or 'retry'")
    processed: int
    total: int
    elapsed_seconds: float
    rate_per_second: float
    eta_seconds: Optional[float] = None

    @property
    def percent(self) -> float:
        return round(self.processed / self.total * 100, 1) if self.total else 100.0


class IngestionReport(BaseModel):
    """
    Final summary of an ingestion run.

    `failed` lists only entities that still failed after the retry pass.
    `retried` lists every entity that went through the retry pass.
    """

    run_id: str
    sync_type: SyncType = SyncType.IDS
    status: SyncStatus = SyncStatus.COMPLETED
    total: int = 0
    succeeded: int = 0
    failed: list[EntityFailure] = Field(default_factory=list)
    retried: list[int] = Field(default_factory=list)
    no_data: list[int] = Field(default_factory=list)
    skipped: list[int] = Field(default_factory=list)
    intervals_written: int = 0
    purged_intervals: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    elapsed_ms: int = 0

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def failed_ids(self) -> list[int]:
        return [f.entity_id for f in self.failed]

    def summary(self) -> str:
        """Human-readable multi-line summary for operators."""
        lines = [
            f"Ingestion {self.status.value}: {self.succeeded}/{self.total} succeeded, "
            f"{self.failed_count} failed in {self.elapsed_ms / 1000:.1f}s",
            f"Intervals written: {self.intervals_written}",
        ]
        if self.retried:
            lines.append(f"Retried: {len(self.retried)}")
        if self.no_data:
            lines.append(f"No flow data found: {len(self.no_data)}")
        if self.skipped:
            lines.append(f"Skipped (cancelled): {len(self.skipped)}")
        for failure in self.failed:
            lines.append(f"  {failure.entity_id}: [{failure.kind.value}] {failure.reason}")
        return "\n".join(lines)


class SyncRun(BaseModel):
    """Persisted bookkeeping record for one ingestion run."""

    run_id: str
    sync_type: SyncType
    status: SyncStatus = SyncStatus.RUNNING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    total_entities: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    failures: list[EntityFailure] = Field(default_factory=list)
    error: Optional[str] = None
    duration_seconds: Optional[float] = None
