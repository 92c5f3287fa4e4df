"""
Pytest configuration and shared fixtures for the flow metrics test suite.

Data factories, an in-memory storage double, a scriptable stage-event source
and environment isolation shared by the unit, integration and golden suites.
"""

import asyncio
import os
import tempfile
import uuid as _uuid
from datetime import datetime, timedelta
from typing import Optional

import pytest

# Set testing environment BEFORE importing app
# Use temp path (must not exist - DuckDB creates the file).
_test_dir = tempfile.mkdtemp(prefix="flowmetrics_test_")
os.environ["TESTING"] = "true"
os.environ["DB_PATH"] = os.path.join(_test_dir, f"flowmetrics_{_uuid.uuid4().hex[:8]}.duckdb")
os.environ["FAILED_IDS_PATH"] = os.path.join(_test_dir, "failed-entity-ids.txt")
os.environ["LOG_FORMAT"] = "console"
os.environ["INGESTION_BATCH_DELAY_SECONDS"] = "0"


from flowmetrics.config import IngestionConfig
from flowmetrics.connectors.pipedrive_client import SourceTransientError
from flowmetrics.models.enums import SyncStatus
from flowmetrics.models.events import EntityMetadata, RawStageEvent, StageInterval
from flowmetrics.models.ingestion import SyncRun
from flowmetrics.models.mappings import StageMappingInput
from flowmetrics.storage.duckdb_storage import DuckDBStorage, StorageError

T0 = datetime(2026, 3, 2, 9, 0, 0)


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------


def make_raw_event(
    event_id: int,
    entity_id: int = 4711,
    new_stage_id="1",
    timestamp: Optional[datetime] = None,
    new_stage_name: Optional[str] = None,
    pipeline_id: int = 1,
    **overrides,
) -> RawStageEvent:
    """Factory function for creating test RawStageEvent objects."""
    defaults = dict(
        event_id=event_id,
        entity_id=entity_id,
        pipeline_id=pipeline_id,
        new_stage_id=new_stage_id,
        new_stage_name=new_stage_name,
        old_stage_id=None,
        timestamp=timestamp or T0,
    )
    defaults.update(overrides)
    return RawStageEvent(**defaults)


def make_history(
    entity_id: int,
    stages: list[tuple[int, datetime]],
    first_event_id: Optional[int] = None,
) -> list[RawStageEvent]:
    """Stage-change events entering each (stage_id, timestamp) in turn."""
    base = first_event_id if first_event_id is not None else entity_id * 100
    return [
        make_raw_event(
            event_id=base + index,
            entity_id=entity_id,
            new_stage_id=str(stage_id),
            new_stage_name=f"Stage {stage_id}",
            timestamp=timestamp,
        )
        for index, (stage_id, timestamp) in enumerate(stages)
    ]


def make_interval(
    event_id: int,
    entity_id: int = 4711,
    stage_id: int = 1,
    entered_at: Optional[datetime] = None,
    left_at: Optional[datetime] = None,
    stage_name: Optional[str] = None,
    **overrides,
) -> StageInterval:
    """Factory function for creating test StageInterval objects."""
    entered_at = entered_at or T0
    defaults = dict(
        event_id=event_id,
        entity_id=entity_id,
        pipeline_id=1,
        stage_id=stage_id,
        stage_name=stage_name or f"Stage {stage_id}",
        entered_at=entered_at,
        left_at=left_at,
        duration_seconds=int((left_at - entered_at).total_seconds()) if left_at else None,
    )
    defaults.update(overrides)
    return StageInterval(**defaults)


def make_mapping_input(
    canonical_stage: str = "Procurement",
    start_stage_id: Optional[int] = 1,
    end_stage_id: Optional[int] = 2,
    avg_min_days: Optional[int] = 1,
    avg_max_days: Optional[int] = 10,
    **overrides,
) -> StageMappingInput:
    """Factory function for creating test StageMappingInput objects."""
    defaults = dict(
        canonical_stage=canonical_stage,
        start_stage_id=start_stage_id,
        end_stage_id=end_stage_id,
        avg_min_days=avg_min_days,
        avg_max_days=avg_max_days,
    )
    defaults.update(overrides)
    return StageMappingInput(**defaults)


def make_ingestion_config(tmp_path=None, **overrides) -> IngestionConfig:
    """Ingestion config with no inter-batch delay, suited to tests."""
    defaults = dict(
        batch_size=40,
        batch_delay_seconds=0.0,
        entity_timeout_seconds=5.0,
        progress_every=100,
        failed_ids_path=(tmp_path / "failed-entity-ids.txt") if tmp_path is not None else None,
    )
    defaults.update(overrides)
    return IngestionConfig(**defaults)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class MockStorage:
    """
    In-memory stand-in for the ingestion-side storage methods.

    Intervals are keyed by event_id; once closed an interval is never
    rewritten, matching the DuckDB backend.
    """

    def __init__(self):
        self.intervals: dict[int, StageInterval] = {}
        self.metadata: dict[int, EntityMetadata] = {}
        self.sync_runs: dict[str, SyncRun] = {}
        self.upsert_calls = 0
        self.fail_entity_ids: set[int] = set()

    def upsert_intervals(self, intervals):
        self.upsert_calls += 1
        for interval in intervals:
            if interval.entity_id in self.fail_entity_ids:
                raise StorageError(f"Simulated write failure for {interval.entity_id}")
        for interval in intervals:
            existing = self.intervals.get(interval.event_id)
            if existing is not None and not existing.is_open:
                continue
            self.intervals[interval.event_id] = interval
        return len(intervals)

    def read_intervals(self, entity_id=None):
        rows = [i for i in self.intervals.values() if entity_id is None or i.entity_id == entity_id]
        return sorted(rows, key=lambda i: (i.entity_id, i.entered_at, i.event_id))

    def count_intervals(self, entity_id=None):
        return len(self.read_intervals(entity_id))

    def interval_stats(self):
        rows = list(self.intervals.values())
        return {
            "total_records": len(rows),
            "entities": len({i.entity_id for i in rows}),
            "open_intervals": sum(1 for i in rows if i.is_open),
            "oldest": min(i.entered_at for i in rows).isoformat() if rows else None,
            "newest": max(i.entered_at for i in rows).isoformat() if rows else None,
        }

    def purge_intervals_before(self, cutoff):
        stale = [k for k, i in self.intervals.items() if i.entered_at < cutoff]
        for key in stale:
            del self.intervals[key]
        return len(stale)

    def upsert_entity_metadata(self, metadata):
        existing = self.metadata.get(metadata.entity_id)
        if existing is not None:
            metadata = metadata.model_copy(update={"first_fetched_at": existing.first_fetched_at})
        self.metadata[metadata.entity_id] = metadata

    def read_entity_metadata(self, entity_id):
        return self.metadata.get(entity_id)

    def write_sync_run(self, run):
        self.sync_runs[run.run_id] = run.model_copy(deep=True)
        return run.run_id

    def read_sync_runs(self, limit=10):
        runs = sorted(self.sync_runs.values(), key=lambda r: r.started_at, reverse=True)
        return runs[:limit]

    def read_last_completed_sync(self):
        completed = [r for r in self.sync_runs.values() if r.status == SyncStatus.COMPLETED]
        return max(completed, key=lambda r: r.completed_at, default=None)


class FakeSource:
    """
    Scriptable stage-event source.

    Attributes:
        histories: entity_id -> raw events returned for it
        failures: entity_id -> number of calls that raise before succeeding
            (use a large number for "always fails")
        error_factory: Builds the exception raised for a scripted failure
        delays: entity_id -> seconds to sleep before answering
        deals: Descriptors returned by list_deals_updated_since
    """

    def __init__(self, histories=None, failures=None, delays=None, deals=None, error_factory=None):
        self.histories = histories or {}
        self.failures = dict(failures or {})
        self.delays = delays or {}
        self.deals = deals or []
        self.error_factory = error_factory or (
            lambda entity_id: SourceTransientError(f"Simulated failure for {entity_id}", 503)
        )
        self.calls: list[int] = []
        self.listed_since: list[datetime] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def fetch_stage_events(self, entity_id: int) -> list[RawStageEvent]:
        self.calls.append(entity_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get(entity_id, 0)
            if delay:
                await asyncio.sleep(delay)
            else:
                await asyncio.sleep(0)
            remaining = self.failures.get(entity_id, 0)
            if remaining > 0:
                self.failures[entity_id] = remaining - 1
                raise self.error_factory(entity_id)
            return list(self.histories.get(entity_id, []))
        finally:
            self.in_flight -= 1

    async def list_deals_updated_since(self, since: datetime) -> list[dict]:
        self.listed_since.append(since)
        return list(self.deals)


def simple_history(entity_id: int, start: datetime = T0, days: float = 2.0) -> list[RawStageEvent]:
    """Stage 1 at `start`, stage 2 `days` later."""
    return make_history(entity_id, [(1, start), (2, start + timedelta(days=days))])


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_storage():
    """Fresh MockStorage instance for each test."""
    return MockStorage()


@pytest.fixture
def duckdb_storage(tmp_path):
    """A DuckDB-backed storage in a per-test temporary file."""
    return DuckDBStorage(db_path=str(tmp_path / "flowmetrics.duckdb"))


@pytest.fixture
def client():
    """Test client bound to the shared TESTING database, cleared per test."""
    from fastapi.testclient import TestClient

    from flowmetrics.main import app
    from flowmetrics.storage import get_storage

    get_storage().clear_for_testing()
    with TestClient(app) as c:
        yield c
