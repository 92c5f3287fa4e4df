"""
Ingestion service: CRM stage histories into stored stage intervals.

This module coordinates the ingestion workflow:
1. Batching: entity IDs are processed in fixed-size concurrent batches with a
   fixed pause between batches, keeping the aggregate request rate under the
   CRM's limit
2. Per entity: fetch history, normalize, verify, upsert intervals and metadata,
   all under one timeout
3. Retry: entities that failed the first pass go through the same batching
   exactly once more; whatever still fails is reported and written to a file
   for manual re-run
4. Bookkeeping: every run is recorded as a sync run (running, then completed,
   failed or cancelled)

Interval upserts are keyed by source event ID, so re-running any part of a
run is safe. Two simultaneous runs over the same entity are not coordinated;
callers should avoid starting overlapping runs.
"""

import asyncio
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Protocol
from uuid import uuid4

import structlog

from flowmetrics.config import IngestionConfig
from flowmetrics.connectors.pipedrive_client import SourceUnavailable
from flowmetrics.engine.normalizer import (
    ConsistencyViolation,
    EventNormalizer,
    InvalidStageEvent,
    check_non_overlapping,
)
from flowmetrics.models.enums import EntityState, FailureKind, SyncStatus, SyncType
from flowmetrics.models.events import EntityMetadata, RawStageEvent, StageInterval, utcnow
from flowmetrics.models.ingestion import (
    EntityFailure,
    EntityOutcome,
    IngestionProgress,
    IngestionReport,
    SyncRun,
)
from flowmetrics.storage.base import StorageBackend
from flowmetrics.storage.duckdb_storage import StorageError
from flowmetrics.utils.logging import ingestion_log_context

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[IngestionProgress], None]

# Legal per-entity state transitions
_TRANSITIONS = {
    EntityState.PENDING: {EntityState.ATTEMPTED},
    EntityState.ATTEMPTED: {
        EntityState.SUCCEEDED,
        EntityState.FAILED_ONCE,
        EntityState.FAILED_FINAL,
    },
    EntityState.FAILED_ONCE: {EntityState.ATTEMPTED},
    EntityState.SUCCEEDED: set(),
    EntityState.FAILED_FINAL: set(),
}


class IngestionError(Exception):
    """Raised when a run fails as a whole (not for per-entity failures)."""

    pass


class StageEventSource(Protocol):
    """Anything that can fetch one entity's raw stage events."""

    async def fetch_stage_events(self, entity_id: int) -> list[RawStageEvent]:
        ...


class DealListingSource(StageEventSource, Protocol):
    """A source that can also list deals by update time."""

    async def list_deals_updated_since(self, since: datetime) -> list[dict[str, Any]]:
        ...


class ProgressTracker:
    """
    Periodic progress signal for one pass of a run.

    Logs `ingestion_progress` each time another `every` entities have been
    processed, and once at the end, with throughput and ETA derived from
    elapsed time.
    """

    def __init__(
        self,
        total: int,
        phase: str,
        every: int = 100,
        on_progress: Optional[ProgressCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.total = total
        self.phase = phase
        self.every = every
        self.on_progress = on_progress
        self._clock = clock
        self._started = clock()
        self.processed = 0
        self._next_report = every

    def snapshot(self) -> IngestionProgress:
        elapsed = max(self._clock() - self._started, 0.0)
        rate = self.processed / elapsed if elapsed > 0 else 0.0
        remaining = self.total - self.processed
        eta = remaining / rate if rate > 0 else None
        return IngestionProgress(
            phase=self.phase,
            processed=self.processed,
            total=self.total,
            elapsed_seconds=round(elapsed, 2),
            rate_per_second=round(rate, 2),
            eta_seconds=round(eta, 1) if eta is not None else None,
        )

    def advance(self, count: int = 1) -> None:
        self.processed += count
        if self.processed >= self._next_report or self.processed >= self.total:
            while self._next_report <= self.processed:
                self._next_report += self.every
            self.emit()

    def emit(self) -> None:
        progress = self.snapshot()
        logger.info(
            "ingestion_progress",
            phase=progress.phase,
            processed=progress.processed,
            total=progress.total,
            percent=progress.percent,
            elapsed_seconds=progress.elapsed_seconds,
            rate_per_second=progress.rate_per_second,
            eta_seconds=progress.eta_seconds,
        )
        if self.on_progress is not None:
            self.on_progress(progress)


class IngestionBatcher:
    """
    Two-phase, rate-limited batch ingestion of entity stage histories.

    Per-entity state machine:
        PENDING -> ATTEMPTED -> SUCCEEDED | FAILED_ONCE
        FAILED_ONCE -> ATTEMPTED -> SUCCEEDED | FAILED_FINAL

    Attributes:
        source: Fetches raw stage events per entity
        storage: Interval and metadata persistence
        config: Batch size, delay, timeout, progress interval, failed-ID file
        normalizer: Event normalizer (built from config when omitted)
        states: Entity state after the most recent run

    Example:
        >>> batcher = IngestionBatcher(client, storage, IngestionConfig())
        >>> report = await batcher.run([101, 102, 103])
        >>> report.succeeded, report.failed_ids
        (3, [])
    """

    def __init__(
        self,
        source: StageEventSource,
        storage: StorageBackend,
        config: IngestionConfig,
        normalizer: Optional[EventNormalizer] = None,
        on_progress: Optional[ProgressCallback] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.source = source
        self.storage = storage
        self.config = config
        self.normalizer = normalizer or EventNormalizer(skip_invalid=config.skip_invalid_events)
        self.on_progress = on_progress
        self._sleep = sleep
        self._cancelled = False
        self.states: dict[int, EntityState] = {}

    def cancel(self) -> None:
        """Stop before the next batch. Committed entities stay committed."""
        self._cancelled = True
        logger.warning("ingestion_cancel_requested")

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _transition(self, entity_id: int, new_state: EntityState) -> None:
        current = self.states[entity_id]
        if new_state not in _TRANSITIONS[current]:
            raise RuntimeError(
                f"Illegal state transition for entity {entity_id}: {current.value} -> {new_state.value}"
            )
        self.states[entity_id] = new_state

    async def run(
        self,
        entity_ids: list[int],
        descriptors: Optional[dict[int, dict[str, Any]]] = None,
        sync_type: SyncType = SyncType.IDS,
        run_id: Optional[str] = None,
    ) -> IngestionReport:
        """
        Ingest every entity in `entity_ids`.

        Per-entity failures never escape this method; they are collected,
        retried once and reported.

        Every entity lands in exactly one of succeeded, failed or skipped.
        skipped holds only entities a cancel kept from their first attempt;
        an entity whose retry was cancelled is reported in failed with its
        first failure and is not listed in retried.

        Args:
            entity_ids: Entity IDs, duplicates ignored (first occurrence wins)
            descriptors: Optional per-entity {"title", "status", "pipeline_id",
                "stage_id"} used for entity metadata
            sync_type: Recorded on the report
            run_id: Reuse an existing run ID (defaults to a new UUID)

        Returns:
            IngestionReport
        """
        run_id = run_id or str(uuid4())
        ids = list(dict.fromkeys(entity_ids))
        descriptors = descriptors or {}
        self._cancelled = False
        self.states = {entity_id: EntityState.PENDING for entity_id in ids}
        started_at = utcnow()
        started = time.monotonic()

        logger.info(
            "ingestion_started",
            run_id=run_id,
            sync_type=sync_type.value,
            total=len(ids),
            batch_size=self.config.batch_size,
            batch_delay_seconds=self.config.batch_delay_seconds,
        )

        outcomes: dict[int, EntityOutcome] = {}
        first_pass, skipped = await self._run_pass(ids, "initial", descriptors, final=False)
        outcomes.update(first_pass)

        retried: list[int] = []
        if not self._cancelled:
            retried = [i for i in ids if self.states[i] == EntityState.FAILED_ONCE]
            if retried:
                logger.info("ingestion_retry_started", run_id=run_id, count=len(retried))
                if self.config.batch_delay_seconds:
                    await self._sleep(self.config.batch_delay_seconds)
                second_pass, retry_skipped = await self._run_pass(
                    retried, "retry", descriptors, final=True
                )
                outcomes.update(second_pass)
                # Left FAILED_ONCE by a cancel: reported as failed, not as retried or skipped
                not_retried = set(retry_skipped)
                retried = [i for i in retried if i not in not_retried]

        failed = [
            outcome.failure
            for entity_id, outcome in outcomes.items()
            if outcome.failure is not None
            and self.states[entity_id] in (EntityState.FAILED_FINAL, EntityState.FAILED_ONCE)
        ]
        position = {entity_id: index for index, entity_id in enumerate(ids)}
        failed.sort(key=lambda f: position[f.entity_id])

        report = IngestionReport(
            run_id=run_id,
            sync_type=sync_type,
            status=SyncStatus.CANCELLED if self._cancelled else SyncStatus.COMPLETED,
            total=len(ids),
            succeeded=sum(1 for s in self.states.values() if s == EntityState.SUCCEEDED),
            failed=failed,
            retried=retried,
            no_data=[i for i in ids if i in outcomes and outcomes[i].no_data],
            skipped=skipped,
            intervals_written=sum(o.intervals_written for o in outcomes.values()),
            started_at=started_at,
            completed_at=utcnow(),
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )

        self._write_failed_ids(report)

        log = logger.warning if report.failed else logger.info
        log(
            "ingestion_complete",
            run_id=run_id,
            status=report.status.value,
            total=report.total,
            succeeded=report.succeeded,
            failed=report.failed_count,
            retried=len(report.retried),
            no_data=len(report.no_data),
            skipped=len(report.skipped),
            elapsed_ms=report.elapsed_ms,
        )
        return report

    async def _run_pass(
        self,
        ids: list[int],
        phase: str,
        descriptors: dict[int, dict[str, Any]],
        final: bool,
    ) -> tuple[dict[int, EntityOutcome], list[int]]:
        """One pass over `ids` in batches. Returns outcomes and IDs skipped by cancel."""
        outcomes: dict[int, EntityOutcome] = {}
        tracker = ProgressTracker(
            total=len(ids),
            phase=phase,
            every=self.config.progress_every,
            on_progress=self.on_progress,
        )
        batch_size = self.config.batch_size

        for batch_start in range(0, len(ids), batch_size):
            if batch_start > 0 and self.config.batch_delay_seconds:
                await self._sleep(self.config.batch_delay_seconds)
            if self._cancelled:
                skipped = ids[batch_start:]
                logger.warning(
                    "ingestion_cancelled",
                    phase=phase,
                    processed=batch_start,
                    skipped=len(skipped),
                )
                return outcomes, list(skipped)

            batch = ids[batch_start:batch_start + batch_size]
            results = await asyncio.gather(
                *(self._attempt(entity_id, descriptors.get(entity_id), final) for entity_id in batch)
            )
            for outcome in results:
                outcomes[outcome.entity_id] = outcome

            logger.info(
                "ingestion_batch_complete",
                phase=phase,
                batch=batch_start // batch_size + 1,
                size=len(batch),
                succeeded=sum(1 for o in results if o.state == EntityState.SUCCEEDED),
                failed=sum(1 for o in results if o.failure is not None),
            )
            tracker.advance(len(batch))

        return outcomes, []

    async def _attempt(
        self,
        entity_id: int,
        descriptor: Optional[dict[str, Any]],
        final: bool,
    ) -> EntityOutcome:
        """Run one entity under the timeout and contain any failure."""
        self._transition(entity_id, EntityState.ATTEMPTED)
        attempts = 2 if final else 1
        failed_state = EntityState.FAILED_FINAL if final else EntityState.FAILED_ONCE

        try:
            outcome = await asyncio.wait_for(
                self._ingest_entity(entity_id, descriptor),
                timeout=self.config.entity_timeout_seconds,
            )
        except asyncio.TimeoutError:
            failure = EntityFailure(
                entity_id=entity_id,
                kind=FailureKind.TIMEOUT,
                reason=f"Timed out after {self.config.entity_timeout_seconds}s",
                attempts=attempts,
            )
        except SourceUnavailable as e:
            failure = EntityFailure(
                entity_id=entity_id, kind=e.kind, reason=str(e), attempts=attempts
            )
        except ConsistencyViolation as e:
            logger.critical("interval_consistency_violation", entity_id=entity_id, error=str(e))
            failure = EntityFailure(
                entity_id=entity_id,
                kind=FailureKind.CONSISTENCY,
                reason=str(e),
                attempts=attempts,
            )
        except StorageError as e:
            failure = EntityFailure(
                entity_id=entity_id, kind=FailureKind.STORAGE, reason=str(e), attempts=attempts
            )
        except InvalidStageEvent as e:
            failure = EntityFailure(
                entity_id=entity_id, kind=FailureKind.UNKNOWN, reason=str(e), attempts=attempts
            )
        except Exception as e:
            logger.exception("entity_ingest_unexpected_error", entity_id=entity_id)
            failure = EntityFailure(
                entity_id=entity_id,
                kind=FailureKind.UNKNOWN,
                reason=f"{type(e).__name__}: {e}",
                attempts=attempts,
            )
        else:
            self._transition(entity_id, EntityState.SUCCEEDED)
            return outcome

        self._transition(entity_id, failed_state)
        logger.warning(
            "entity_ingest_failed",
            entity_id=entity_id,
            kind=failure.kind.value,
            reason=failure.reason,
            final=final,
        )
        return EntityOutcome(entity_id=entity_id, state=failed_state, failure=failure)

    async def _ingest_entity(
        self, entity_id: int, descriptor: Optional[dict[str, Any]]
    ) -> EntityOutcome:
        events = await self.source.fetch_stage_events(entity_id)
        result = self.normalizer.normalize(events)

        if result.is_empty:
            logger.info("no_flow_data_found", entity_id=entity_id)
            if descriptor:
                self.storage.upsert_entity_metadata(
                    self._build_metadata(entity_id, [], descriptor)
                )
            return EntityOutcome(
                entity_id=entity_id, state=EntityState.SUCCEEDED, no_data=True
            )

        check_non_overlapping(result.intervals)
        written = self.storage.upsert_intervals(result.intervals)
        self.storage.upsert_entity_metadata(
            self._build_metadata(entity_id, result.intervals, descriptor)
        )

        logger.debug(
            "entity_ingested",
            entity_id=entity_id,
            intervals=written,
            skipped_events=len(result.skipped_event_ids),
        )
        return EntityOutcome(
            entity_id=entity_id, state=EntityState.SUCCEEDED, intervals_written=written
        )

    @staticmethod
    def _build_metadata(
        entity_id: int,
        intervals: list[StageInterval],
        descriptor: Optional[dict[str, Any]],
    ) -> EntityMetadata:
        """Descriptor fields win; otherwise derive from the open interval."""
        descriptor = descriptor or {}
        current = next((i for i in reversed(intervals) if i.is_open), None)
        now = utcnow()
        return EntityMetadata(
            entity_id=entity_id,
            title=descriptor.get("title") or f"Deal {entity_id}",
            current_pipeline_id=descriptor.get("pipeline_id")
            or (current.pipeline_id if current else None),
            current_stage_id=descriptor.get("stage_id") or (current.stage_id if current else None),
            status=descriptor.get("status"),
            first_fetched_at=now,
            last_fetched_at=now,
        )

    def _write_failed_ids(self, report: IngestionReport) -> None:
        """One failed ID per line; the file is removed when nothing failed."""
        path = self.config.failed_ids_path
        if path is None:
            return
        if report.failed:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("\n".join(str(i) for i in report.failed_ids) + "\n")
            logger.info("failed_ids_written", path=str(path), count=report.failed_count)
        elif path.exists():
            path.unlink()


class IngestionService:
    """
    Ingestion runs with sync-run bookkeeping.

    Wraps IngestionBatcher for the three ways a run is started: an explicit
    list of IDs, an incremental sync since the last completed run, and a full
    sync over the retention window followed by a purge of older intervals.
    """

    def __init__(
        self,
        source: StageEventSource,
        storage: StorageBackend,
        config: IngestionConfig,
        normalizer: Optional[EventNormalizer] = None,
        on_progress: Optional[ProgressCallback] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.source = source
        self.storage = storage
        self.config = config
        self.clock = clock
        self.batcher = IngestionBatcher(
            source, storage, config, normalizer=normalizer, on_progress=on_progress
        )

        logger.info(
            "ingestion_service_initialized",
            batch_size=config.batch_size,
            entity_timeout_seconds=config.entity_timeout_seconds,
        )

    def cancel(self) -> None:
        self.batcher.cancel()

    async def run_for_ids(
        self,
        entity_ids: list[int],
        descriptors: Optional[dict[int, dict[str, Any]]] = None,
    ) -> IngestionReport:
        """Ingest an explicit list of entity IDs."""
        return await self._run(SyncType.IDS, lambda: self._given(entity_ids, descriptors))

    async def run_incremental_sync(self, days: Optional[int] = None) -> IngestionReport:
        """
        Ingest deals updated since the last completed sync.

        Args:
            days: Override the window. Without it and without any previous
                completed sync, incremental_default_days is used.
        """
        if days is not None:
            since = self.clock() - timedelta(days=days)
        else:
            last = self.storage.read_last_completed_sync()
            if last is not None:
                since = last.started_at
            else:
                since = self.clock() - timedelta(days=self.config.incremental_default_days)
        return await self._run(SyncType.INCREMENTAL, lambda: self._listed(since))

    async def run_full_sync(self, days_back: Optional[int] = None) -> IngestionReport:
        """
        Ingest every deal updated within `days_back` days (default: the
        retention window), then purge intervals entered before the retention
        cutoff.
        """
        now = self.clock()
        since = now - timedelta(days=days_back or self.config.retention_days)
        report = await self._run(SyncType.FULL, lambda: self._listed(since))
        if report.status == SyncStatus.COMPLETED:
            cutoff = now - timedelta(days=self.config.retention_days)
            report.purged_intervals = self.storage.purge_intervals_before(cutoff)
        return report

    async def _given(self, entity_ids, descriptors):
        return list(entity_ids), descriptors or {}

    async def _listed(self, since: datetime):
        list_deals = getattr(self.source, "list_deals_updated_since", None)
        if list_deals is None:
            raise IngestionError("Source cannot list deals; use run_for_ids instead")
        deals = await list_deals(since)
        ids = [int(deal["id"]) for deal in deals]
        return ids, {int(deal["id"]): deal for deal in deals}

    async def _run(self, sync_type: SyncType, select) -> IngestionReport:
        run = SyncRun(run_id=str(uuid4()), sync_type=sync_type, started_at=self.clock())
        self.storage.write_sync_run(run)
        logger.info("sync_run_started", run_id=run.run_id, sync_type=sync_type.value)

        try:
            with ingestion_log_context(run.run_id, sync_type.value):
                entity_ids, descriptors = await select()
                run.total_entities = len(set(entity_ids))
                self.storage.write_sync_run(run)
                report = await self.batcher.run(
                    entity_ids, descriptors=descriptors, sync_type=sync_type, run_id=run.run_id
                )
        except Exception as e:
            run.status = SyncStatus.FAILED
            run.completed_at = self.clock()
            run.error = str(e)
            run.duration_seconds = round((run.completed_at - run.started_at).total_seconds(), 2)
            self.storage.write_sync_run(run)
            logger.error("sync_run_failed", run_id=run.run_id, error=str(e))
            if isinstance(e, (SourceUnavailable, StorageError, IngestionError)):
                raise IngestionError(f"Sync run {run.run_id} failed: {e}") from e
            raise

        run.status = report.status
        run.completed_at = self.clock()
        run.processed = report.total - len(report.skipped)
        run.succeeded = report.succeeded
        run.failed = report.failed_count
        run.failures = report.failed
        run.duration_seconds = round(report.elapsed_ms / 1000, 2)
        self.storage.write_sync_run(run)

        logger.info(
            "sync_run_finished",
            run_id=run.run_id,
            status=run.status.value,
            succeeded=run.succeeded,
            failed=run.failed,
        )
        return report

    def get_status(self, limit: int = 10) -> dict[str, Any]:
        """Recent runs, last completed sync time and stored-interval statistics."""
        return get_ingestion_status(self.storage, limit=limit)


def get_ingestion_status(storage: StorageBackend, limit: int = 10) -> dict[str, Any]:
    runs = storage.read_sync_runs(limit=limit)
    last = storage.read_last_completed_sync()
    return {
        "last_sync_at": last.completed_at.isoformat() if last and last.completed_at else None,
        "running": any(run.status == SyncStatus.RUNNING for run in runs),
        "recent_runs": [run.model_dump(mode="json") for run in runs],
        "flow_data": storage.interval_stats(),
    }
