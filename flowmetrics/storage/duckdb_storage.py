"""
DuckDB storage implementation for the deal flow metrics engine.

Key features:
- Thread-local connections to one database file
- Idempotent schema creation on startup
- Interval upserts keyed by source event ID that never reopen a closed interval
- Stage-pair aggregation query with the time window applied in SQL
- Transaction semantics with rollback on error
"""

import json
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

import duckdb
import structlog

from flowmetrics.config import get_settings
from flowmetrics.models.events import EntityMetadata, StageInterval, utcnow
from flowmetrics.models.ingestion import EntityFailure, SyncRun
from flowmetrics.models.mappings import (
    MetricDefinition,
    MetricDefinitionInput,
    StageIdAddress,
    StageMapping,
    StageNameAddress,
)
from flowmetrics.models.metrics import EntityDuration, ResolvedWindow

from .base import StorageBackend

logger = structlog.get_logger(__name__)

_MAPPING_COLUMNS = """
    mapping_id, canonical_stage, start_stage_id, end_stage_id, start_stage, end_stage,
    avg_min_days, avg_max_days, metric_comment, created_at, updated_at
"""

_DEFINITION_COLUMNS = """
    metric_id, metric_key, display_title, canonical_stage, sort_order, is_active,
    created_at, updated_at
"""

_SYNC_RUN_COLUMNS = """
    run_id, sync_type, status, started_at, completed_at, total_entities, processed,
    succeeded, failed, failures, error, duration_seconds
"""


class StorageError(Exception):
    """Base exception for all storage operation failures."""

    pass


class DuckDBStorage(StorageBackend):
    """
    DuckDB implementation of the storage backend.

    Attributes:
        db_path: Path to the DuckDB database file
        _local: Thread-local storage for per-thread connections
        _lock: Thread lock for schema operations
        _initialized: Flag tracking whether schema is initialized
    """

    # Columns update_definition may touch
    ALLOWED_DEFINITION_COLUMNS = {
        "metric_key", "display_title", "canonical_stage", "sort_order", "is_active"
    }

    def __init__(self, db_path: str = "./data/flowmetrics.duckdb"):
        """
        Initialize DuckDB storage backend.

        Args:
            db_path: Path to DuckDB database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._local = threading.local()
        self._lock = threading.Lock()
        self._initialized = False

        logger.info("duckdb_storage_initialized", db_path=str(self.db_path))

        self._initialize_schema()

    @contextmanager
    def _get_connection(self):
        """
        Get a thread-local DuckDB connection.

        Yields:
            DuckDB connection instance

        Raises:
            StorageError: If connection cannot be established
        """
        if not hasattr(self._local, "connection"):
            try:
                self._local.connection = duckdb.connect(str(self.db_path))
                logger.debug("duckdb_connection_created", thread_id=threading.get_ident())
            except duckdb.Error as e:
                logger.error("duckdb_connection_failed", error=str(e))
                raise StorageError(f"Failed to connect to DuckDB: {e}") from e

        try:
            yield self._local.connection
        except Exception:
            try:
                self._local.connection.rollback()
            except duckdb.Error as rollback_error:
                # No open transaction to roll back
                logger.debug("duckdb_rollback_skipped", error=str(rollback_error))
            raise

    def _initialize_schema(self):
        """
        Create all tables, sequences and indexes.

        Idempotent and safe to call multiple times. Columns that upserts
        modify are deliberately left unindexed.

        Raises:
            StorageError: If schema creation fails
        """
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            try:
                with self._get_connection() as conn:
                    # Stage intervals
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS stage_intervals (
                            event_id BIGINT PRIMARY KEY,
                            entity_id BIGINT NOT NULL,
                            pipeline_id BIGINT NOT NULL,
                            stage_id BIGINT NOT NULL,
                            stage_name VARCHAR NOT NULL,
                            entered_at TIMESTAMP NOT NULL,
                            left_at TIMESTAMP,
                            duration_seconds BIGINT,
                            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                        )
                    """)

                    conn.execute("""
                        CREATE INDEX IF NOT EXISTS idx_intervals_entity
                        ON stage_intervals(entity_id)
                    """)

                    conn.execute("""
                        CREATE INDEX IF NOT EXISTS idx_intervals_stage_entered
                        ON stage_intervals(stage_id, entered_at)
                    """)

                    # Entity metadata
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS entity_metadata (
                            entity_id BIGINT PRIMARY KEY,
                            title VARCHAR NOT NULL,
                            current_pipeline_id BIGINT,
                            current_stage_id BIGINT,
                            status VARCHAR,
                            first_fetched_at TIMESTAMP NOT NULL,
                            last_fetched_at TIMESTAMP NOT NULL
                        )
                    """)

                    # Stage mappings
                    conn.execute("CREATE SEQUENCE IF NOT EXISTS seq_stage_mappings START 1")
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS stage_mappings (
                            mapping_id BIGINT PRIMARY KEY DEFAULT nextval('seq_stage_mappings'),
                            canonical_stage VARCHAR NOT NULL UNIQUE,
                            start_stage_id BIGINT,
                            end_stage_id BIGINT,
                            start_stage VARCHAR,
                            end_stage VARCHAR,
                            avg_min_days INTEGER,
                            avg_max_days INTEGER,
                            metric_comment VARCHAR,
                            created_at TIMESTAMP NOT NULL,
                            updated_at TIMESTAMP NOT NULL,
                            CHECK (
                                (start_stage_id IS NOT NULL AND end_stage_id IS NOT NULL)
                                OR (start_stage IS NOT NULL AND end_stage IS NOT NULL)
                            )
                        )
                    """)

                    # Metric definitions
                    conn.execute("CREATE SEQUENCE IF NOT EXISTS seq_metric_definitions START 1")
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS metric_definitions (
                            metric_id BIGINT PRIMARY KEY DEFAULT nextval('seq_metric_definitions'),
                            metric_key VARCHAR NOT NULL UNIQUE,
                            display_title VARCHAR NOT NULL,
                            canonical_stage VARCHAR NOT NULL,
                            sort_order INTEGER NOT NULL DEFAULT 0,
                            is_active BOOLEAN NOT NULL DEFAULT TRUE,
                            created_at TIMESTAMP NOT NULL,
                            updated_at TIMESTAMP NOT NULL
                        )
                    """)

                    # Sync runs
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS sync_runs (
                            run_id VARCHAR PRIMARY KEY,
                            sync_type VARCHAR NOT NULL,
                            status VARCHAR NOT NULL,
                            started_at TIMESTAMP NOT NULL,
                            completed_at TIMESTAMP,
                            total_entities INTEGER NOT NULL DEFAULT 0,
                            processed INTEGER NOT NULL DEFAULT 0,
                            succeeded INTEGER NOT NULL DEFAULT 0,
                            failed INTEGER NOT NULL DEFAULT 0,
                            failures JSON,
                            error VARCHAR,
                            duration_seconds DOUBLE
                        )
                    """)

                    conn.commit()
                    logger.info("duckdb_schema_initialized")
                    self._initialized = True

            except duckdb.Error as e:
                logger.error("duckdb_schema_initialization_failed", error=str(e))
                raise StorageError(f"Failed to initialize schema: {e}") from e

    def clear_for_testing(self) -> None:
        """
        Truncate all tables. A no-op unless settings.testing is on.
        Allows each test to start with a clean slate.
        """
        if not get_settings().testing:
            return
        tables = [
            "stage_intervals", "entity_metadata", "metric_definitions",
            "stage_mappings", "sync_runs",
        ]
        try:
            with self._get_connection() as conn:
                for t in tables:
                    conn.execute(f"DELETE FROM {t}")
                conn.commit()
        except duckdb.Error as e:
            raise StorageError(f"Failed to clear tables: {e}") from e

    # =========================================================================
    # Stage Intervals
    # =========================================================================

    def upsert_intervals(self, intervals: list[StageInterval]) -> int:
        """Upsert intervals on event_id in one transaction."""
        if not intervals:
            return 0

        now = utcnow()
        try:
            with self._get_connection() as conn:
                conn.begin()
                for interval in intervals:
                    conn.execute(
                        """
                        INSERT INTO stage_intervals (
                            event_id, entity_id, pipeline_id, stage_id, stage_name,
                            entered_at, left_at, duration_seconds, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT (event_id) DO UPDATE SET
                            stage_name = CASE WHEN left_at IS NULL
                                THEN EXCLUDED.stage_name ELSE stage_name END,
                            duration_seconds = CASE WHEN left_at IS NULL
                                THEN EXCLUDED.duration_seconds ELSE duration_seconds END,
                            left_at = CASE WHEN left_at IS NULL
                                THEN EXCLUDED.left_at ELSE left_at END,
                            updated_at = EXCLUDED.updated_at
                        """,
                        [
                            interval.event_id,
                            interval.entity_id,
                            interval.pipeline_id,
                            interval.stage_id,
                            interval.stage_name,
                            interval.entered_at,
                            interval.left_at,
                            interval.duration_seconds,
                            now,
                            now,
                        ],
                    )
                conn.commit()
                logger.debug(
                    "intervals_upserted",
                    entity_id=intervals[0].entity_id,
                    count=len(intervals),
                )
                return len(intervals)

        except duckdb.Error as e:
            logger.error(
                "upsert_intervals_failed",
                entity_id=intervals[0].entity_id,
                error=str(e),
            )
            raise StorageError(f"Failed to upsert intervals: {e}") from e

    def read_intervals(self, entity_id: Optional[int] = None) -> list[StageInterval]:
        try:
            with self._get_connection() as conn:
                query = """
                    SELECT event_id, entity_id, pipeline_id, stage_id, stage_name,
                           entered_at, left_at, duration_seconds
                    FROM stage_intervals
                """
                params = []
                if entity_id is not None:
                    query += " WHERE entity_id = ?"
                    params.append(entity_id)
                query += " ORDER BY entity_id, entered_at, event_id"

                rows = conn.execute(query, params).fetchall()
                return [
                    StageInterval(
                        event_id=row[0],
                        entity_id=row[1],
                        pipeline_id=row[2],
                        stage_id=row[3],
                        stage_name=row[4],
                        entered_at=row[5],
                        left_at=row[6],
                        duration_seconds=row[7],
                    )
                    for row in rows
                ]

        except duckdb.Error as e:
            logger.error("read_intervals_failed", entity_id=entity_id, error=str(e))
            raise StorageError(f"Failed to read intervals: {e}") from e

    def count_intervals(self, entity_id: Optional[int] = None) -> int:
        try:
            with self._get_connection() as conn:
                if entity_id is None:
                    row = conn.execute("SELECT COUNT(*) FROM stage_intervals").fetchone()
                else:
                    row = conn.execute(
                        "SELECT COUNT(*) FROM stage_intervals WHERE entity_id = ?",
                        [entity_id],
                    ).fetchone()
                return int(row[0])

        except duckdb.Error as e:
            logger.error("count_intervals_failed", error=str(e))
            raise StorageError(f"Failed to count intervals: {e}") from e

    def interval_stats(self) -> dict:
        try:
            with self._get_connection() as conn:
                row = conn.execute("""
                    SELECT COUNT(*),
                           COUNT(DISTINCT entity_id),
                           COUNT(*) FILTER (WHERE left_at IS NULL),
                           MIN(entered_at),
                           MAX(entered_at)
                    FROM stage_intervals
                """).fetchone()
                return {
                    "total_records": int(row[0]),
                    "entities": int(row[1]),
                    "open_intervals": int(row[2]),
                    "oldest": row[3].isoformat() if row[3] else None,
                    "newest": row[4].isoformat() if row[4] else None,
                }

        except duckdb.Error as e:
            logger.error("interval_stats_failed", error=str(e))
            raise StorageError(f"Failed to read interval stats: {e}") from e

    def purge_intervals_before(self, cutoff: datetime) -> int:
        try:
            with self._get_connection() as conn:
                conn.begin()
                count = conn.execute(
                    "SELECT COUNT(*) FROM stage_intervals WHERE entered_at < ?", [cutoff]
                ).fetchone()[0]
                conn.execute("DELETE FROM stage_intervals WHERE entered_at < ?", [cutoff])
                conn.commit()
                logger.info("intervals_purged", cutoff=cutoff.isoformat(), deleted=count)
                return int(count)

        except duckdb.Error as e:
            logger.error("purge_intervals_failed", error=str(e))
            raise StorageError(f"Failed to purge intervals: {e}") from e

    def read_stage_pair_durations(
        self,
        address: Union[StageIdAddress, StageNameAddress],
        window: Optional[ResolvedWindow] = None,
    ) -> list[EntityDuration]:
        """
        First start-stage entry per entity, joined to the first end-stage
        entry at or after it. The window filters the start point in SQL.
        """
        if isinstance(address, StageIdAddress):
            match_column = "stage_id"
            start_key, end_key = address.start_stage_id, address.end_stage_id
        else:
            match_column = "stage_name"
            start_key, end_key = address.start_stage, address.end_stage

        window_clauses = []
        params: list = [start_key]
        if window is not None and window.start is not None:
            window_clauses.append("started_at >= ?")
            params.append(window.start)
        if window is not None and window.end is not None:
            window_clauses.append("started_at <= ?")
            params.append(window.end)
        window_sql = f"WHERE {' AND '.join(window_clauses)}" if window_clauses else ""
        params.append(end_key)

        query = f"""
            WITH starts AS (
                SELECT entity_id, MIN(entered_at) AS started_at
                FROM stage_intervals
                WHERE {match_column} = ?
                GROUP BY entity_id
            ),
            windowed AS (
                SELECT entity_id, started_at FROM starts {window_sql}
            )
            SELECT w.entity_id, w.started_at, MIN(e.entered_at) AS ended_at, m.title
            FROM windowed w
            LEFT JOIN stage_intervals e
                ON e.entity_id = w.entity_id
                AND e.{match_column} = ?
                AND e.entered_at >= w.started_at
            LEFT JOIN entity_metadata m ON m.entity_id = w.entity_id
            GROUP BY w.entity_id, w.started_at, m.title
            ORDER BY w.started_at, w.entity_id
        """

        try:
            with self._get_connection() as conn:
                rows = conn.execute(query, params).fetchall()

            durations = []
            for entity_id, started_at, ended_at, title in rows:
                days = None
                if ended_at is not None:
                    days = (ended_at - started_at).total_seconds() / 86400
                durations.append(
                    EntityDuration(
                        entity_id=entity_id,
                        title=title,
                        started_at=started_at,
                        ended_at=ended_at,
                        days=days,
                    )
                )

            logger.debug(
                "stage_pair_durations_read",
                match_column=match_column,
                start=start_key,
                end=end_key,
                count=len(durations),
            )
            return durations

        except duckdb.Error as e:
            logger.error("read_stage_pair_durations_failed", error=str(e))
            raise StorageError(f"Failed to read stage pair durations: {e}") from e

    # =========================================================================
    # Entity Metadata
    # =========================================================================

    def upsert_entity_metadata(self, metadata: EntityMetadata) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO entity_metadata (
                        entity_id, title, current_pipeline_id, current_stage_id, status,
                        first_fetched_at, last_fetched_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (entity_id) DO UPDATE SET
                        title = EXCLUDED.title,
                        current_pipeline_id = EXCLUDED.current_pipeline_id,
                        current_stage_id = EXCLUDED.current_stage_id,
                        status = EXCLUDED.status,
                        last_fetched_at = EXCLUDED.last_fetched_at
                    """,
                    [
                        metadata.entity_id,
                        metadata.title,
                        metadata.current_pipeline_id,
                        metadata.current_stage_id,
                        metadata.status,
                        metadata.first_fetched_at,
                        metadata.last_fetched_at,
                    ],
                )
                conn.commit()

        except duckdb.Error as e:
            logger.error(
                "upsert_entity_metadata_failed", entity_id=metadata.entity_id, error=str(e)
            )
            raise StorageError(f"Failed to upsert entity metadata: {e}") from e

    def read_entity_metadata(self, entity_id: int) -> Optional[EntityMetadata]:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    """
                    SELECT entity_id, title, current_pipeline_id, current_stage_id, status,
                           first_fetched_at, last_fetched_at
                    FROM entity_metadata WHERE entity_id = ?
                    """,
                    [entity_id],
                ).fetchone()
                if row is None:
                    return None
                return EntityMetadata(
                    entity_id=row[0],
                    title=row[1],
                    current_pipeline_id=row[2],
                    current_stage_id=row[3],
                    status=row[4],
                    first_fetched_at=row[5],
                    last_fetched_at=row[6],
                )

        except duckdb.Error as e:
            logger.error("read_entity_metadata_failed", entity_id=entity_id, error=str(e))
            raise StorageError(f"Failed to read entity metadata: {e}") from e

    # =========================================================================
    # Stage Mappings
    # =========================================================================

    @staticmethod
    def _address_columns(address: Union[StageIdAddress, StageNameAddress]) -> list:
        if isinstance(address, StageIdAddress):
            return [address.start_stage_id, address.end_stage_id, None, None]
        return [None, None, address.start_stage, address.end_stage]

    @staticmethod
    def _row_to_mapping(row) -> StageMapping:
        if row[2] is not None and row[3] is not None:
            address = StageIdAddress(start_stage_id=row[2], end_stage_id=row[3])
        else:
            address = StageNameAddress(start_stage=row[4], end_stage=row[5])
        return StageMapping(
            mapping_id=row[0],
            canonical_stage=row[1],
            address=address,
            avg_min_days=row[6],
            avg_max_days=row[7],
            metric_comment=row[8],
            created_at=row[9],
            updated_at=row[10],
        )

    def write_mapping(
        self,
        canonical_stage: str,
        address: Union[StageIdAddress, StageNameAddress],
        avg_min_days: Optional[int] = None,
        avg_max_days: Optional[int] = None,
        metric_comment: Optional[str] = None,
    ) -> StageMapping:
        now = utcnow()
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO stage_mappings (
                        canonical_stage, start_stage_id, end_stage_id, start_stage, end_stage,
                        avg_min_days, avg_max_days, metric_comment, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    RETURNING {_MAPPING_COLUMNS}
                    """,
                    [
                        canonical_stage,
                        *self._address_columns(address),
                        avg_min_days,
                        avg_max_days,
                        metric_comment,
                        now,
                        now,
                    ],
                ).fetchone()
                conn.commit()
                logger.info("mapping_written", mapping_id=row[0], canonical_stage=canonical_stage)
                return self._row_to_mapping(row)

        except duckdb.Error as e:
            logger.error("write_mapping_failed", canonical_stage=canonical_stage, error=str(e))
            raise StorageError(f"Failed to write mapping: {e}") from e

    def update_mapping(
        self,
        mapping_id: int,
        canonical_stage: str,
        address: Union[StageIdAddress, StageNameAddress],
        avg_min_days: Optional[int] = None,
        avg_max_days: Optional[int] = None,
        metric_comment: Optional[str] = None,
    ) -> Optional[StageMapping]:
        existing = self.read_mapping(mapping_id)
        if existing is None:
            return None

        set_clauses = [
            "start_stage_id = ?",
            "end_stage_id = ?",
            "start_stage = ?",
            "end_stage = ?",
            "avg_min_days = ?",
            "avg_max_days = ?",
            "metric_comment = ?",
            "updated_at = ?",
        ]
        params = [
            *self._address_columns(address),
            avg_min_days,
            avg_max_days,
            metric_comment,
            utcnow(),
        ]
        # Only touch the unique column when it actually changes
        if canonical_stage != existing.canonical_stage:
            set_clauses.append("canonical_stage = ?")
            params.append(canonical_stage)
        params.append(mapping_id)

        try:
            with self._get_connection() as conn:
                conn.execute(
                    f"UPDATE stage_mappings SET {', '.join(set_clauses)} WHERE mapping_id = ?",
                    params,
                )
                conn.commit()
                logger.info("mapping_updated", mapping_id=mapping_id)

        except duckdb.Error as e:
            logger.error("update_mapping_failed", mapping_id=mapping_id, error=str(e))
            raise StorageError(f"Failed to update mapping: {e}") from e

        return self.read_mapping(mapping_id)

    def update_mapping_comment(
        self, mapping_id: int, metric_comment: Optional[str]
    ) -> Optional[StageMapping]:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    "UPDATE stage_mappings SET metric_comment = ?, updated_at = ? WHERE mapping_id = ?",
                    [metric_comment, utcnow(), mapping_id],
                )
                conn.commit()

        except duckdb.Error as e:
            logger.error("update_mapping_comment_failed", mapping_id=mapping_id, error=str(e))
            raise StorageError(f"Failed to update mapping comment: {e}") from e

        return self.read_mapping(mapping_id)

    def read_mapping(self, mapping_id: int) -> Optional[StageMapping]:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    f"SELECT {_MAPPING_COLUMNS} FROM stage_mappings WHERE mapping_id = ?",
                    [mapping_id],
                ).fetchone()
                return self._row_to_mapping(row) if row else None

        except duckdb.Error as e:
            logger.error("read_mapping_failed", mapping_id=mapping_id, error=str(e))
            raise StorageError(f"Failed to read mapping: {e}") from e

    def read_mapping_by_stage(self, canonical_stage: str) -> Optional[StageMapping]:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    f"SELECT {_MAPPING_COLUMNS} FROM stage_mappings WHERE canonical_stage = ?",
                    [canonical_stage],
                ).fetchone()
                return self._row_to_mapping(row) if row else None

        except duckdb.Error as e:
            logger.error("read_mapping_by_stage_failed", canonical_stage=canonical_stage, error=str(e))
            raise StorageError(f"Failed to read mapping: {e}") from e

    def read_mappings(self) -> list[StageMapping]:
        try:
            with self._get_connection() as conn:
                rows = conn.execute(
                    f"SELECT {_MAPPING_COLUMNS} FROM stage_mappings ORDER BY canonical_stage"
                ).fetchall()
                return [self._row_to_mapping(row) for row in rows]

        except duckdb.Error as e:
            logger.error("read_mappings_failed", error=str(e))
            raise StorageError(f"Failed to read mappings: {e}") from e

    def delete_mapping(self, mapping_id: int) -> bool:
        try:
            with self._get_connection() as conn:
                exists = conn.execute(
                    "SELECT 1 FROM stage_mappings WHERE mapping_id = ?", [mapping_id]
                ).fetchone()
                if exists is None:
                    return False
                conn.execute("DELETE FROM stage_mappings WHERE mapping_id = ?", [mapping_id])
                conn.commit()
                logger.info("mapping_deleted", mapping_id=mapping_id)
                return True

        except duckdb.Error as e:
            logger.error("delete_mapping_failed", mapping_id=mapping_id, error=str(e))
            raise StorageError(f"Failed to delete mapping: {e}") from e

    # =========================================================================
    # Metric Definitions
    # =========================================================================

    @staticmethod
    def _row_to_definition(row) -> MetricDefinition:
        return MetricDefinition(
            metric_id=row[0],
            metric_key=row[1],
            display_title=row[2],
            canonical_stage=row[3],
            sort_order=row[4],
            is_active=row[5],
            created_at=row[6],
            updated_at=row[7],
        )

    def write_definition(self, definition: MetricDefinitionInput) -> MetricDefinition:
        now = utcnow()
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO metric_definitions (
                        metric_key, display_title, canonical_stage, sort_order, is_active,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    RETURNING {_DEFINITION_COLUMNS}
                    """,
                    [
                        definition.metric_key,
                        definition.display_title,
                        definition.canonical_stage,
                        definition.sort_order,
                        definition.is_active,
                        now,
                        now,
                    ],
                ).fetchone()
                conn.commit()
                logger.info("definition_written", metric_id=row[0], metric_key=row[1])
                return self._row_to_definition(row)

        except duckdb.Error as e:
            logger.error("write_definition_failed", metric_key=definition.metric_key, error=str(e))
            raise StorageError(f"Failed to write metric definition: {e}") from e

    def update_definition(self, metric_id: int, **updates) -> Optional[MetricDefinition]:
        """Update specific columns of a metric definition."""
        existing = self.read_definition(metric_id)
        if existing is None:
            return None
        if not updates:
            return existing

        set_clauses = []
        params = []
        for key, value in updates.items():
            if key not in self.ALLOWED_DEFINITION_COLUMNS:
                raise ValueError(f"Invalid column: {key}")
            # Only touch the unique column when it actually changes
            if key == "metric_key" and value == existing.metric_key:
                continue
            set_clauses.append(f"{key} = ?")
            params.append(value)
        set_clauses.append("updated_at = ?")
        params.append(utcnow())
        params.append(metric_id)

        try:
            with self._get_connection() as conn:
                conn.execute(
                    f"UPDATE metric_definitions SET {', '.join(set_clauses)} WHERE metric_id = ?",
                    params,
                )
                conn.commit()
                logger.info("definition_updated", metric_id=metric_id, fields=sorted(updates))

        except duckdb.Error as e:
            logger.error("update_definition_failed", metric_id=metric_id, error=str(e))
            raise StorageError(f"Failed to update metric definition: {e}") from e

        return self.read_definition(metric_id)

    def read_definition(self, metric_id: int) -> Optional[MetricDefinition]:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    f"SELECT {_DEFINITION_COLUMNS} FROM metric_definitions WHERE metric_id = ?",
                    [metric_id],
                ).fetchone()
                return self._row_to_definition(row) if row else None

        except duckdb.Error as e:
            logger.error("read_definition_failed", metric_id=metric_id, error=str(e))
            raise StorageError(f"Failed to read metric definition: {e}") from e

    def read_definition_by_key(self, metric_key: str) -> Optional[MetricDefinition]:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    f"SELECT {_DEFINITION_COLUMNS} FROM metric_definitions WHERE metric_key = ?",
                    [metric_key],
                ).fetchone()
                return self._row_to_definition(row) if row else None

        except duckdb.Error as e:
            logger.error("read_definition_by_key_failed", metric_key=metric_key, error=str(e))
            raise StorageError(f"Failed to read metric definition: {e}") from e

    def read_definitions(self, active_only: bool = False) -> list[MetricDefinition]:
        try:
            with self._get_connection() as conn:
                query = f"SELECT {_DEFINITION_COLUMNS} FROM metric_definitions"
                if active_only:
                    query += " WHERE is_active"
                query += " ORDER BY sort_order, display_title, metric_id"
                rows = conn.execute(query).fetchall()
                return [self._row_to_definition(row) for row in rows]

        except duckdb.Error as e:
            logger.error("read_definitions_failed", error=str(e))
            raise StorageError(f"Failed to read metric definitions: {e}") from e

    def delete_definition(self, metric_id: int) -> bool:
        try:
            with self._get_connection() as conn:
                exists = conn.execute(
                    "SELECT 1 FROM metric_definitions WHERE metric_id = ?", [metric_id]
                ).fetchone()
                if exists is None:
                    return False
                conn.execute("DELETE FROM metric_definitions WHERE metric_id = ?", [metric_id])
                conn.commit()
                logger.info("definition_deleted", metric_id=metric_id)
                return True

        except duckdb.Error as e:
            logger.error("delete_definition_failed", metric_id=metric_id, error=str(e))
            raise StorageError(f"Failed to delete metric definition: {e}") from e

    # =========================================================================
    # Sync Runs
    # =========================================================================

    @staticmethod
    def _row_to_sync_run(row) -> SyncRun:
        failures = json.loads(row[9]) if row[9] else []
        return SyncRun(
            run_id=row[0],
            sync_type=row[1],
            status=row[2],
            started_at=row[3],
            completed_at=row[4],
            total_entities=row[5],
            processed=row[6],
            succeeded=row[7],
            failed=row[8],
            failures=[EntityFailure(**f) for f in failures],
            error=row[10],
            duration_seconds=row[11],
        )

    def write_sync_run(self, run: SyncRun) -> str:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    f"""
                    INSERT INTO sync_runs ({_SYNC_RUN_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (run_id) DO UPDATE SET
                        status = EXCLUDED.status,
                        completed_at = EXCLUDED.completed_at,
                        total_entities = EXCLUDED.total_entities,
                        processed = EXCLUDED.processed,
                        succeeded = EXCLUDED.succeeded,
                        failed = EXCLUDED.failed,
                        failures = EXCLUDED.failures,
                        error = EXCLUDED.error,
                        duration_seconds = EXCLUDED.duration_seconds
                    """,
                    [
                        run.run_id,
                        run.sync_type.value,
                        run.status.value,
                        run.started_at,
                        run.completed_at,
                        run.total_entities,
                        run.processed,
                        run.succeeded,
                        run.failed,
                        json.dumps([f.model_dump(mode="json") for f in run.failures]),
                        run.error,
                        run.duration_seconds,
                    ],
                )
                conn.commit()
                logger.debug("sync_run_written", run_id=run.run_id, status=run.status.value)
                return run.run_id

        except duckdb.Error as e:
            logger.error("write_sync_run_failed", run_id=run.run_id, error=str(e))
            raise StorageError(f"Failed to write sync run: {e}") from e

    def read_sync_runs(self, limit: int = 10) -> list[SyncRun]:
        try:
            with self._get_connection() as conn:
                rows = conn.execute(
                    f"SELECT {_SYNC_RUN_COLUMNS} FROM sync_runs ORDER BY started_at DESC LIMIT ?",
                    [limit],
                ).fetchall()
                return [self._row_to_sync_run(row) for row in rows]

        except duckdb.Error as e:
            logger.error("read_sync_runs_failed", error=str(e))
            raise StorageError(f"Failed to read sync runs: {e}") from e

    def read_last_completed_sync(self) -> Optional[SyncRun]:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    f"""
                    SELECT {_SYNC_RUN_COLUMNS} FROM sync_runs
                    WHERE status = 'completed'
                    ORDER BY completed_at DESC
                    LIMIT 1
                    """
                ).fetchone()
                return self._row_to_sync_run(row) if row else None

        except duckdb.Error as e:
            logger.error("read_last_completed_sync_failed", error=str(e))
            raise StorageError(f"Failed to read last completed sync: {e}") from e
