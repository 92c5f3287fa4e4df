"""
Enumeration types for the deal flow metrics engine.

All enums inherit from str to keep JSON serialization and DuckDB storage
trivial.
"""

from enum import Enum


class MetricStatus(str, Enum):
    """
    Qualitative status assigned to a flow metric by the threshold classifier.

    NO_DATA covers both "nothing measured yet" and "thresholds not configured".
    """

    ON_TARGET = "on_target"
    WATCH = "watch"
    ATTENTION = "attention"
    NO_DATA = "no_data"


class FailureKind(str, Enum):
    """Why a single entity could not be ingested."""

    AUTH = "auth"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    CONSISTENCY = "consistency"
    STORAGE = "storage"
    UNKNOWN = "unknown"


class EntityState(str, Enum):
    """
    Per-entity state during an ingestion run.

    Transitions:
        PENDING -> ATTEMPTED -> SUCCEEDED | FAILED_ONCE
        FAILED_ONCE -> ATTEMPTED -> SUCCEEDED | FAILED_FINAL
    """

    PENDING = "pending"
    ATTEMPTED = "attempted"
    SUCCEEDED = "succeeded"
    FAILED_ONCE = "failed_once"
    FAILED_FINAL = "failed_final"


class SyncType(str, Enum):
    """How the set of entities for a run was chosen."""

    IDS = "ids"
    INCREMENTAL = "incremental"
    FULL = "full"


class SyncStatus(str, Enum):
    """Lifecycle of a recorded sync run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MatchMode(str, Enum):
    """How a mapping's start/end stages are matched against intervals."""

    ID = "id"
    NAME = "name"
