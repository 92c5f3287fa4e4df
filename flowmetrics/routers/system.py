"""
System router - health and diagnostics for operators.

Wired to:
- StorageBackend for database reachability, table counts and sync history
"""

import os
import time

from fastapi import APIRouter, Query

from flowmetrics import __version__
from flowmetrics.config import get_settings
from flowmetrics.storage import StorageError, get_storage
from flowmetrics.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()

_started_at = time.time()


@router.get("/health")
async def system_health():
    """
    Database reachability plus ingestion freshness.

    The service stays "healthy" without any completed sync; only an
    unreachable database degrades it.
    """
    storage = get_storage()
    try:
        storage.count_intervals()
        last = storage.read_last_completed_sync()
        database = "healthy"
    except StorageError as e:
        logger.error("health_check_storage_failed", error=str(e))
        last = None
        database = f"unhealthy: {e}"

    return {
        "success": True,
        "data": {
            "status": "healthy" if database == "healthy" else "degraded",
            "version": __version__,
            "uptime_seconds": round(time.time() - _started_at, 1),
            "database": database,
            "last_sync_at": last.completed_at.isoformat() if last and last.completed_at else None,
        },
    }


@router.get("/diagnostics")
async def system_diagnostics(runs: int = Query(1000, ge=1, le=10000)):
    """Database file size, row counts per table and stored-interval statistics."""
    db_path = get_settings().db_path
    storage = get_storage()
    stats = storage.interval_stats()
    logger.info("diagnostics_requested", intervals=stats["total_records"])

    size_mb = 0.0
    if os.path.exists(db_path):
        size_mb = round(os.path.getsize(db_path) / (1024 * 1024), 2)

    return {
        "success": True,
        "data": {
            "database_path": db_path,
            "database_size_mb": size_mb,
            "tables": {
                "stage_intervals": stats["total_records"],
                "stage_mappings": len(storage.read_mappings()),
                "metric_definitions": len(storage.read_definitions()),
                "sync_runs": len(storage.read_sync_runs(limit=runs)),
            },
            "flow_data": stats,
        },
    }
