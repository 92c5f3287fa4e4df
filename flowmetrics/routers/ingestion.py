"""
Ingestion router - trigger CRM ingestion runs and report their status.

Wired to:
- PipedriveClient as the stage-event source
- IngestionService for batching, retry and sync-run bookkeeping
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Literal, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from flowmetrics.config import IngestionConfig, SourceConfig, get_settings
from flowmetrics.connectors.ingestion_service import (
    IngestionError,
    IngestionService,
    get_ingestion_status,
)
from flowmetrics.connectors.pipedrive_client import PipedriveClient
from flowmetrics.models.ingestion import IngestionReport
from flowmetrics.storage import get_storage
from flowmetrics.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


class IngestionRunRequest(BaseModel):
    """Ingest an explicit list of deal IDs."""

    entity_ids: list[int] = Field(..., min_length=1)


class SyncRequest(BaseModel):
    """Start an incremental or full sync."""

    mode: Literal["incremental", "full"] = "incremental"
    days: Optional[int] = Field(None, ge=1, description="Override the sync window in days")


def build_source() -> PipedriveClient:
    """Stage-event source used by ingestion runs."""
    return PipedriveClient(SourceConfig.from_settings(get_settings()))


@asynccontextmanager
async def ingestion_service() -> AsyncIterator[IngestionService]:
    settings = get_settings()
    async with build_source() as source:
        yield IngestionService(source, get_storage(), IngestionConfig.from_settings(settings))


def _report_payload(report: IngestionReport) -> dict:
    payload = report.model_dump(mode="json")
    payload["summary"] = report.summary()
    return payload


@router.post("/run")
async def run_ingestion(request: IngestionRunRequest):
    """
    Ingest the given deal IDs.

    Per-deal failures do not fail the request; they are listed in the report.
    """
    logger.info("ingestion_run_requested", entity_count=len(request.entity_ids))
    try:
        async with ingestion_service() as service:
            report = await service.run_for_ids(request.entity_ids)
    except IngestionError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return {"success": True, "data": _report_payload(report)}


@router.post("/sync")
async def run_sync(request: SyncRequest):
    """
    Run an incremental sync (deals updated since the last completed sync)
    or a full sync over the retention window.
    """
    logger.info("ingestion_sync_requested", mode=request.mode, days=request.days)
    try:
        async with ingestion_service() as service:
            if request.mode == "full":
                report = await service.run_full_sync(days_back=request.days)
            else:
                report = await service.run_incremental_sync(days=request.days)
    except IngestionError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return {"success": True, "data": _report_payload(report)}


@router.get("/status")
async def ingestion_status(limit: int = 10):
    """
    Recent sync runs, last completed sync time and stored-interval statistics.
    """
    return {"success": True, "data": get_ingestion_status(get_storage(), limit=limit)}
