"""
Flow metrics router - dashboard read path.

Wired to:
- MetricsService (mapping store + aggregator + classifier) for every query

The list view and the detail views share MetricsService, so the same period
resolves to the same window and the same entities on every page.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from flowmetrics.config import MetricsConfig, get_settings
from flowmetrics.engine.aggregator import MetricsAggregator
from flowmetrics.models.metrics import TimeWindow
from flowmetrics.services.mapping_store import MappingNotFoundError, StageMappingStore
from flowmetrics.services.metrics_service import MetricsService
from flowmetrics.storage import get_storage
from flowmetrics.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


def get_metrics_service() -> MetricsService:
    storage = get_storage()
    aggregator = MetricsAggregator(storage, MetricsConfig.from_settings(get_settings()))
    return MetricsService(StageMappingStore(storage), aggregator)


def parse_window(
    period: Optional[str],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Optional[TimeWindow]:
    """Build a TimeWindow from query parameters, or raise 422."""
    if period is not None and (start is not None or end is not None):
        raise HTTPException(status_code=422, detail="Use either period or start/end, not both")
    try:
        if start is not None or end is not None:
            return TimeWindow(start=start, end=end)
        return TimeWindow.from_period(period)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/metrics")
async def list_flow_metrics(
    period: Optional[str] = Query(None, description="7d, 14d, 1m, 3m or all"),
):
    """
    List every active metric with its current value and status.
    """
    window = parse_window(period)
    logger.info("flow_metrics_list", period=period)

    views = get_metrics_service().list_metrics(window)
    return {
        "success": True,
        "data": [view.model_dump(mode="json") for view in views],
        "period": period or "all",
    }


@router.get("/metrics/{canonical_stage}")
async def get_flow_metric(
    canonical_stage: str,
    period: Optional[str] = Query(None, description="7d, 14d, 1m, 3m or all"),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    include_entities: bool = False,
):
    """
    Get the metric for one canonical stage.
    Returns average, count, status and the mapping it was computed from.
    """
    window = parse_window(period, start, end)
    logger.info("flow_metric_detail", canonical_stage=canonical_stage, period=period)

    try:
        view = get_metrics_service().get_metric(
            canonical_stage, window, include_entities=include_entities
        )
    except MappingNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {"success": True, "data": view.model_dump(mode="json")}


@router.get("/definitions/{metric_id}")
async def get_flow_metric_by_definition(
    metric_id: int,
    period: Optional[str] = Query(None, description="7d, 14d, 1m, 3m or all"),
):
    """
    Get a metric by definition ID, including the per-deal rows behind it.
    """
    window = parse_window(period)
    logger.info("flow_metric_definition_detail", metric_id=metric_id, period=period)

    try:
        view = get_metrics_service().get_metric_by_definition(metric_id, window)
    except MappingNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {"success": True, "data": view.model_dump(mode="json")}
