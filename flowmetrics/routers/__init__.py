"""API routers for all endpoints."""

from flowmetrics.routers import admin, flow_metrics, ingestion, system

__all__ = [
    "admin",
    "flow_metrics",
    "ingestion",
    "system",
]
