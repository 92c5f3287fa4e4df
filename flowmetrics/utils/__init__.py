"""Logging helpers shared by the API, the ingestion service and the scripts."""

from flowmetrics.utils.logging import configure_logging, get_logger, ingestion_log_context

__all__ = ["configure_logging", "get_logger", "ingestion_log_context"]
