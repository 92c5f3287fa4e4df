"""
Pipedrive connector and ingestion orchestration.

Main Components:
    PipedriveClient: Async API client with shared rate limiting
    IngestionBatcher: Two-phase batched ingestion of stage histories
    IngestionService: Ingestion runs with sync-run bookkeeping

Usage:
    >>> from flowmetrics.config import IngestionConfig, SourceConfig, get_settings
    >>> from flowmetrics.connectors import IngestionService, PipedriveClient
    >>> from flowmetrics.storage import get_storage
    >>>
    >>> settings = get_settings()
    >>> async with PipedriveClient(SourceConfig.from_settings(settings)) as client:
    ...     service = IngestionService(
    ...         client, get_storage(), IngestionConfig.from_settings(settings)
    ...     )
    ...     report = await service.run_incremental_sync()
    ...     print(report.summary())
"""

from flowmetrics.connectors.ingestion_service import (
    IngestionBatcher,
    IngestionError,
    IngestionService,
    ProgressTracker,
)
from flowmetrics.connectors.pipedrive_client import (
    PipedriveClient,
    SlidingWindowRateLimiter,
    SourceAuthError,
    SourceNotFoundError,
    SourceRateLimitedError,
    SourceTransientError,
    SourceUnavailable,
)

__all__ = [
    # Core client
    "PipedriveClient",
    "SlidingWindowRateLimiter",
    "SourceUnavailable",
    "SourceAuthError",
    "SourceNotFoundError",
    "SourceRateLimitedError",
    "SourceTransientError",
    # Ingestion orchestration
    "IngestionBatcher",
    "IngestionService",
    "IngestionError",
    "ProgressTracker",
]
