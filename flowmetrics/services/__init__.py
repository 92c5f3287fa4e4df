"""
Business logic layer.
Services orchestrate data access, validation, and domain logic.
"""

from .mapping_store import (
    DEFAULT_METRICS,
    MappingNotFoundError,
    MappingValidationError,
    StageMappingStore,
)
from .metrics_service import MetricsService

__all__ = [
    "DEFAULT_METRICS",
    "MappingNotFoundError",
    "MappingValidationError",
    "MetricsService",
    "StageMappingStore",
]
