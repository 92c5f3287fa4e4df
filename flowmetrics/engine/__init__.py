"""
Flow metrics engine core components.

- Event normalization: raw stage-change events to stage-occupancy intervals
- Aggregation: stage-to-stage durations per canonical stage and time window
- Classification: threshold-based status for aggregated durations

All components take their configuration and storage through their
constructors and never read the process environment.
"""

from flowmetrics.engine.aggregator import MetricsAggregator
from flowmetrics.engine.classifier import classify
from flowmetrics.engine.normalizer import (
    ConsistencyViolation,
    EventNormalizer,
    InvalidStageEvent,
    NormalizationResult,
    check_non_overlapping,
    normalize_events,
)

__all__ = [
    "ConsistencyViolation",
    "EventNormalizer",
    "InvalidStageEvent",
    "MetricsAggregator",
    "NormalizationResult",
    "check_non_overlapping",
    "classify",
    "normalize_events",
]
