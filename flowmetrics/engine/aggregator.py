"""
Metrics Aggregator: stage-to-stage durations reduced to flow metrics.

Aggregation Algorithm:
    1. Take the mapping's typed stage address (ID-based when available,
       name-based as the fallback for legacy mappings)
    2. Per entity, the start point is its first entry into the start stage and
       the end point its first entry into the end stage at or after that start
    3. The optional window restricts on the start point inside the storage
       query, so every caller asking for the same window sees the same rows
    4. Entities without an end point are counted as in progress and excluded
       from the statistics
    5. Reduce to count, average, best, worst, median and a distribution

Every query recomputes from stored intervals; nothing is cached.
"""

from datetime import datetime
from typing import Callable, Optional

import numpy as np
import structlog

from flowmetrics.config import MetricsConfig
from flowmetrics.models.events import utcnow
from flowmetrics.models.mappings import StageMapping
from flowmetrics.models.metrics import (
    DistributionBucket,
    EntityDuration,
    FlowMetric,
    ResolvedWindow,
    TimeWindow,
)
from flowmetrics.storage.base import StorageBackend

logger = structlog.get_logger(__name__)


class MetricsAggregator:
    """
    Computes FlowMetric values for stage mappings.

    Attributes:
        storage: Backing store holding stage intervals
        config: Distribution edges and rounding
        clock: Returns the current naive-UTC time (injectable for tests)

    Example:
        >>> aggregator = MetricsAggregator(storage)
        >>> metric = aggregator.aggregate(mapping, TimeWindow(since_days=30))
        >>> metric.average_days, metric.count
        (7.42, 18)
    """

    def __init__(
        self,
        storage: StorageBackend,
        config: Optional[MetricsConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.config = config or MetricsConfig()
        self.clock = clock

    def resolve_window(self, window: Optional[TimeWindow]) -> Optional[ResolvedWindow]:
        if window is None:
            return None
        return window.resolve(self.clock())

    def entity_durations(
        self,
        mapping: StageMapping,
        window: Optional[TimeWindow] = None,
    ) -> list[EntityDuration]:
        """
        Per-entity start/end rows for a mapping, completed and in progress.

        Days are rounded to the configured number of digits.
        """
        resolved = self.resolve_window(window)
        rows = self.storage.read_stage_pair_durations(mapping.address, resolved)
        digits = self.config.round_digits
        return [
            row.model_copy(update={"days": round(row.days, digits)}) if row.days is not None else row
            for row in rows
        ]

    def aggregate(
        self,
        mapping: StageMapping,
        window: Optional[TimeWindow] = None,
    ) -> FlowMetric:
        """
        Aggregate a mapping's stage-pair durations.

        Args:
            mapping: Stage mapping to measure
            window: Optional window on the start-stage entry time

        Returns:
            FlowMetric. Zero matching entities is a valid result with count=0
            and average_days=0.0, never an error.
        """
        resolved = self.resolve_window(window)
        rows = self.storage.read_stage_pair_durations(mapping.address, resolved)
        digits = self.config.round_digits

        completed = [round(row.days, digits) for row in rows if row.days is not None]
        in_progress = sum(1 for row in rows if row.days is None)

        metric = FlowMetric(
            canonical_stage=mapping.canonical_stage,
            match_mode=mapping.match_mode,
            count=len(completed),
            in_progress_count=in_progress,
            window_applied=resolved is not None,
            window=resolved,
        )

        if completed:
            values = np.asarray(completed, dtype=float)
            metric.average_days = round(float(values.mean()), digits)
            metric.best_days = round(float(values.min()), digits)
            metric.worst_days = round(float(values.max()), digits)
            metric.median_days = round(float(np.median(values)), digits)
            metric.distribution = self.distribution(values)
        else:
            metric.distribution = self.distribution(np.asarray([], dtype=float))

        logger.info(
            "flow_metric_aggregated",
            canonical_stage=mapping.canonical_stage,
            match_mode=mapping.match_mode.value,
            count=metric.count,
            in_progress=in_progress,
            average_days=metric.average_days,
            window_start=resolved.start.isoformat() if resolved and resolved.start else None,
            window_end=resolved.end.isoformat() if resolved and resolved.end else None,
        )
        return metric

    def distribution(self, values: np.ndarray) -> list[DistributionBucket]:
        """
        Count durations into buckets [edge_i, edge_i+1), last bucket open-ended.
        """
        edges = np.asarray(self.config.distribution_edges, dtype=float)
        if values.size:
            indexes = np.searchsorted(edges, values, side="right") - 1
            counts = np.bincount(np.clip(indexes, 0, len(edges) - 1), minlength=len(edges))
        else:
            counts = np.zeros(len(edges), dtype=int)

        buckets = []
        for i, lower in enumerate(edges):
            upper = float(edges[i + 1]) if i + 1 < len(edges) else None
            buckets.append(
                DistributionBucket(lower_days=float(lower), upper_days=upper, count=int(counts[i]))
            )
        return buckets
