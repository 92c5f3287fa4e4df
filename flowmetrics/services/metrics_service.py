"""
Metrics service: resolves mappings, aggregates and classifies.

Every dashboard surface goes through this one path, so two pages asking for
the same canonical stage and window always get the same answer.
"""

from typing import Optional

import structlog

from flowmetrics.engine.aggregator import MetricsAggregator
from flowmetrics.engine.classifier import classify
from flowmetrics.models.mappings import MetricDefinition, StageMapping
from flowmetrics.models.metrics import MetricView, TimeWindow

from .mapping_store import StageMappingStore

logger = structlog.get_logger(__name__)


class MetricsService:
    """
    Read-side facade over the mapping store, aggregator and classifier.

    Example:
        >>> service = MetricsService(store, aggregator)
        >>> view = service.get_metric("Procurement", TimeWindow.from_period("1m"))
        >>> view.status
        <MetricStatus.WATCH: 'watch'>
    """

    def __init__(self, store: StageMappingStore, aggregator: MetricsAggregator):
        self.store = store
        self.aggregator = aggregator

    def _view(
        self,
        mapping: StageMapping,
        window: Optional[TimeWindow],
        definition: Optional[MetricDefinition] = None,
        include_entities: bool = False,
    ) -> MetricView:
        metric = self.aggregator.aggregate(mapping, window)
        status = classify(metric.average_days, mapping.avg_min_days, mapping.avg_max_days)
        entities = self.aggregator.entity_durations(mapping, window) if include_entities else None
        return MetricView(
            canonical_stage=mapping.canonical_stage,
            average=metric.average_days,
            count=metric.count,
            status=status,
            mapping=mapping,
            definition=definition,
            metric=metric,
            entities=entities,
        )

    def get_metric(
        self,
        canonical_stage: str,
        window: Optional[TimeWindow] = None,
        include_entities: bool = False,
    ) -> MetricView:
        """
        Metric for one canonical stage.

        Raises:
            MappingNotFoundError: If no mapping exists for the stage
        """
        mapping = self.store.get_mapping_by_stage(canonical_stage)
        return self._view(mapping, window, include_entities=include_entities)

    def get_metric_by_definition(
        self,
        metric_id: int,
        window: Optional[TimeWindow] = None,
        include_entities: bool = True,
    ) -> MetricView:
        """
        Metric for a definition, including per-entity rows by default.

        Raises:
            MappingNotFoundError: If the definition or its mapping does not exist
        """
        definition = self.store.get_definition(metric_id)
        mapping = self.store.get_mapping_by_stage(definition.canonical_stage)
        return self._view(mapping, window, definition=definition, include_entities=include_entities)

    def list_metrics(self, window: Optional[TimeWindow] = None) -> list[MetricView]:
        """Every active definition with its metric, in dashboard order."""
        views = [
            self._view(mapping, window, definition=definition)
            for definition, mapping in self.store.list_active_metrics()
        ]
        logger.info("metrics_listed", count=len(views), windowed=window is not None)
        return views
