"""
Stage Mapping Store: validated CRUD over stage mappings and metric definitions.

Validation rules enforced on every write:
- canonical_stage is required and unique across mappings
- start/end stages resolve either by ID pair or by name pair (IDs win)
- start and end stage differ
- thresholds are non-negative and avg_min_days <= avg_max_days when both set
- metric_key is lowercase letters, digits and hyphens, and unique
- a metric definition points at an existing mapping

A failed validation raises MappingValidationError carrying every problem found;
nothing is persisted. Deleting or deactivating a definition never deletes its
mapping.
"""

from typing import Optional, Union

import structlog

from flowmetrics.models.mappings import (
    METRIC_KEY_PATTERN,
    MetricDefinition,
    MetricDefinitionInput,
    MetricDefinitionUpdate,
    StageIdAddress,
    StageMapping,
    StageMappingInput,
    StageNameAddress,
    resolve_stage_address,
)
from flowmetrics.storage.base import StorageBackend

logger = structlog.get_logger(__name__)

# Default dashboard metrics: (metric_key, display_title, canonical_stage, sort_order)
DEFAULT_METRICS = [
    ("lead-conversion", "Lead Conversion Time", "Lead Conversion", 1),
    ("quote-conversion", "Quote Conversion Time", "Quote Conversion", 2),
    ("order-conversion", "Order Conversion Time", "Order Conversion", 3),
    ("procurement", "Procurement Lead Time", "Procurement", 4),
    ("manufacturing", "Manufacturing Lead Time", "Manufacturing", 5),
    ("delivery", "Delivery Lead Time", "Delivery", 6),
]


class MappingValidationError(Exception):
    """Raised when a mapping or definition write fails validation."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class MappingNotFoundError(Exception):
    """Raised when a mapping or definition does not exist."""

    pass


class StageMappingStore:
    """
    Validated read/write access to stage mappings and metric definitions.

    Example:
        >>> store = StageMappingStore(storage)
        >>> mapping = store.create_mapping(StageMappingInput(
        ...     canonical_stage="Procurement", start_stage_id=12, end_stage_id=15,
        ...     avg_min_days=5, avg_max_days=10,
        ... ))
        >>> [(d.metric_key, m.canonical_stage) for d, m in store.list_active_metrics()]
    """

    def __init__(self, storage: StorageBackend):
        self.storage = storage

    # =========================================================================
    # Validation
    # =========================================================================

    def _validate_mapping(
        self, data: StageMappingInput, mapping_id: Optional[int] = None
    ) -> tuple[str, Union[StageIdAddress, StageNameAddress]]:
        errors: list[str] = []

        canonical_stage = (data.canonical_stage or "").strip()
        if not canonical_stage:
            errors.append("canonical_stage is required")
        else:
            existing = self.storage.read_mapping_by_stage(canonical_stage)
            if existing is not None and existing.mapping_id != mapping_id:
                errors.append(f"A mapping for canonical stage '{canonical_stage}' already exists")

        address = None
        try:
            address = resolve_stage_address(
                data.start_stage_id, data.end_stage_id, data.start_stage, data.end_stage
            )
        except ValueError as e:
            errors.append(str(e))

        if data.avg_min_days is not None and data.avg_min_days < 0:
            errors.append("avg_min_days cannot be negative")
        if data.avg_max_days is not None and data.avg_max_days < 0:
            errors.append("avg_max_days cannot be negative")
        if (
            data.avg_min_days is not None
            and data.avg_max_days is not None
            and data.avg_min_days > data.avg_max_days
        ):
            errors.append("avg_min_days cannot be greater than avg_max_days")

        if errors:
            logger.warning(
                "mapping_validation_failed",
                canonical_stage=canonical_stage,
                mapping_id=mapping_id,
                errors=errors,
            )
            raise MappingValidationError(errors)

        return canonical_stage, address

    def _validate_definition(
        self, data: MetricDefinitionInput, metric_id: Optional[int] = None
    ) -> None:
        errors: list[str] = []

        if not METRIC_KEY_PATTERN.match(data.metric_key or ""):
            errors.append("metric_key may contain only lowercase letters, digits and hyphens")
        else:
            existing = self.storage.read_definition_by_key(data.metric_key)
            if existing is not None and existing.metric_id != metric_id:
                errors.append(f"metric_key '{data.metric_key}' is already in use")

        if not (data.display_title or "").strip():
            errors.append("display_title is required")

        if not (data.canonical_stage or "").strip():
            errors.append("canonical_stage is required")
        elif self.storage.read_mapping_by_stage(data.canonical_stage.strip()) is None:
            errors.append(f"No stage mapping exists for canonical stage '{data.canonical_stage}'")

        if errors:
            logger.warning(
                "definition_validation_failed",
                metric_key=data.metric_key,
                metric_id=metric_id,
                errors=errors,
            )
            raise MappingValidationError(errors)

    # =========================================================================
    # Stage Mappings
    # =========================================================================

    def create_mapping(self, data: StageMappingInput) -> StageMapping:
        canonical_stage, address = self._validate_mapping(data)
        mapping = self.storage.write_mapping(
            canonical_stage=canonical_stage,
            address=address,
            avg_min_days=data.avg_min_days,
            avg_max_days=data.avg_max_days,
            metric_comment=data.metric_comment,
        )
        logger.info(
            "stage_mapping_created",
            mapping_id=mapping.mapping_id,
            canonical_stage=canonical_stage,
            match_mode=mapping.match_mode.value,
        )
        return mapping

    def update_mapping(self, mapping_id: int, data: StageMappingInput) -> StageMapping:
        """
        Replace a mapping. Definitions pointing at the old canonical stage
        follow a rename.
        """
        existing = self.get_mapping(mapping_id)
        canonical_stage, address = self._validate_mapping(data, mapping_id=mapping_id)

        updated = self.storage.update_mapping(
            mapping_id,
            canonical_stage=canonical_stage,
            address=address,
            avg_min_days=data.avg_min_days,
            avg_max_days=data.avg_max_days,
            metric_comment=data.metric_comment,
        )
        if updated is None:
            raise MappingNotFoundError(f"Stage mapping {mapping_id} not found")

        if canonical_stage != existing.canonical_stage:
            for definition in self.storage.read_definitions():
                if definition.canonical_stage == existing.canonical_stage:
                    self.storage.update_definition(
                        definition.metric_id, canonical_stage=canonical_stage
                    )

        logger.info("stage_mapping_updated", mapping_id=mapping_id, canonical_stage=canonical_stage)
        return updated

    def upsert_mapping(self, data: StageMappingInput) -> StageMapping:
        """Create the mapping for data.canonical_stage, or replace the existing one."""
        existing = self.storage.read_mapping_by_stage((data.canonical_stage or "").strip())
        if existing is None:
            return self.create_mapping(data)
        return self.update_mapping(existing.mapping_id, data)

    def get_mapping(self, mapping_id: int) -> StageMapping:
        mapping = self.storage.read_mapping(mapping_id)
        if mapping is None:
            raise MappingNotFoundError(f"Stage mapping {mapping_id} not found")
        return mapping

    def get_mapping_by_stage(self, canonical_stage: str) -> StageMapping:
        mapping = self.storage.read_mapping_by_stage(canonical_stage)
        if mapping is None:
            raise MappingNotFoundError(f"No stage mapping for canonical stage '{canonical_stage}'")
        return mapping

    def list_mappings(self) -> list[StageMapping]:
        return self.storage.read_mappings()

    def update_comment(self, mapping_id: int, metric_comment: Optional[str]) -> StageMapping:
        self.get_mapping(mapping_id)
        comment = metric_comment.strip() if metric_comment else None
        updated = self.storage.update_mapping_comment(mapping_id, comment or None)
        logger.info("stage_mapping_comment_updated", mapping_id=mapping_id)
        return updated

    def delete_mapping(self, mapping_id: int) -> None:
        """
        Delete a mapping.

        Raises:
            MappingNotFoundError: If it does not exist
            MappingValidationError: While an active definition still uses it
        """
        mapping = self.get_mapping(mapping_id)
        in_use = [
            d.metric_key
            for d in self.storage.read_definitions(active_only=True)
            if d.canonical_stage == mapping.canonical_stage
        ]
        if in_use:
            raise MappingValidationError(
                [f"Mapping is used by active metric definitions: {', '.join(in_use)}"]
            )
        self.storage.delete_mapping(mapping_id)
        logger.info("stage_mapping_deleted", mapping_id=mapping_id)

    # =========================================================================
    # Metric Definitions
    # =========================================================================

    def create_definition(self, data: MetricDefinitionInput) -> MetricDefinition:
        self._validate_definition(data)
        definition = self.storage.write_definition(
            data.model_copy(
                update={
                    "display_title": data.display_title.strip(),
                    "canonical_stage": data.canonical_stage.strip(),
                }
            )
        )
        logger.info(
            "metric_definition_created",
            metric_id=definition.metric_id,
            metric_key=definition.metric_key,
        )
        return definition

    def update_definition(
        self, metric_id: int, changes: MetricDefinitionUpdate
    ) -> MetricDefinition:
        existing = self.get_definition(metric_id)
        updates = changes.model_dump(exclude_unset=True, exclude_none=True)
        for field in ("display_title", "canonical_stage"):
            if field in updates:
                updates[field] = updates[field].strip()
        merged = MetricDefinitionInput(
            metric_key=updates.get("metric_key", existing.metric_key),
            display_title=updates.get("display_title", existing.display_title),
            canonical_stage=updates.get("canonical_stage", existing.canonical_stage),
            sort_order=updates.get("sort_order", existing.sort_order),
            is_active=updates.get("is_active", existing.is_active),
        )
        self._validate_definition(merged, metric_id=metric_id)

        updated = self.storage.update_definition(metric_id, **updates)
        if updated is None:
            raise MappingNotFoundError(f"Metric definition {metric_id} not found")
        logger.info("metric_definition_updated", metric_id=metric_id, fields=sorted(updates))
        return updated

    def deactivate_definition(self, metric_id: int) -> MetricDefinition:
        self.get_definition(metric_id)
        updated = self.storage.update_definition(metric_id, is_active=False)
        logger.info("metric_definition_deactivated", metric_id=metric_id)
        return updated

    def delete_definition(self, metric_id: int) -> None:
        """Delete a definition. Its stage mapping is kept."""
        if not self.storage.delete_definition(metric_id):
            raise MappingNotFoundError(f"Metric definition {metric_id} not found")
        logger.info("metric_definition_deleted", metric_id=metric_id)

    def get_definition(self, metric_id: int) -> MetricDefinition:
        definition = self.storage.read_definition(metric_id)
        if definition is None:
            raise MappingNotFoundError(f"Metric definition {metric_id} not found")
        return definition

    def list_definitions(self, active_only: bool = False) -> list[MetricDefinition]:
        return self.storage.read_definitions(active_only=active_only)

    def reorder_definitions(self, metric_ids: list[int]) -> list[MetricDefinition]:
        """Assign sort_order 1..n following the given ID order."""
        known = {d.metric_id for d in self.storage.read_definitions()}
        unknown = [metric_id for metric_id in metric_ids if metric_id not in known]
        if unknown:
            raise MappingNotFoundError(f"Unknown metric definitions: {unknown}")
        if len(set(metric_ids)) != len(metric_ids):
            raise MappingValidationError(["Metric IDs in a reorder must be unique"])

        for position, metric_id in enumerate(metric_ids, start=1):
            self.storage.update_definition(metric_id, sort_order=position)

        logger.info("metric_definitions_reordered", order=metric_ids)
        return self.storage.read_definitions()

    def list_active_metrics(self) -> list[tuple[MetricDefinition, StageMapping]]:
        """
        Active definitions joined to their mappings, ordered by sort_order then
        display_title. Definitions whose mapping has gone missing are skipped.
        """
        mappings = {m.canonical_stage: m for m in self.storage.read_mappings()}
        joined = []
        for definition in self.storage.read_definitions(active_only=True):
            mapping = mappings.get(definition.canonical_stage)
            if mapping is None:
                logger.warning(
                    "metric_definition_without_mapping",
                    metric_id=definition.metric_id,
                    canonical_stage=definition.canonical_stage,
                )
                continue
            joined.append((definition, mapping))
        return joined

    def seed_default_definitions(self) -> list[MetricDefinition]:
        """
        Create the default dashboard metrics whose mapping exists and whose key
        is not yet taken. Safe to run repeatedly.
        """
        created = []
        for metric_key, title, canonical_stage, sort_order in DEFAULT_METRICS:
            if self.storage.read_definition_by_key(metric_key) is not None:
                continue
            if self.storage.read_mapping_by_stage(canonical_stage) is None:
                logger.info(
                    "default_metric_skipped_no_mapping",
                    metric_key=metric_key,
                    canonical_stage=canonical_stage,
                )
                continue
            created.append(
                self.create_definition(
                    MetricDefinitionInput(
                        metric_key=metric_key,
                        display_title=title,
                        canonical_stage=canonical_stage,
                        sort_order=sort_order,
                    )
                )
            )
        return created
