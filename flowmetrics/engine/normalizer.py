"""
Event Normalizer: raw stage-change events to stage-occupancy intervals.

Reconstruction Algorithm:
    1. Deduplicate events by event_id (the source may repeat pages)
    2. Sort ascending by (timestamp, event_id)
    3. Each event opens an interval in its new stage at its timestamp
    4. Each interval is closed by the next event's timestamp; the last stays open
    5. duration_seconds = whole seconds between entry and exit

Sorting happens after the entity's full history is fetched, so the output is
the same for every ordering of the same input. The normalizer is pure: no I/O,
no clock.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

import structlog

from flowmetrics.models.events import RawStageEvent, StageInterval

logger = structlog.get_logger(__name__)


class InvalidStageEvent(Exception):
    """Raised for an unparseable stage ID when skipping is disabled."""

    def __init__(self, event_id: int, raw_stage_id):
        self.event_id = event_id
        self.raw_stage_id = raw_stage_id
        super().__init__(f"Event {event_id} has unparseable stage id {raw_stage_id!r}")


class ConsistencyViolation(Exception):
    """
    Raised when an entity's intervals overlap or more than one is open.

    Correct normalization never produces this. It signals a defect and must be
    surfaced loudly, never silently corrected.
    """

    def __init__(self, entity_id: int, message: str):
        self.entity_id = entity_id
        super().__init__(f"Entity {entity_id}: {message}")


@dataclass
class NormalizationResult:
    """Intervals for one entity plus the IDs of events that were dropped."""

    entity_id: Optional[int]
    intervals: list[StageInterval] = field(default_factory=list)
    skipped_event_ids: list[int] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.intervals


def parse_stage_id(raw) -> Optional[int]:
    """Parse a raw stage ID into a positive int, or None if it is not one."""
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    try:
        value = int(text)
    except ValueError:
        return None
    return value if value > 0 else None


class EventNormalizer:
    """
    Converts one entity's raw events into ordered, non-overlapping intervals.

    Attributes:
        skip_invalid: When True (default) events with an unparseable stage ID are
            dropped and reported in the result. When False they raise
            InvalidStageEvent.

    Example:
        >>> normalizer = EventNormalizer()
        >>> result = normalizer.normalize(events)
        >>> result.intervals[-1].is_open
        True
    """

    def __init__(self, skip_invalid: bool = True):
        self.skip_invalid = skip_invalid

    def normalize(self, events: Iterable[RawStageEvent]) -> NormalizationResult:
        """
        Normalize events for a single entity.

        Args:
            events: Raw events in any order, all for the same entity

        Returns:
            NormalizationResult. Empty input yields an empty result, which the
            caller reports as "no flow data found".

        Raises:
            ValueError: If events belong to more than one entity
            InvalidStageEvent: If skip_invalid is False and an event is malformed
        """
        unique: dict[int, RawStageEvent] = {}
        for event in events:
            unique.setdefault(event.event_id, event)

        entity_ids = {event.entity_id for event in unique.values()}
        if len(entity_ids) > 1:
            raise ValueError(f"Events span multiple entities: {sorted(entity_ids)}")
        entity_id = entity_ids.pop() if entity_ids else None

        ordered = sorted(unique.values(), key=lambda e: (e.timestamp, e.event_id))

        usable: list[tuple[RawStageEvent, int]] = []
        skipped: list[int] = []
        for event in ordered:
            stage_id = parse_stage_id(event.new_stage_id)
            if stage_id is None:
                if not self.skip_invalid:
                    raise InvalidStageEvent(event.event_id, event.new_stage_id)
                skipped.append(event.event_id)
                continue
            usable.append((event, stage_id))

        if skipped:
            logger.warning(
                "stage_events_skipped",
                entity_id=entity_id,
                skipped_event_ids=skipped,
            )

        intervals: list[StageInterval] = []
        for index, (event, stage_id) in enumerate(usable):
            left_at = usable[index + 1][0].timestamp if index + 1 < len(usable) else None
            duration = (
                int((left_at - event.timestamp).total_seconds()) if left_at is not None else None
            )
            intervals.append(
                StageInterval(
                    event_id=event.event_id,
                    entity_id=event.entity_id,
                    pipeline_id=event.pipeline_id,
                    stage_id=stage_id,
                    stage_name=event.new_stage_name or f"Stage {stage_id}",
                    entered_at=event.timestamp,
                    left_at=left_at,
                    duration_seconds=duration,
                )
            )

        return NormalizationResult(
            entity_id=entity_id,
            intervals=intervals,
            skipped_event_ids=skipped,
        )


def normalize_events(
    events: Iterable[RawStageEvent], skip_invalid: bool = True
) -> list[StageInterval]:
    """Convenience wrapper returning only the intervals."""
    return EventNormalizer(skip_invalid=skip_invalid).normalize(events).intervals


def check_non_overlapping(intervals: Iterable[StageInterval]) -> None:
    """
    Verify the interval invariant for every entity in `intervals`.

    Per entity, intervals ordered by entered_at must not overlap and at most
    one may be open (and it must be the last).

    Raises:
        ConsistencyViolation: On the first violation found
    """
    by_entity: dict[int, list[StageInterval]] = {}
    for interval in intervals:
        by_entity.setdefault(interval.entity_id, []).append(interval)

    for entity_id, entity_intervals in by_entity.items():
        ordered = sorted(entity_intervals, key=lambda i: (i.entered_at, i.event_id))
        open_count = sum(1 for i in ordered if i.is_open)
        if open_count > 1:
            raise ConsistencyViolation(entity_id, f"{open_count} open intervals")
        for current, following in zip(ordered, ordered[1:]):
            if current.is_open:
                raise ConsistencyViolation(
                    entity_id,
                    f"open interval {current.event_id} is followed by {following.event_id}",
                )
            if current.left_at > following.entered_at:
                raise ConsistencyViolation(
                    entity_id,
                    f"interval {current.event_id} overlaps interval {following.event_id}",
                )
