"""
Unit tests for event normalization and the interval consistency check.
"""

import random
from datetime import timedelta

import pytest

from flowmetrics.engine.normalizer import (
    ConsistencyViolation,
    EventNormalizer,
    InvalidStageEvent,
    check_non_overlapping,
    normalize_events,
    parse_stage_id,
)
from tests.conftest import T0, make_history, make_interval, make_raw_event


class TestParseStageId:
    """Test raw stage ID parsing."""

    @pytest.mark.parametrize("raw,expected", [("7", 7), (" 12 ", 12), (3, 3)])
    def test_parse_stage_id_valid(self, raw, expected):
        assert parse_stage_id(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "  ", "abc", "0", "-3", "1.5"])
    def test_parse_stage_id_invalid_returns_none(self, raw):
        assert parse_stage_id(raw) is None


class TestEventNormalizerNormalize:
    """Test reconstruction of stage intervals from raw events."""

    def test_normalize_empty_input_returns_empty_result(self):
        result = EventNormalizer().normalize([])

        assert result.is_empty
        assert result.entity_id is None
        assert result.skipped_event_ids == []

    def test_normalize_single_event_yields_open_interval(self):
        result = EventNormalizer().normalize([make_raw_event(1, new_stage_id="5")])

        assert len(result.intervals) == 1
        interval = result.intervals[0]
        assert interval.stage_id == 5
        assert interval.is_open
        assert interval.duration_seconds is None

    def test_normalize_closes_each_interval_at_next_event(self):
        events = make_history(
            4711,
            [(1, T0), (2, T0 + timedelta(days=2)), (3, T0 + timedelta(days=5))],
        )

        intervals = normalize_events(events)

        assert [i.stage_id for i in intervals] == [1, 2, 3]
        assert intervals[0].left_at == T0 + timedelta(days=2)
        assert intervals[0].duration_seconds == 2 * 86400
        assert intervals[1].duration_seconds == 3 * 86400
        assert intervals[2].is_open

    def test_normalize_is_independent_of_input_order(self):
        events = make_history(
            4711,
            [(stage, T0 + timedelta(hours=stage * 7)) for stage in range(1, 9)],
        )
        shuffled = list(events)
        random.Random(42).shuffle(shuffled)

        assert normalize_events(shuffled) == normalize_events(events)
        assert normalize_events(list(reversed(events))) == normalize_events(events)

    def test_normalize_deduplicates_repeated_event_ids(self):
        events = make_history(4711, [(1, T0), (2, T0 + timedelta(days=1))])

        intervals = normalize_events(events + events)

        assert len(intervals) == 2

    def test_normalize_equal_timestamps_ordered_by_event_id(self):
        events = [
            make_raw_event(11, new_stage_id="2", timestamp=T0),
            make_raw_event(10, new_stage_id="1", timestamp=T0),
        ]

        intervals = normalize_events(events)

        assert [i.event_id for i in intervals] == [10, 11]
        assert intervals[0].duration_seconds == 0

    def test_normalize_truncates_duration_to_whole_seconds(self):
        events = [
            make_raw_event(1, new_stage_id="1", timestamp=T0),
            make_raw_event(2, new_stage_id="2", timestamp=T0 + timedelta(seconds=90, microseconds=900000)),
        ]

        intervals = normalize_events(events)

        assert intervals[0].duration_seconds == 90

    def test_normalize_skips_unparseable_stage_ids(self):
        events = [
            make_raw_event(1, new_stage_id="1", timestamp=T0),
            make_raw_event(2, new_stage_id="garbage", timestamp=T0 + timedelta(days=1)),
            make_raw_event(3, new_stage_id="3", timestamp=T0 + timedelta(days=2)),
        ]

        result = EventNormalizer().normalize(events)

        assert result.skipped_event_ids == [2]
        assert [i.stage_id for i in result.intervals] == [1, 3]
        assert result.intervals[0].left_at == T0 + timedelta(days=2)

    def test_normalize_raises_on_invalid_when_skipping_disabled(self):
        events = [make_raw_event(1, new_stage_id="")]

        with pytest.raises(InvalidStageEvent) as exc_info:
            EventNormalizer(skip_invalid=False).normalize(events)

        assert exc_info.value.event_id == 1

    def test_normalize_rejects_events_for_multiple_entities(self):
        events = [make_raw_event(1, entity_id=1), make_raw_event(2, entity_id=2)]

        with pytest.raises(ValueError, match="multiple entities"):
            EventNormalizer().normalize(events)

    def test_normalize_falls_back_to_generated_stage_name(self):
        intervals = normalize_events([make_raw_event(1, new_stage_id="9", new_stage_name=None)])

        assert intervals[0].stage_name == "Stage 9"

    def test_normalize_output_passes_consistency_check(self):
        events = make_history(
            4711,
            [(stage, T0 + timedelta(days=index)) for index, stage in enumerate((1, 2, 1, 3))],
        )

        check_non_overlapping(normalize_events(events))


class TestCheckNonOverlapping:
    """Test the per-entity interval invariant."""

    def test_valid_sequence_passes(self):
        intervals = [
            make_interval(1, stage_id=1, entered_at=T0, left_at=T0 + timedelta(days=1)),
            make_interval(2, stage_id=2, entered_at=T0 + timedelta(days=1)),
        ]

        check_non_overlapping(intervals)

    def test_two_open_intervals_raise(self):
        intervals = [
            make_interval(1, stage_id=1, entered_at=T0),
            make_interval(2, stage_id=2, entered_at=T0 + timedelta(days=1)),
        ]

        with pytest.raises(ConsistencyViolation, match="open intervals"):
            check_non_overlapping(intervals)

    def test_overlapping_intervals_raise(self):
        intervals = [
            make_interval(1, stage_id=1, entered_at=T0, left_at=T0 + timedelta(days=3)),
            make_interval(2, stage_id=2, entered_at=T0 + timedelta(days=1)),
        ]

        with pytest.raises(ConsistencyViolation, match="overlaps"):
            check_non_overlapping(intervals)

    def test_open_interval_before_closed_one_raises(self):
        intervals = [
            make_interval(1, stage_id=1, entered_at=T0),
            make_interval(
                2, stage_id=2, entered_at=T0 + timedelta(days=1), left_at=T0 + timedelta(days=2)
            ),
        ]

        with pytest.raises(ConsistencyViolation):
            check_non_overlapping(intervals)

    def test_entities_are_checked_independently(self):
        intervals = [
            make_interval(1, entity_id=1, entered_at=T0),
            make_interval(2, entity_id=2, entered_at=T0),
        ]

        check_non_overlapping(intervals)
