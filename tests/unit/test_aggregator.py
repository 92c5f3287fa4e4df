"""
Unit tests for MetricsAggregator and time windows.
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import numpy as np
import pytest

from flowmetrics.config import MetricsConfig
from flowmetrics.engine.aggregator import MetricsAggregator
from flowmetrics.models.enums import MatchMode
from flowmetrics.models.mappings import StageIdAddress, StageMapping, StageNameAddress
from flowmetrics.models.metrics import EntityDuration, TimeWindow
from tests.conftest import T0, make_interval

NOW = datetime(2026, 4, 15, 13, 30, 0)


def make_mapping(address=None, **overrides) -> StageMapping:
    defaults = dict(
        mapping_id=1,
        canonical_stage="Procurement",
        address=address or StageIdAddress(start_stage_id=1, end_stage_id=2),
        avg_min_days=1,
        avg_max_days=10,
    )
    defaults.update(overrides)
    return StageMapping(**defaults)


def make_duration(entity_id: int, days, started_at: datetime = T0) -> EntityDuration:
    return EntityDuration(
        entity_id=entity_id,
        started_at=started_at,
        ended_at=started_at + timedelta(days=days) if days is not None else None,
        days=days,
    )


@pytest.fixture
def stub_storage():
    storage = MagicMock()
    storage.read_stage_pair_durations.return_value = []
    return storage


class TestTimeWindow:
    """Test window parsing and resolution."""

    @pytest.mark.parametrize("period,days", [("7d", 7), ("14d", 14), ("1m", 30), ("3m", 90)])
    def test_from_period_known_codes(self, period, days):
        assert TimeWindow.from_period(period).since_days == days

    @pytest.mark.parametrize("period", [None, "all"])
    def test_from_period_all_means_no_window(self, period):
        assert TimeWindow.from_period(period) is None

    def test_from_period_unknown_code_raises(self):
        with pytest.raises(ValueError, match="Unknown period"):
            TimeWindow.from_period("2w")

    def test_since_days_with_explicit_bounds_rejected(self):
        with pytest.raises(ValueError):
            TimeWindow(since_days=7, start=T0)

    def test_empty_window_rejected(self):
        with pytest.raises(ValueError):
            TimeWindow()

    def test_start_after_end_rejected(self):
        with pytest.raises(ValueError):
            TimeWindow(start=T0 + timedelta(days=1), end=T0)

    def test_resolve_since_days_anchors_to_midnight(self):
        resolved = TimeWindow(since_days=7).resolve(NOW)

        assert resolved.start == datetime(2026, 4, 8, 0, 0, 0)
        assert resolved.end is None

    def test_resolve_explicit_bounds_passthrough(self):
        resolved = TimeWindow(start=T0, end=NOW).resolve(NOW)

        assert resolved.start == T0
        assert resolved.end == NOW


class TestMetricsAggregatorAggregate:
    """Test reduction of stage-pair durations to a FlowMetric."""

    def test_aggregate_no_rows_is_empty_metric(self, stub_storage):
        metric = MetricsAggregator(stub_storage).aggregate(make_mapping())

        assert metric.count == 0
        assert metric.average_days == 0.0
        assert metric.best_days is None
        assert not metric.has_data
        assert metric.window_applied is False
        assert sum(bucket.count for bucket in metric.distribution) == 0

    def test_aggregate_statistics(self, stub_storage):
        stub_storage.read_stage_pair_durations.return_value = [
            make_duration(1, 2.0),
            make_duration(2, 4.0),
            make_duration(3, 9.0),
            make_duration(4, None),
        ]

        metric = MetricsAggregator(stub_storage).aggregate(make_mapping())

        assert metric.count == 3
        assert metric.in_progress_count == 1
        assert metric.average_days == 5.0
        assert metric.best_days == 2.0
        assert metric.worst_days == 9.0
        assert metric.median_days == 4.0
        assert metric.match_mode == MatchMode.ID

    def test_aggregate_rounds_each_entity_before_averaging(self, stub_storage):
        stub_storage.read_stage_pair_durations.return_value = [
            make_duration(1, 1.004),
            make_duration(2, 1.004),
            make_duration(3, 1.004),
        ]

        metric = MetricsAggregator(stub_storage).aggregate(make_mapping())

        assert metric.average_days == 1.0

    def test_aggregate_passes_resolved_window_to_storage(self, stub_storage):
        aggregator = MetricsAggregator(stub_storage, clock=lambda: NOW)

        metric = aggregator.aggregate(make_mapping(), TimeWindow(since_days=14))

        address, resolved = stub_storage.read_stage_pair_durations.call_args.args
        assert address == StageIdAddress(start_stage_id=1, end_stage_id=2)
        assert resolved.start == datetime(2026, 4, 1)
        assert metric.window_applied is True
        assert metric.window == resolved

    def test_aggregate_without_window_passes_none(self, stub_storage):
        MetricsAggregator(stub_storage).aggregate(make_mapping())

        assert stub_storage.read_stage_pair_durations.call_args.args[1] is None

    def test_aggregate_name_mapping_reports_name_mode(self, stub_storage):
        mapping = make_mapping(address=StageNameAddress(start_stage="Lead", end_stage="Won"))

        metric = MetricsAggregator(stub_storage).aggregate(mapping)

        assert metric.match_mode == MatchMode.NAME

    def test_entity_durations_rounds_days(self, stub_storage):
        stub_storage.read_stage_pair_durations.return_value = [
            make_duration(1, 1.23456),
            make_duration(2, None),
        ]

        rows = MetricsAggregator(stub_storage).entity_durations(make_mapping())

        assert rows[0].days == 1.23
        assert rows[1].in_progress


class TestMetricsAggregatorDistribution:
    """Test duration bucketing."""

    def test_distribution_bucket_edges(self, stub_storage):
        aggregator = MetricsAggregator(stub_storage, MetricsConfig(distribution_edges=(0, 1, 7)))

        buckets = aggregator.distribution(np.asarray([0.0, 0.5, 1.0, 6.9, 7.0, 100.0]))

        assert [(b.lower_days, b.upper_days, b.count) for b in buckets] == [
            (0.0, 1.0, 2),
            (1.0, 7.0, 2),
            (7.0, None, 2),
        ]

    def test_distribution_empty_values(self, stub_storage):
        buckets = MetricsAggregator(stub_storage).distribution(np.asarray([], dtype=float))

        assert len(buckets) == len(MetricsConfig().distribution_edges)
        assert all(b.count == 0 for b in buckets)

    def test_metrics_config_rejects_bad_edges(self):
        with pytest.raises(ValueError):
            MetricsConfig(distribution_edges=(1, 2, 3))
        with pytest.raises(ValueError):
            MetricsConfig(distribution_edges=(0, 3, 3))


class TestMetricsAggregatorWithDuckDB:
    """Aggregation against real stored intervals."""

    def test_first_start_entry_and_first_end_after_it(self, duckdb_storage):
        # Entity enters stage 1 twice; only the first entry counts, and the
        # end is the first stage-2 entry at or after it.
        duckdb_storage.upsert_intervals([
            make_interval(1, entity_id=7, stage_id=1, entered_at=T0, left_at=T0 + timedelta(days=1)),
            make_interval(
                2, entity_id=7, stage_id=3,
                entered_at=T0 + timedelta(days=1), left_at=T0 + timedelta(days=2),
            ),
            make_interval(
                3, entity_id=7, stage_id=1,
                entered_at=T0 + timedelta(days=2), left_at=T0 + timedelta(days=3),
            ),
            make_interval(
                4, entity_id=7, stage_id=2,
                entered_at=T0 + timedelta(days=3), left_at=T0 + timedelta(days=4),
            ),
            make_interval(5, entity_id=7, stage_id=2, entered_at=T0 + timedelta(days=4)),
        ])

        metric = MetricsAggregator(duckdb_storage).aggregate(make_mapping())

        assert metric.count == 1
        assert metric.average_days == 3.0

    def test_end_before_start_is_in_progress(self, duckdb_storage):
        duckdb_storage.upsert_intervals([
            make_interval(1, entity_id=8, stage_id=2, entered_at=T0, left_at=T0 + timedelta(days=1)),
            make_interval(2, entity_id=8, stage_id=1, entered_at=T0 + timedelta(days=1)),
        ])

        metric = MetricsAggregator(duckdb_storage).aggregate(make_mapping())

        assert metric.count == 0
        assert metric.in_progress_count == 1

    def test_window_filters_on_start_point(self, duckdb_storage):
        old = NOW - timedelta(days=40)
        recent = NOW - timedelta(days=3)
        duckdb_storage.upsert_intervals([
            make_interval(1, entity_id=1, stage_id=1, entered_at=old, left_at=old + timedelta(days=2)),
            make_interval(2, entity_id=1, stage_id=2, entered_at=old + timedelta(days=2)),
            make_interval(
                3, entity_id=2, stage_id=1, entered_at=recent, left_at=recent + timedelta(days=1)
            ),
            make_interval(4, entity_id=2, stage_id=2, entered_at=recent + timedelta(days=1)),
        ])
        aggregator = MetricsAggregator(duckdb_storage, clock=lambda: NOW)

        all_time = aggregator.aggregate(make_mapping())
        last_week = aggregator.aggregate(make_mapping(), TimeWindow.from_period("7d"))

        assert all_time.count == 2
        assert all_time.average_days == 1.5
        assert last_week.count == 1
        assert last_week.average_days == 1.0

    def test_name_mapping_matches_stage_names(self, duckdb_storage):
        duckdb_storage.upsert_intervals([
            make_interval(
                1, entity_id=1, stage_id=11, stage_name="Qualified",
                entered_at=T0, left_at=T0 + timedelta(hours=36),
            ),
            make_interval(
                2, entity_id=1, stage_id=12, stage_name="Won", entered_at=T0 + timedelta(hours=36)
            ),
        ])
        mapping = make_mapping(address=StageNameAddress(start_stage="Qualified", end_stage="Won"))

        metric = MetricsAggregator(duckdb_storage).aggregate(mapping)

        assert metric.count == 1
        assert metric.average_days == 1.5
