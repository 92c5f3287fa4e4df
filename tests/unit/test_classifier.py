"""
Unit tests for threshold classification.
"""

import pytest

from flowmetrics.engine.classifier import classify
from flowmetrics.models.enums import MetricStatus


class TestClassify:
    """Test classify(average, avg_min_days, avg_max_days)."""

    @pytest.mark.parametrize(
        "average,min_days,max_days,expected",
        [
            (0.5, 1, 10, MetricStatus.ON_TARGET),
            (1, 1, 10, MetricStatus.ON_TARGET),
            (5, 1, 10, MetricStatus.WATCH),
            (9.99, 1, 10, MetricStatus.WATCH),
            (10, 1, 10, MetricStatus.ATTENTION),
            (42, 1, 10, MetricStatus.ATTENTION),
        ],
    )
    def test_classify_threshold_bands(self, average, min_days, max_days, expected):
        assert classify(average, min_days, max_days) == expected

    def test_classify_zero_average_is_no_data(self):
        assert classify(0, 1, 10) == MetricStatus.NO_DATA

    def test_classify_zero_average_is_no_data_even_with_zero_threshold(self):
        assert classify(0, 0, 5) == MetricStatus.NO_DATA

    @pytest.mark.parametrize("min_days,max_days", [(None, 10), (1, None), (None, None)])
    def test_classify_missing_threshold_is_no_data(self, min_days, max_days):
        assert classify(5, min_days, max_days) == MetricStatus.NO_DATA

    def test_classify_equal_thresholds(self):
        assert classify(3, 3, 3) == MetricStatus.ON_TARGET
        assert classify(3.01, 3, 3) == MetricStatus.ATTENTION
