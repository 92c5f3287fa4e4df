"""
Threshold Classifier: aggregate duration to a qualitative status.

Rules (evaluated in order, first match wins):
    1. average == 0                      -> NO_DATA
    2. min or max threshold not set       -> NO_DATA
    3. average <= avg_min_days            -> ON_TARGET
    4. average <  avg_max_days            -> WATCH
    5. otherwise                          -> ATTENTION

The no-data checks come first so a missing measurement is never reported as
on target. An average of exactly zero is treated as "not measured"; callers
that need to tell the two apart should look at FlowMetric.count.
"""

from typing import Optional

from flowmetrics.models.enums import MetricStatus


def classify(
    average: float,
    avg_min_days: Optional[float],
    avg_max_days: Optional[float],
) -> MetricStatus:
    """
    Classify an average stage duration against a mapping's thresholds.

    Args:
        average: Average duration in days (0 when nothing completed)
        avg_min_days: At or below this the metric is on target
        avg_max_days: At or above this the metric needs attention

    Returns:
        MetricStatus

    Example:
        >>> classify(5, 1, 10)
        <MetricStatus.WATCH: 'watch'>
    """
    if average == 0:
        return MetricStatus.NO_DATA
    if avg_min_days is None or avg_max_days is None:
        return MetricStatus.NO_DATA
    if average <= avg_min_days:
        return MetricStatus.ON_TARGET
    if average < avg_max_days:
        return MetricStatus.WATCH
    return MetricStatus.ATTENTION
