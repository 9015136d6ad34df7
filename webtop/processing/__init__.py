"""Analytics over settled rollup data."""

from webtop.processing.analytics import (
    AnomalyDetection,
    TrafficAnalytics,
    TrafficPattern,
    TrendAnalysis,
    classify_level,
    classify_pattern,
)

__all__ = [
    "AnomalyDetection",
    "TrafficAnalytics",
    "TrafficPattern",
    "TrendAnalysis",
    "classify_level",
    "classify_pattern",
]
