"""Lantern metric extractors."""

from .base import (
    Coefficients,
    Estimate,
    MetricData,
    MetricEstimator,
    MetricResult,
    NavigationMilestones,
    blend,
    compute_metric,
    estimate_metric,
)
from .first_contentful_paint import FirstContentfulPaint
from .interactive import Interactive
from .largest_contentful_paint import LargestContentfulPaint

__all__ = [
    "Coefficients",
    "Estimate",
    "FirstContentfulPaint",
    "Interactive",
    "LargestContentfulPaint",
    "MetricData",
    "MetricEstimator",
    "MetricResult",
    "NavigationMilestones",
    "blend",
    "compute_metric",
    "estimate_metric",
]
