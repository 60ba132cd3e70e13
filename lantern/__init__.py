"""Lantern: simulate page-load performance metrics from one recorded page load."""

from .artifacts import ArtifactCache, MetricComputationInput, compute_lantern_metrics
from .config import Settings, load_settings
from .errors import ErrorKind, LanternError
from .graph import PageURL, build_requests, create_graph
from .metrics import FirstContentfulPaint, Interactive, LargestContentfulPaint, MetricResult, NavigationMilestones
from .network import NetworkAnalysis, analyze
from .simulator import SimulationResult, Simulator, SimulatorOptions, Variant, load_simulator

__version__ = "0.1.0"

__all__ = [
    "ArtifactCache",
    "ErrorKind",
    "FirstContentfulPaint",
    "Interactive",
    "LanternError",
    "LargestContentfulPaint",
    "MetricComputationInput",
    "MetricResult",
    "NavigationMilestones",
    "NetworkAnalysis",
    "PageURL",
    "Settings",
    "SimulationResult",
    "Simulator",
    "SimulatorOptions",
    "Variant",
    "analyze",
    "build_requests",
    "compute_lantern_metrics",
    "create_graph",
    "load_settings",
    "load_simulator",
]
