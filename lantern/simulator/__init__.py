"""SimPy-based page load simulator."""

from .engine import NodeTiming, SimulationResult, Simulator, SimulatorOptions, Variant, start_position
from .loader import load_simulator

__all__ = [
    "NodeTiming",
    "SimulationResult",
    "Simulator",
    "SimulatorOptions",
    "Variant",
    "load_simulator",
    "start_position",
]
