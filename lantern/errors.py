"""Error kinds raised by the simulation core.

Every failure carries a closed :class:`ErrorKind` discriminant plus a short string
``code`` and a ``details`` payload, so callers can match on ``err.kind`` instead of
parsing messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Mapping, Optional


class ErrorKind(str, Enum):
    GRAPH_CONSTRUCTION = "graph_construction"
    NETWORK_ANALYSIS = "network_analysis"
    SIMULATION_CYCLE = "simulation_cycle"
    UNSCHEDULABLE_GRAPH = "unschedulable_graph"
    UNSUPPORTED_MODE = "unsupported_mode"
    MISSING_MILESTONE = "missing_milestone"
    METRIC_UNAVAILABLE = "metric_unavailable"
    INVALID_SETTINGS = "invalid_settings"


class LanternError(RuntimeError):
    """Base error for the simulation core."""

    default_kind: Optional[ErrorKind] = None

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[ErrorKind] = None,
        code: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        resolved = kind or self.default_kind
        if resolved is None:
            raise TypeError("LanternError requires an ErrorKind")
        self.kind: ErrorKind = resolved
        self.code: str = code or resolved.name
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "code": self.code, "message": str(self), "details": dict(self.details)}


class GraphConstructionError(LanternError):
    """Input is too old or incompatible to build a dependency graph."""

    default_kind = ErrorKind.GRAPH_CONSTRUCTION


class NetworkAnalysisError(LanternError):
    default_kind = ErrorKind.NETWORK_ANALYSIS


class SimulationCycleError(LanternError):
    """The graph handed to the simulator contains a cycle."""

    default_kind = ErrorKind.SIMULATION_CYCLE


class UnschedulableGraphError(LanternError):
    """Simulation finished with nodes that never became ready."""

    default_kind = ErrorKind.UNSCHEDULABLE_GRAPH


class UnsupportedModeError(LanternError):
    default_kind = ErrorKind.UNSUPPORTED_MODE


class MetricUnavailableError(LanternError):
    """A metric has no qualifying candidate (e.g. no largest contentful paint)."""

    default_kind = ErrorKind.METRIC_UNAVAILABLE


class SettingsError(LanternError):
    default_kind = ErrorKind.INVALID_SETTINGS
