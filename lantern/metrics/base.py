"""Protocol and data containers shared by the metric extractors."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Protocol, Set

from ..constants import ResourceType
from ..errors import ErrorKind, LanternError, MetricUnavailableError
from ..graph.nodes import Node, NodeType, clone_with_relationships, traverse
from ..simulator.engine import NodeTiming, SimulationResult, Simulator, Variant

logger = logging.getLogger(__name__)

# Missing-milestone codes that mean "this metric cannot be computed for this page".
UNAVAILABLE_METRIC_CODES = frozenset({"NO_FCP", "NO_LCP"})


@dataclass(frozen=True)
class Coefficients:
    intercept: float
    optimistic: float
    pessimistic: float


@dataclass(frozen=True)
class NavigationMilestones:
    """Observed navigation timestamps (ms, same clock as the trace)."""

    time_origin: float = 0.0
    first_contentful_paint: Optional[float] = None
    largest_contentful_paint: Optional[float] = None


@dataclass(frozen=True)
class MetricData:
    graph: Node
    simulator: Simulator
    navigation: NavigationMilestones = field(default_factory=NavigationMilestones)


@dataclass(frozen=True)
class Estimate:
    time_in_ms: float
    node_timings: Mapping[Node, NodeTiming]


@dataclass(frozen=True)
class MetricResult:
    timing: float
    timestamp: float
    optimistic_estimate: Estimate
    pessimistic_estimate: Estimate
    optimistic_graph: Node
    pessimistic_graph: Node


class MetricEstimator(Protocol):
    """One lantern metric: which subgraphs to simulate and how to read the result."""

    name: str
    coefficients: Coefficients

    def optimistic_graph(self, graph: Node, navigation: NavigationMilestones) -> Node:
        """Subgraph simulated with the optimistic variant."""

    def pessimistic_graph(self, graph: Node, navigation: NavigationMilestones) -> Node:
        """Subgraph simulated with the pessimistic variant."""

    def estimate(
        self, simulation: SimulationResult, *, optimistic: bool, extras: Mapping[str, MetricResult]
    ) -> Estimate:
        """Turn a simulation into this metric's estimate."""

    def adjust_timing(self, timing: float, extras: Mapping[str, MetricResult]) -> float:
        """Final clamp applied to the blended timing."""


def missing_milestone(code: str, message: str) -> LanternError:
    return LanternError(message, kind=ErrorKind.MISSING_MILESTONE, code=code)


def get_script_urls(graph: Node, predicate: Optional[Callable[[Node], bool]] = None) -> Set[str]:
    urls: Set[str] = set()
    for node in traverse(graph):
        if node.type is not NodeType.NETWORK or node.request.resource_type != ResourceType.SCRIPT:
            continue
        if predicate is None or predicate(node):
            urls.add(node.request.url)
    return urls


def blend(coefficients: Coefficients, optimistic: float, pessimistic: float) -> float:
    # The intercept only applies in full once the optimistic estimate reaches 1s.
    intercept_multiplier = min(1.0, optimistic / 1000) if coefficients.intercept > 0 else 0.0
    return (
        coefficients.intercept * intercept_multiplier
        + coefficients.optimistic * optimistic
        + coefficients.pessimistic * pessimistic
    )


def compute_metric(
    estimator: MetricEstimator,
    data: MetricData,
    extras: Optional[Mapping[str, MetricResult]] = None,
) -> MetricResult:
    extras = dict(extras or {})
    optimistic_graph = estimator.optimistic_graph(data.graph, data.navigation)
    pessimistic_graph = estimator.pessimistic_graph(data.graph, data.navigation)

    optimistic_simulation = data.simulator.simulate(
        optimistic_graph, Variant.OPTIMISTIC, label=f"optimistic{estimator.name}"
    )
    pessimistic_simulation = data.simulator.simulate(
        pessimistic_graph, Variant.PESSIMISTIC, label=f"pessimistic{estimator.name}"
    )
    optimistic_estimate = estimator.estimate(optimistic_simulation, optimistic=True, extras=extras)
    pessimistic_estimate = estimator.estimate(pessimistic_simulation, optimistic=False, extras=extras)

    timing = blend(
        estimator.coefficients, optimistic_estimate.time_in_ms, pessimistic_estimate.time_in_ms
    )
    timing = estimator.adjust_timing(timing, extras)
    logger.debug(
        "%s: optimistic=%.1fms pessimistic=%.1fms timing=%.1fms",
        estimator.name,
        optimistic_estimate.time_in_ms,
        pessimistic_estimate.time_in_ms,
        timing,
    )
    return MetricResult(
        timing=timing,
        timestamp=data.navigation.time_origin + timing,
        optimistic_estimate=optimistic_estimate,
        pessimistic_estimate=pessimistic_estimate,
        optimistic_graph=optimistic_graph,
        pessimistic_graph=pessimistic_graph,
    )


def estimate_metric(
    estimator: MetricEstimator,
    data: MetricData,
    extras: Optional[Mapping[str, MetricResult]] = None,
) -> MetricResult:
    """``compute_metric`` with missing-milestone errors reported as unavailable metrics."""

    try:
        return compute_metric(estimator, data, extras)
    except LanternError as err:
        if err.kind is ErrorKind.MISSING_MILESTONE and err.code in UNAVAILABLE_METRIC_CODES:
            raise MetricUnavailableError(
                f"{estimator.name} is unavailable: {err}",
                code=err.code,
                details={"metric": estimator.name},
            ) from err
        raise


def require_extra(extras: Mapping[str, MetricResult], name: str, metric: str) -> MetricResult:
    result = extras.get(name)
    if result is None:
        raise ValueError(f"{name} is required to compute {metric}")
    return result


def clone_subgraph(graph: Node, keep: Callable[[Node], bool]) -> Node:
    """Copy of ``graph`` restricted to ``keep`` and its dependencies; the root always stays."""

    return clone_with_relationships(graph, lambda node: node is graph or keep(node))
