"""Time to interactive: the main thread is quiet and the important requests are done."""

from __future__ import annotations

from typing import Mapping

from ..constants import ResourceType
from ..graph.nodes import Node, NodeType
from ..simulator.engine import NodeTiming, SimulationResult
from .base import Coefficients, Estimate, MetricResult, NavigationMilestones, clone_subgraph, require_extra

CRITICAL_LONG_TASK_THRESHOLD_MS = 20.0
LONG_TASK_THRESHOLD_MS = 50.0


def get_last_long_task_end_time(
    node_timings: Mapping[Node, NodeTiming], duration: float = LONG_TASK_THRESHOLD_MS
) -> float:
    return max(
        (
            timing.end_time
            for node, timing in node_timings.items()
            if node.type is NodeType.CPU and timing.duration > duration
        ),
        default=0.0,
    )


def _is_interactive_critical(node: Node) -> bool:
    if node.type is NodeType.CPU:
        return node.duration > CRITICAL_LONG_TASK_THRESHOLD_MS
    resource_type = node.request.resource_type
    if resource_type == ResourceType.IMAGE:
        return False
    return resource_type == ResourceType.SCRIPT or node.request.priority in ("High", "VeryHigh")


class Interactive:
    name = "Interactive"
    coefficients = Coefficients(intercept=0.0, optimistic=0.45, pessimistic=0.55)

    def optimistic_graph(self, graph: Node, navigation: NavigationMilestones) -> Node:
        return clone_subgraph(graph, _is_interactive_critical)

    def pessimistic_graph(self, graph: Node, navigation: NavigationMilestones) -> Node:
        return graph

    def estimate(
        self, simulation: SimulationResult, *, optimistic: bool, extras: Mapping[str, MetricResult]
    ) -> Estimate:
        lcp = require_extra(extras, "lcp", self.name)
        minimum = lcp.optimistic_estimate.time_in_ms if optimistic else lcp.pessimistic_estimate.time_in_ms
        last_task_end = get_last_long_task_end_time(simulation.node_timings)
        return Estimate(max(minimum, last_task_end), simulation.node_timings)

    def adjust_timing(self, timing: float, extras: Mapping[str, MetricResult]) -> float:
        lcp = require_extra(extras, "lcp", self.name)
        return max(timing, lcp.timing)
