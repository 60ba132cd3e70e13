"""Largest contentful paint, built on the first-paint subgraph with an LCP cutoff."""

from __future__ import annotations

from typing import Mapping

from ..constants import ResourceType
from ..graph.nodes import Node, NodeType
from ..simulator.engine import SimulationResult
from .base import Coefficients, Estimate, MetricResult, NavigationMilestones, missing_milestone, require_extra
from .first_contentful_paint import get_first_paint_based_graph


def is_not_low_priority_image_node(node: Node) -> bool:
    if node.type is not NodeType.NETWORK:
        return True
    is_image = node.request.resource_type == ResourceType.IMAGE
    is_low_priority = node.request.priority in ("Low", "VeryLow")
    return not is_image or not is_low_priority


def _require_lcp(navigation: NavigationMilestones) -> float:
    if navigation.largest_contentful_paint is None:
        raise missing_milestone("NO_LCP", "No largest contentful paint was observed")
    return navigation.largest_contentful_paint


class LargestContentfulPaint:
    name = "LargestContentfulPaint"
    coefficients = Coefficients(intercept=0.0, optimistic=0.5, pessimistic=0.5)

    def optimistic_graph(self, graph: Node, navigation: NavigationMilestones) -> Node:
        return get_first_paint_based_graph(
            graph,
            cutoff_timestamp=_require_lcp(navigation),
            treat_node_as_render_blocking=is_not_low_priority_image_node,
        )

    def pessimistic_graph(self, graph: Node, navigation: NavigationMilestones) -> Node:
        return get_first_paint_based_graph(
            graph,
            cutoff_timestamp=_require_lcp(navigation),
            treat_node_as_render_blocking=lambda node: True,
            treat_cpu_node_as_render_blocking=lambda node: node.did_perform_layout(),
        )

    def estimate(
        self, simulation: SimulationResult, *, optimistic: bool, extras: Mapping[str, MetricResult]
    ) -> Estimate:
        # Offscreen images load at low priority and do not count toward LCP.
        end_times = [
            timing.end_time
            for node, timing in simulation.node_timings.items()
            if is_not_low_priority_image_node(node)
        ]
        return Estimate(max(end_times, default=0.0), simulation.node_timings)

    def adjust_timing(self, timing: float, extras: Mapping[str, MetricResult]) -> float:
        fcp = require_extra(extras, "fcp", self.name)
        return max(timing, fcp.timing)
