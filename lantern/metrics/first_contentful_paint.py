"""First contentful paint: everything that had to finish before the first paint."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Set

from ..graph.nodes import CPUNode, NetworkNode, Node, NodeType, traverse
from ..simulator.engine import SimulationResult
from .base import (
    Coefficients,
    Estimate,
    MetricResult,
    NavigationMilestones,
    clone_subgraph,
    get_script_urls,
    missing_milestone,
)


@dataclass(frozen=True)
class RenderBlockingData:
    definitely_not_render_blocking_script_urls: Set[str]
    render_blocking_cpu_node_ids: Set[str]


def _first_with_child(cpu_nodes: List[CPUNode], name: str) -> Optional[CPUNode]:
    return next((node for node in cpu_nodes if any(e.name == name for e in node.child_events)), None)


def get_render_blocking_node_data(
    graph: Node,
    *,
    cutoff_timestamp: float,
    treat_cpu_node_as_render_blocking: Optional[Callable[[CPUNode], bool]] = None,
) -> RenderBlockingData:
    script_url_to_node: Dict[str, CPUNode] = {}
    cpu_nodes: List[CPUNode] = []
    for node in traverse(graph):
        if node.type is not NodeType.CPU:
            continue
        if node.start_time <= cutoff_timestamp:
            cpu_nodes.append(node)
        for url in node.evaluate_script_urls():
            existing = script_url_to_node.get(url, node)
            script_url_to_node[url] = node if node.start_time < existing.start_time else existing
    cpu_nodes.sort(key=lambda node: node.start_time)

    possibly_render_blocking = get_script_urls(
        graph, lambda node: node.end_time <= cutoff_timestamp and node.has_render_blocking_priority()
    )
    not_render_blocking: Set[str] = set()
    blocking_cpu_ids: Set[str] = set()
    for url in possibly_render_blocking:
        cpu_for_url = script_url_to_node.get(url)
        if cpu_for_url is None:
            continue
        if cpu_for_url in cpu_nodes:
            blocking_cpu_ids.add(cpu_for_url.id)
            continue
        # The script only ran after the paint, so it could not have blocked it.
        not_render_blocking.add(url)

    first_layout = next((node for node in cpu_nodes if node.did_perform_layout()), None)
    for first in (first_layout, _first_with_child(cpu_nodes, "Paint"), _first_with_child(cpu_nodes, "ParseHTML")):
        if first is not None:
            blocking_cpu_ids.add(first.id)

    if treat_cpu_node_as_render_blocking is not None:
        for node in cpu_nodes:
            if treat_cpu_node_as_render_blocking(node):
                blocking_cpu_ids.add(node.id)

    return RenderBlockingData(not_render_blocking, blocking_cpu_ids)


def get_first_paint_based_graph(
    graph: Node,
    *,
    cutoff_timestamp: float,
    treat_node_as_render_blocking: Callable[[NetworkNode], bool],
    treat_cpu_node_as_render_blocking: Optional[Callable[[CPUNode], bool]] = None,
) -> Node:
    data = get_render_blocking_node_data(
        graph,
        cutoff_timestamp=cutoff_timestamp,
        treat_cpu_node_as_render_blocking=treat_cpu_node_as_render_blocking,
    )

    def keep(node: Node) -> bool:
        if node.type is NodeType.NETWORK:
            ended_after_paint = node.end_time > cutoff_timestamp or node.start_time > cutoff_timestamp
            if ended_after_paint and not node.is_main_document:
                return False
            if node.request.url in data.definitely_not_render_blocking_script_urls:
                return False
            return treat_node_as_render_blocking(node)
        return node.id in data.render_blocking_cpu_node_ids

    return clone_subgraph(graph, keep)


def _require_fcp(navigation: NavigationMilestones) -> float:
    if navigation.first_contentful_paint is None:
        raise missing_milestone("NO_FCP", "No first contentful paint was observed")
    return navigation.first_contentful_paint


class FirstContentfulPaint:
    name = "FirstContentfulPaint"
    coefficients = Coefficients(intercept=0.0, optimistic=0.5, pessimistic=0.5)

    def optimistic_graph(self, graph: Node, navigation: NavigationMilestones) -> Node:
        return get_first_paint_based_graph(
            graph,
            cutoff_timestamp=_require_fcp(navigation),
            # Script-initiated requests are assumed to not block the paint.
            treat_node_as_render_blocking=lambda node: node.is_main_document
            or (node.has_render_blocking_priority() and node.initiator_type != "script"),
        )

    def pessimistic_graph(self, graph: Node, navigation: NavigationMilestones) -> Node:
        return get_first_paint_based_graph(
            graph,
            cutoff_timestamp=_require_fcp(navigation),
            treat_node_as_render_blocking=lambda node: node.is_main_document
            or node.has_render_blocking_priority(),
            treat_cpu_node_as_render_blocking=lambda node: node.did_perform_layout(),
        )

    def estimate(
        self, simulation: SimulationResult, *, optimistic: bool, extras: Mapping[str, MetricResult]
    ) -> Estimate:
        return Estimate(simulation.time_in_ms, simulation.node_timings)

    def adjust_timing(self, timing: float, extras: Mapping[str, MetricResult]) -> float:
        return timing
