"""Build the page dependency graph from requests and main-thread tasks."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from ..constants import SIGNIFICANT_CPU_TASK_MS, ResourceType
from ..errors import GraphConstructionError
from ..network.analyzer import find_last_document_for_url, find_resource_for_url
from ..trace.types import NetworkRequest, TraceEvent
from .nodes import (
    CPUNode,
    NetworkNode,
    Node,
    add_dependency,
    all_nodes,
    can_depend_on,
    depends_on,
    find_cycle,
    remove_dependency,
)
from .requests import RequestArena, build_requests, get_network_initiators

logger = logging.getLogger(__name__)

SCHEDULABLE_TASK_NAMES = frozenset({
    "RunTask",
    "ThreadControllerImpl::RunTask",
    "ThreadControllerImpl::DoWork",
    "TaskQueueManager::ProcessTaskFromWorkQueue",
})
# A request that ended this long after a task started may still have triggered it.
MIN_TIME_SINCE_NETWORK_END_MS = -100.0
NESTED_TASK_END_CORRECTION_MS = 0.001
SCRIPT_INITIATED_TYPES = frozenset({ResourceType.XHR, ResourceType.FETCH, ResourceType.SCRIPT})
PRUNE_EXEMPT_CHILD_EVENTS = ("Layout", "Paint", "ParseHTML")


@dataclass(frozen=True)
class PageURL:
    requested_url: str
    main_document_url: str

    @classmethod
    def of(cls, value: Union["PageURL", str]) -> "PageURL":
        if isinstance(value, PageURL):
            return value
        return cls(requested_url=value, main_document_url=value)


@dataclass
class NetworkNodeOutput:
    nodes: List[NetworkNode] = field(default_factory=list)
    id_to_node: Dict[str, NetworkNode] = field(default_factory=dict)
    url_to_nodes: Dict[str, List[NetworkNode]] = field(default_factory=lambda: defaultdict(list))
    frame_to_node: Dict[str, NetworkNode] = field(default_factory=dict)


def is_schedulable_task(event: TraceEvent) -> bool:
    return event.name in SCHEDULABLE_TASK_NAMES


def get_network_node_output(arena: RequestArena) -> NetworkNodeOutput:
    output = NetworkNodeOutput()
    for request in arena:
        # Video streams and worker traffic do not block the page.
        if request.mime_type.startswith("video/") or request.from_worker:
            continue
        node = NetworkNode(request)
        output.nodes.append(node)
        output.id_to_node[node.id] = node
        output.url_to_nodes[request.url].append(node)
        if request.frame_id and request.resource_type == ResourceType.DOCUMENT:
            output.frame_to_node.setdefault(request.frame_id, node)
    return output


def get_cpu_nodes(events: Sequence[TraceEvent]) -> List[CPUNode]:
    """Group main-thread events into top-level tasks with their children."""

    nodes: List[CPUNode] = []
    if events and not any(is_schedulable_task(event) for event in events):
        raise GraphConstructionError(
            "Main thread has events but no top-level tasks", code="NO_TOP_LEVEL_TASKS"
        )

    index = 0
    while index < len(events):
        event = events[index]
        index += 1
        if not is_schedulable_task(event) or not event.dur:
            continue

        children: List[TraceEvent] = []
        corrected_end: Optional[float] = None
        end_time = event.ts + event.dur
        while index < len(events) and events[index].ts < end_time:
            child = events[index]
            if is_schedulable_task(child) and child.dur:
                # Broken nesting: end this task just before the next one starts.
                corrected_end = child.ts - NESTED_TASK_END_CORRECTION_MS
                break
            children.append(child)
            index += 1

        nodes.append(CPUNode(event, tuple(children), corrected_end))
    return nodes


def link_network_nodes(root: NetworkNode, output: NetworkNodeOutput, arena: RequestArena) -> None:
    for node in output.nodes:
        request = node.request
        initiator = arena.initiator_request(request)
        direct = output.id_to_node.get(initiator.request_id) if initiator else None
        direct = direct or root
        can_depend_on_initiator = can_depend_on(node, direct)

        initiator_urls = get_network_initiators(request)
        if initiator_urls:
            for url in initiator_urls:
                parents = output.url_to_nodes.get(url, [])
                parent = parents[0] if len(parents) == 1 else None
                if (
                    parent is not None
                    and parent.start_time <= node.start_time
                    and can_depend_on(node, parent)
                ):
                    add_dependency(node, parent)
                elif can_depend_on_initiator:
                    add_dependency(node, direct)
        elif can_depend_on_initiator:
            add_dependency(node, direct)

        if node is not root and not node.dependencies and can_depend_on(node, root):
            add_dependency(node, root)

        chain = list(request.redirect_ids) + [request.request_id]
        for previous_id, current_id in zip(chain, chain[1:]):
            previous = output.id_to_node.get(previous_id)
            current = output.id_to_node.get(current_id)
            if previous is not None and current is not None and can_depend_on(current, previous):
                add_dependency(current, previous)


def _stack_trace_urls(data: Mapping[str, Any]) -> List[str]:
    frames = data.get("stackTrace")
    if not isinstance(frames, list):
        return []
    return [str(frame["url"]) for frame in frames if isinstance(frame, dict) and frame.get("url")]


def _add_dependency_if_acyclic(node: Node, dependency: Node) -> None:
    if dependency is node or depends_on(dependency, node):
        return
    add_dependency(node, dependency)


def link_cpu_nodes(root: NetworkNode, output: NetworkNodeOutput, cpu_nodes: List[CPUNode]) -> None:
    def add_dependent_request(cpu: CPUNode, request_node: NetworkNode) -> None:
        # Ignore requests that started before this task.
        if request_node is root or request_node.start_time <= cpu.start_time:
            return
        request = request_node.request
        if request.resource_type in SCRIPT_INITIATED_TYPES:
            _add_dependency_if_acyclic(request_node, cpu)

    def add_dependency_on_frame(cpu: CPUNode, frame_id: Optional[str]) -> None:
        if not frame_id:
            return
        frame_node = output.frame_to_node.get(frame_id)
        if frame_node is None or frame_node.start_time >= cpu.start_time:
            return
        _add_dependency_if_acyclic(cpu, frame_node)

    def add_dependency_on_url(cpu: CPUNode, url: Optional[str]) -> None:
        if not url:
            return
        candidates = output.url_to_nodes.get(url, [])
        best: Optional[NetworkNode] = None
        best_distance = float("inf")
        for candidate in candidates:
            if cpu.start_time <= candidate.start_time:
                continue
            distance = cpu.start_time - candidate.end_time
            if MIN_TIME_SINCE_NETWORK_END_MS <= distance < best_distance:
                best = candidate
                best_distance = distance
        if best is not None:
            _add_dependency_if_acyclic(cpu, best)

    timers: Dict[str, CPUNode] = {}
    for cpu in cpu_nodes:
        for child in cpu.child_events:
            data = child.data
            if not data:
                continue
            url = data.get("url")
            name = child.name
            if name == "TimerInstall":
                timers[str(data.get("timerId"))] = cpu
                for frame_url in _stack_trace_urls(data):
                    add_dependency_on_url(cpu, frame_url)
            elif name == "TimerFire":
                installer = timers.get(str(data.get("timerId")))
                if installer is None or installer is cpu or installer.end_time > cpu.start_time:
                    continue
                _add_dependency_if_acyclic(cpu, installer)
            elif name in ("InvalidateLayout", "ScheduleStyleRecalculation"):
                add_dependency_on_frame(cpu, data.get("frame"))
                for frame_url in _stack_trace_urls(data):
                    add_dependency_on_url(cpu, frame_url)
            elif name == "XHRReadyStateChange":
                # Only the final state change runs the response handler.
                if data.get("readyState") != 4:
                    continue
                add_dependency_on_frame(cpu, data.get("frame"))
                add_dependency_on_url(cpu, url)
            elif name == "EvaluateScript":
                add_dependency_on_frame(cpu, data.get("frame"))
                add_dependency_on_url(cpu, url)
                for frame_url in _stack_trace_urls(data):
                    add_dependency_on_url(cpu, frame_url)
            elif name in ("FunctionCall", "v8.compile", "ParseAuthorStyleSheet"):
                add_dependency_on_frame(cpu, data.get("frame"))
                add_dependency_on_url(cpu, data.get("url") or data.get("styleSheetUrl"))
            elif name == "ResourceSendRequest":
                add_dependency_on_frame(cpu, data.get("frame"))
                request_node = output.id_to_node.get(str(data.get("requestId")))
                if request_node is not None:
                    add_dependent_request(cpu, request_node)
            elif name == "ParseHTML":
                add_dependency_on_frame(cpu, data.get("frame"))
                add_dependency_on_url(cpu, data.get("url"))

        # Tasks with nothing better to wait on start after the root document.
        if not cpu.dependencies and can_depend_on(cpu, root):
            add_dependency(cpu, root)


def prune_node(node: Node) -> None:
    """Remove ``node``, connecting each of its dependencies to each dependent."""

    dependencies = list(node.dependencies)
    dependents = list(node.dependents)
    for dependency in dependencies:
        remove_dependency(node, dependency)
    for dependent in dependents:
        remove_dependency(dependent, node)
    for dependency in dependencies:
        for dependent in dependents:
            add_dependency(dependent, dependency)


def _prunable_cpu_nodes(cpu_nodes: List[CPUNode]) -> List[CPUNode]:
    """Short tasks sitting on a single chain, minus the first layout, paint and parse."""

    exempt = set()
    for name in PRUNE_EXEMPT_CHILD_EVENTS:
        first = next((cpu for cpu in cpu_nodes if any(c.name == name for c in cpu.child_events)), None)
        if first is not None:
            exempt.add(id(first))
    return [
        cpu
        for cpu in cpu_nodes
        if cpu.duration < SIGNIFICANT_CPU_TASK_MS
        and id(cpu) not in exempt
        and len(cpu.dependencies) == 1
        and len(cpu.dependents) <= 1
    ]


def create_graph(
    main_thread_events: Sequence[TraceEvent],
    records: Union[RequestArena, Sequence[NetworkRequest]],
    url: Union[PageURL, str],
) -> NetworkNode:
    """Build the dependency graph and return its root (the requested document)."""

    page_url = PageURL.of(url)
    arena = records if isinstance(records, RequestArena) else build_requests(records)
    requests = list(arena)

    root_request = find_resource_for_url(requests, page_url.requested_url)
    if root_request is None:
        raise GraphConstructionError(
            f"No request found for {page_url.requested_url}",
            code="NO_ROOT_REQUEST",
            details={"url": page_url.requested_url},
        )
    main_document = find_last_document_for_url(requests, page_url.main_document_url)
    if main_document is None:
        raise GraphConstructionError(
            f"No document request found for {page_url.main_document_url}",
            code="NO_MAIN_DOCUMENT",
            details={"url": page_url.main_document_url},
        )

    output = get_network_node_output(arena)
    root = output.id_to_node.get(root_request.request_id)
    main_node = output.id_to_node.get(main_document.request_id)
    if root is None or main_node is None:
        raise GraphConstructionError("Root request was excluded from the graph", code="NO_ROOT_REQUEST")
    main_node.is_main_document = True

    cpu_nodes = get_cpu_nodes(main_thread_events)
    link_network_nodes(root, output, arena)
    link_cpu_nodes(root, output, cpu_nodes)

    for cpu in _prunable_cpu_nodes(cpu_nodes):
        prune_node(cpu)

    # Anything pruning left unattached still waits on the root document.
    for node in output.nodes:
        if node is not root and not node.dependencies and can_depend_on(node, root):
            add_dependency(node, root)

    cycle = find_cycle(all_nodes(root))
    if cycle:
        raise GraphConstructionError(
            "Dependency graph contains a cycle", code="GRAPH_CYCLE", details={"cycle": cycle}
        )
    logger.debug(
        "built graph with %d network and %d cpu nodes",
        len(output.nodes),
        sum(1 for cpu in cpu_nodes if cpu.dependencies or cpu.dependents),
    )
    return root
