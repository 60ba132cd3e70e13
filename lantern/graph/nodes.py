"""Dependency graph nodes and the helpers that walk and rewire them."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, ClassVar, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union

import networkx as nx

from ..constants import NON_NETWORK_SCHEMES
from ..trace.types import NetworkRequest, TraceEvent


class NodeType(str, Enum):
    NETWORK = "network"
    CPU = "cpu"


def _format_ts(ts: float) -> str:
    # Full precision; trace-clock timestamps are around 1e8 ms.
    ts = float(ts)
    return str(int(ts)) if ts.is_integer() else repr(ts)


@dataclass(eq=False)
class NetworkNode:
    request: NetworkRequest
    is_main_document: bool = False
    dependencies: List["Node"] = field(default_factory=list, repr=False)
    dependents: List["Node"] = field(default_factory=list, repr=False)

    type: ClassVar[NodeType] = NodeType.NETWORK

    @property
    def id(self) -> str:
        return self.request.request_id

    @property
    def start_time(self) -> float:
        return self.request.renderer_start_time

    @property
    def end_time(self) -> float:
        return self.request.network_end_time

    @property
    def initiator_type(self) -> str:
        return self.request.initiator.type

    @property
    def from_disk_cache(self) -> bool:
        return self.request.from_disk_cache

    @property
    def is_non_network_protocol(self) -> bool:
        parsed = self.request.parsed_url
        return parsed is not None and parsed.scheme in NON_NETWORK_SCHEMES

    def has_render_blocking_priority(self) -> bool:
        priority = self.request.priority
        is_script = self.request.resource_type == "Script"
        is_document = self.request.resource_type == "Document"
        # Async and deferred scripts load at Low priority and never block render.
        is_blocking_script = priority == "High" and is_script
        is_blocking_html_import = priority == "High" and is_document
        return priority == "VeryHigh" or is_blocking_script or is_blocking_html_import

    def clone_without_relationships(self) -> "NetworkNode":
        return NetworkNode(request=self.request, is_main_document=self.is_main_document)


@dataclass(eq=False)
class CPUNode:
    event: TraceEvent
    child_events: Tuple[TraceEvent, ...] = ()
    # Set when a nested top-level task showed up before this one ended.
    corrected_end_time: Optional[float] = None
    dependencies: List["Node"] = field(default_factory=list, repr=False)
    dependents: List["Node"] = field(default_factory=list, repr=False)

    type: ClassVar[NodeType] = NodeType.CPU

    @property
    def id(self) -> str:
        return f"{self.event.tid}.{_format_ts(self.event.ts)}"

    @property
    def start_time(self) -> float:
        return self.event.ts

    @property
    def end_time(self) -> float:
        if self.corrected_end_time is not None:
            return self.corrected_end_time
        return self.event.ts + self.event.dur

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def frame_id(self) -> Optional[str]:
        for child in self.child_events:
            frame = child.data.get("frame")
            if frame:
                return str(frame)
        return None

    def did_perform_layout(self) -> bool:
        return any(child.name == "Layout" for child in self.child_events)

    def evaluate_script_urls(self) -> Set[str]:
        urls: Set[str] = set()
        for child in self.child_events:
            if child.name == "EvaluateScript" and child.data.get("url"):
                urls.add(str(child.data["url"]))
        return urls

    def clone_without_relationships(self) -> "CPUNode":
        return CPUNode(
            event=self.event,
            child_events=self.child_events,
            corrected_end_time=self.corrected_end_time,
        )


Node = Union[NetworkNode, CPUNode]

DEPENDENTS = "dependents"
DEPENDENCIES = "dependencies"
BOTH = "both"


def add_dependency(node: Node, dependency: Node) -> None:
    """Make ``node`` wait for ``dependency``. Self-edges and duplicates are ignored."""

    if node is dependency or dependency in node.dependencies:
        return
    node.dependencies.append(dependency)
    dependency.dependents.append(node)


def remove_dependency(node: Node, dependency: Node) -> None:
    if dependency in node.dependencies:
        node.dependencies.remove(dependency)
    if node in dependency.dependents:
        dependency.dependents.remove(node)


def _neighbours(node: Node, direction: str) -> Sequence[Node]:
    if direction == DEPENDENTS:
        return node.dependents
    if direction == DEPENDENCIES:
        return node.dependencies
    if direction == BOTH:
        return list(node.dependencies) + list(node.dependents)
    raise ValueError(f"Unknown traversal direction: {direction}")


def traverse(node: Node, direction: str = DEPENDENTS) -> Iterator[Node]:
    """Breadth-first walk from ``node`` (included), visiting each node once."""

    seen: Set[int] = {id(node)}
    queue = deque([node])
    while queue:
        current = queue.popleft()
        yield current
        for neighbour in _neighbours(current, direction):
            if id(neighbour) not in seen:
                seen.add(id(neighbour))
                queue.append(neighbour)


def depends_on(node: Node, other: Node) -> bool:
    """True if ``node`` transitively waits on ``other``."""

    if node is other:
        return False
    return any(candidate is other for candidate in traverse(node, DEPENDENCIES))


def can_depend_on(node: Node, other: Node) -> bool:
    if other is node or depends_on(other, node):
        return False
    if node.type is NodeType.CPU:
        # A task cannot wait on something that only started after it.
        return other.start_time <= node.start_time
    return True


def root_of(node: Node) -> Node:
    current = node
    seen: Set[int] = set()
    while current.dependencies and id(current) not in seen:
        seen.add(id(current))
        current = current.dependencies[0]
    return current


def all_nodes(graph: Node) -> List[Node]:
    return list(traverse(graph, BOTH))


def clone_with_relationships(node: Node, predicate: Optional[Callable[[Node], bool]] = None) -> Node:
    """Copy the graph containing ``node``.

    With a ``predicate`` only matching nodes and everything they depend on are
    kept. Returns the copy of ``node``, which must itself survive the filter.
    """

    root = root_of(node)
    clones: Dict[int, Node] = {}
    for original in traverse(root, DEPENDENTS):
        if id(original) in clones:
            continue
        if predicate is None:
            clones[id(original)] = original.clone_without_relationships()
            continue
        if predicate(original):
            for ancestor in traverse(original, DEPENDENCIES):
                if id(ancestor) not in clones:
                    clones[id(ancestor)] = ancestor.clone_without_relationships()

    for original in traverse(root, DEPENDENTS):
        clone = clones.get(id(original))
        if clone is None:
            continue
        for dependency in original.dependencies:
            dependency_clone = clones.get(id(dependency))
            if dependency_clone is None:
                raise ValueError(f"Dependency {dependency.id} of {original.id} was not cloned")
            add_dependency(clone, dependency_clone)

    if id(node) not in clones:
        raise ValueError(f"Cloned graph is missing node {node.id}")
    return clones[id(node)]


def to_networkx(nodes: Iterable[Node]) -> nx.DiGraph:
    """Directed graph with an edge from each dependency to its dependent."""

    graph = nx.DiGraph()
    for node in nodes:
        graph.add_node(node)
        for dependency in node.dependencies:
            graph.add_edge(dependency, node)
    return graph


def find_cycle(nodes: Iterable[Node]) -> Optional[List[str]]:
    graph = to_networkx(nodes)
    if nx.is_directed_acyclic_graph(graph):
        return None
    return [edge[0].id for edge in nx.find_cycle(graph)]
