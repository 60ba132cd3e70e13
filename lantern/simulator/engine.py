"""Discrete-event page load simulation on a SimPy clock.

Every graph node runs as its own SimPy process: it waits for all of its
dependencies to complete, queues for the resources it needs (the main thread
for CPU tasks; an origin connection plus a page-wide request slot for network
requests) and then holds them for its simulated cost.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

import simpy

from ..constants import (
    DEFAULT_MAX_CONCURRENT_REQUESTS,
    DEFAULT_MAX_CONNECTIONS_PER_ORIGIN,
    MOBILE_SLOW_4G,
    PRIORITY_START_PENALTY_MS,
)
from ..errors import SimulationCycleError, UnschedulableGraphError
from ..graph.nodes import CPUNode, NetworkNode, Node, NodeType, all_nodes, find_cycle
from ..network.connection import ConnectionPool, DNSCache
from ..network.fabric import OrderedResource, SharedLink

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024
CACHED_REQUEST_BASE_MS = 8.0
CACHED_REQUEST_MS_PER_MB = 20.0
NON_NETWORK_REQUEST_BASE_MS = 2.0
NON_NETWORK_REQUEST_MS_PER_MB = 10.0


class Variant(str, Enum):
    OPTIMISTIC = "optimistic"
    PESSIMISTIC = "pessimistic"


@dataclass(frozen=True)
class SimulatorOptions:
    rtt: float = MOBILE_SLOW_4G["rtt_ms"]
    throughput: float = MOBILE_SLOW_4G["throughput_kbps"] * 1024  # bits per second
    cpu_slowdown_multiplier: float = MOBILE_SLOW_4G["cpu_slowdown_multiplier"]
    max_concurrent_requests: int = DEFAULT_MAX_CONCURRENT_REQUESTS
    max_connections_per_origin: int = DEFAULT_MAX_CONNECTIONS_PER_ORIGIN
    additional_rtt_by_origin: Mapping[str, float] = field(default_factory=dict)
    server_response_time_by_origin: Mapping[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class NodeTiming:
    start_time: float
    end_time: float
    # When every dependency had finished; start_time - queued_time is time spent waiting.
    queued_time: float = 0.0
    download_time: float = 0.0

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass(frozen=True)
class SimulationResult:
    time_in_ms: float
    node_timings: Dict[Node, NodeTiming]
    variant: Variant = Variant.OPTIMISTIC

    def timing_by_id(self) -> Dict[str, NodeTiming]:
        return {node.id: timing for node, timing in self.node_timings.items()}


def start_position(node: Node) -> float:
    """Observed start, pushed back by the request priority for network nodes."""

    if node.type is NodeType.NETWORK:
        penalty = PRIORITY_START_PENALTY_MS.get(node.request.priority, 0.0)
        return node.start_time + penalty
    return node.start_time


class _SimulationRun:
    """State for one simulation of one graph."""

    def __init__(self, options: SimulatorOptions, nodes: List[Node], variant: Variant) -> None:
        self.options = options
        self.variant = variant
        self.env = simpy.Environment()
        self.nodes = sorted(nodes, key=lambda n: (start_position(n), n.id))
        requests = [node.request for node in self.nodes if node.type is NodeType.NETWORK]

        self.dns = DNSCache(options.rtt)
        self.connections = ConnectionPool(
            self.env,
            requests,
            rtt=options.rtt,
            additional_rtt_by_origin=options.additional_rtt_by_origin,
            server_response_time_by_origin=options.server_response_time_by_origin,
            max_connections_per_origin=options.max_connections_per_origin,
            pin_observed_connections=variant is Variant.PESSIMISTIC,
        )
        self.link = SharedLink(self.env, options.throughput)
        self.main_thread = OrderedResource(self.env, capacity=1)
        self.request_slots = OrderedResource(self.env, capacity=options.max_concurrent_requests)
        self.completed: Dict[Node, simpy.Event] = {node: self.env.event() for node in self.nodes}
        self.timings: Dict[Node, NodeTiming] = {}

    def run(self) -> Dict[Node, NodeTiming]:
        for node in self.nodes:
            self.env.process(self._run_node(node))
        self.env.run()
        stats = self.link.stats
        logger.debug(
            "%s run: %d downloads, %.0f bytes, peak concurrency %d",
            self.variant.value,
            stats.transfers,
            stats.bytes,
            stats.peak_concurrency,
        )
        return self.timings

    def _admission_key(self, node: Node, ready_at: float) -> Tuple[Any, ...]:
        if self.variant is Variant.PESSIMISTIC:
            return (start_position(node), node.id)
        return (ready_at, start_position(node), node.id)

    def _run_node(self, node: Node):
        pending = [self.completed[dep] for dep in node.dependencies if dep in self.completed]
        if pending:
            yield self.env.all_of(pending)
        ready_at = self.env.now
        if node.type is NodeType.CPU:
            yield from self._run_cpu(node, ready_at)
        else:
            yield from self._run_network(node, ready_at)
        self.completed[node].succeed()

    def _run_cpu(self, node: CPUNode, ready_at: float):
        # The main thread is FIFO in both variants.
        yield self.main_thread.request((ready_at, start_position(node), node.id))
        start = self.env.now
        yield self.env.timeout(max(0.0, node.duration) * self.options.cpu_slowdown_multiplier)
        self.main_thread.release()
        self.timings[node] = NodeTiming(start, self.env.now, queued_time=ready_at)

    def _run_network(self, node: NetworkNode, ready_at: float):
        request = node.request
        size_mb = max(0, request.resource_size) / BYTES_PER_MB
        if node.from_disk_cache or request.from_memory_cache:
            start = self.env.now
            yield self.env.timeout(CACHED_REQUEST_BASE_MS + CACHED_REQUEST_MS_PER_MB * size_mb)
            self.timings[node] = NodeTiming(start, self.env.now, queued_time=ready_at)
            return
        if node.is_non_network_protocol:
            start = self.env.now
            yield self.env.timeout(NON_NETWORK_REQUEST_BASE_MS + NON_NETWORK_REQUEST_MS_PER_MB * size_mb)
            self.timings[node] = NodeTiming(start, self.env.now, queued_time=ready_at)
            return

        key = self._admission_key(node, ready_at)
        connection = yield from self.connections.acquire(request, key)
        yield self.request_slots.request(key)
        start = self.env.now

        if not connection.warm:
            if connection.opening is None:
                connection.opening = self.env.event()
                dns = self.dns.time_until_resolution(request, requested_at=start)
                yield self.env.timeout(dns + connection.handshake_ms)
                connection.warm = True
                connection.opening.succeed()
            else:
                # Another stream on this multiplexed connection is mid-handshake.
                yield connection.opening

        yield self.env.timeout(connection.rtt + connection.server_response_time)
        download_start = self.env.now
        yield from self.link.transfer(node.id, request.resource_size)

        self.request_slots.release()
        self.connections.release(request, connection)
        self.timings[node] = NodeTiming(
            start,
            self.env.now,
            queued_time=ready_at,
            download_time=self.env.now - download_start,
        )


class Simulator:
    """Estimates how long a dependency graph takes to load under given conditions."""

    def __init__(self, options: Optional[SimulatorOptions] = None, **overrides: Any) -> None:
        options = options or SimulatorOptions()
        if overrides:
            options = replace(options, **overrides)
        if options.rtt < 0 or math.isnan(options.rtt):
            raise ValueError(f"rtt must be non-negative, got {options.rtt}")
        if not options.throughput > 0:
            raise ValueError(f"throughput must be positive, got {options.throughput}")
        self.options = options
        # Node timelines of labelled runs, kept for inspection.
        self.computed_node_timings: Dict[str, Dict[Node, NodeTiming]] = {}

    @property
    def rtt(self) -> float:
        return self.options.rtt

    @property
    def throughput(self) -> float:
        return self.options.throughput

    def simulate(
        self,
        graph: Node,
        variant: Variant = Variant.OPTIMISTIC,
        label: Optional[str] = None,
    ) -> SimulationResult:
        variant = Variant(variant)
        nodes = all_nodes(graph)
        cycle = find_cycle(nodes)
        if cycle:
            raise SimulationCycleError(
                "Cannot simulate a graph with a cycle",
                code="GRAPH_CYCLE",
                details={"cycle": cycle},
            )

        timings = _SimulationRun(self.options, nodes, variant).run()
        missing = [node.id for node in nodes if node not in timings]
        if missing:
            raise UnschedulableGraphError(
                f"{len(missing)} node(s) were never scheduled",
                details={"node_ids": missing},
            )

        ordered = dict(
            sorted(timings.items(), key=lambda item: (item[1].start_time, item[1].end_time, item[0].id))
        )
        total = max((timing.end_time for timing in ordered.values()), default=0.0)
        logger.debug("simulated %d nodes (%s): %.1fms", len(nodes), variant.value, total)
        if label:
            self.computed_node_timings[label] = ordered
        return SimulationResult(time_in_ms=total, node_timings=ordered, variant=variant)

    def simulate_bounds(self, graph: Node, label: Optional[str] = None) -> Tuple[SimulationResult, SimulationResult]:
        """Optimistic and pessimistic results for the same graph."""

        optimistic = self.simulate(
            graph, Variant.OPTIMISTIC, label=f"{label}-optimistic" if label else None
        )
        pessimistic = self.simulate(
            graph, Variant.PESSIMISTIC, label=f"{label}-pessimistic" if label else None
        )
        return optimistic, pessimistic
