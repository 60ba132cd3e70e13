"""Shared factories for request records, trace events and simulators."""

from __future__ import annotations

import itertools
from typing import Any, Dict

import pytest

from lantern.graph.nodes import all_nodes
from lantern.simulator import Simulator, SimulatorOptions
from lantern.trace.types import Initiator, NetworkRequest, ResourceTiming, TraceEvent, parse_url

_connection_ids = itertools.count(100)


def make_request(request_id: str, url: str, **overrides: Any) -> NetworkRequest:
    """A complete, finished request record; any field can be overridden."""

    fields: Dict[str, Any] = dict(
        request_id=request_id,
        url=url,
        parsed_url=parse_url(url),
        resource_type="Script",
        priority="High",
        protocol="http/1.1",
        connection_id=next(_connection_ids),
        connection_reused=False,
        initiator=Initiator(type="parser"),
        timing=ResourceTiming(),
        renderer_start_time=0.0,
        network_request_time=0.0,
        response_headers_end_time=50.0,
        network_end_time=100.0,
        transfer_size=1000,
        resource_size=1000,
    )
    fields.update(overrides)
    return NetworkRequest(**fields)


def make_document(request_id: str = "doc", url: str = "https://example.com/", **overrides: Any) -> NetworkRequest:
    defaults: Dict[str, Any] = dict(resource_type="Document", priority="VeryHigh", initiator=Initiator(type="other"))
    defaults.update(overrides)
    return make_request(request_id, url, **defaults)


def make_task(ts: float, dur: float, *children: TraceEvent, tid: int = 1) -> list:
    """A top-level ``RunTask`` followed by its child events."""

    return [TraceEvent(name="RunTask", ts=ts, dur=dur, tid=tid)] + list(children)


def make_event(name: str, ts: float, dur: float = 0.0, tid: int = 1, **data: Any) -> TraceEvent:
    return TraceEvent(name=name, ts=ts, dur=dur, tid=tid, args={"data": dict(data)})


@pytest.fixture
def simulator() -> Simulator:
    return Simulator(SimulatorOptions(rtt=150.0, throughput=1600 * 1024, cpu_slowdown_multiplier=1.0))


def timing_for(result, node_id: str):
    timings = result.timing_by_id()
    assert node_id in timings, f"{node_id} was not simulated"
    return timings[node_id]


def find_node(graph, node_id: str):
    for node in all_nodes(graph):
        if node.id == node_id:
            return node
    raise AssertionError(f"node {node_id} not in graph")
