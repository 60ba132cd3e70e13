"""Computed artifacts: memoized, single-flight derivations of the run's inputs.

Each artifact kind (network analysis, dependency graph, simulator, metrics) is
computed at most once per distinct input within an :class:`ArtifactCache`.
Concurrent requests for the same artifact await the same task, and a failure is
remembered just like a result.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Hashable, Mapping, Optional, Sequence, Tuple, TypeVar, Union

from .config import Settings
from .errors import MetricUnavailableError, UnsupportedModeError
from .graph.builder import PageURL, create_graph
from .graph.nodes import Node
from .metrics.base import MetricData, MetricEstimator, MetricResult, NavigationMilestones, estimate_metric
from .metrics.first_contentful_paint import FirstContentfulPaint
from .metrics.interactive import Interactive
from .metrics.largest_contentful_paint import LargestContentfulPaint
from .network.analyzer import NetworkAnalysis, analyze
from .simulator.engine import Simulator
from .simulator.loader import load_simulator
from .trace.types import NetworkRequest, TraceEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

METRIC_NAMES = ("first-contentful-paint", "largest-contentful-paint", "interactive")


def fingerprint(value: Any) -> Hashable:
    """Hashable structural key for artifact inputs.

    Value-like objects (scalars, containers, dataclasses with ``__eq__``) are
    compared by content; anything with identity semantics (graph nodes,
    simulators) by identity.
    """

    if value is None or isinstance(value, (str, bytes, int, float, bool, Enum)):
        return value
    if isinstance(value, Mapping):
        items = [(fingerprint(k), fingerprint(v)) for k, v in value.items()]
        return ("map", tuple(sorted(items, key=repr)))
    if isinstance(value, (list, tuple)):
        return ("seq", tuple(fingerprint(item) for item in value))
    if isinstance(value, (set, frozenset)):
        return ("set", tuple(sorted((fingerprint(item) for item in value), key=repr)))
    if type(value).__eq__ is object.__eq__:
        return ("id", id(value))
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return (
            type(value).__qualname__,
            tuple(fingerprint(getattr(value, f.name)) for f in dataclasses.fields(value)),
        )
    try:
        hash(value)
    except TypeError:
        return ("id", id(value))
    return value


class ArtifactCache:
    """Single-flight memo of artifact computations, keyed by (kind, fingerprint)."""

    def __init__(self) -> None:
        self._entries: Dict[Tuple[str, Hashable], "asyncio.Future[Any]"] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    async def request(self, kind: str, key_input: Any, compute: Callable[[], Awaitable[T]]) -> T:
        key = (kind, fingerprint(key_input))
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            logger.debug("computing artifact %s", kind)
            entry = asyncio.ensure_future(compute())
            self._entries[key] = entry
        else:
            self.hits += 1
        # Cancelling one awaiter leaves the shared computation running.
        return await asyncio.shield(entry)


@dataclass
class MetricComputationInput:
    requests: Sequence[NetworkRequest]
    main_thread_events: Sequence[TraceEvent]
    url: Union[PageURL, str]
    navigation: NavigationMilestones = field(default_factory=NavigationMilestones)
    settings: Settings = field(default_factory=Settings)
    gather_mode: str = "navigation"
    simulator: Optional[Simulator] = None


async def request_network_analysis(requests: Sequence[NetworkRequest], cache: ArtifactCache) -> NetworkAnalysis:
    async def compute() -> NetworkAnalysis:
        return analyze(list(requests))

    return await cache.request("NetworkAnalysis", requests, compute)


async def request_page_dependency_graph(data: MetricComputationInput, cache: ArtifactCache) -> Node:
    async def compute() -> Node:
        return create_graph(list(data.main_thread_events), list(data.requests), data.url)

    key = (data.requests, data.main_thread_events, PageURL.of(data.url))
    return await cache.request("PageDependencyGraph", key, compute)


async def request_load_simulator(data: MetricComputationInput, cache: ArtifactCache) -> Simulator:
    if data.simulator is not None:
        return data.simulator

    async def compute() -> Simulator:
        analysis = await request_network_analysis(data.requests, cache)
        return load_simulator(data.settings, analysis)

    return await cache.request("LoadSimulator", (data.requests, data.settings), compute)


async def _request_metric(
    kind: str,
    estimator: MetricEstimator,
    data: MetricComputationInput,
    cache: ArtifactCache,
    dependencies: Mapping[str, Callable[[MetricComputationInput, ArtifactCache], Awaitable[MetricResult]]],
) -> MetricResult:
    async def compute() -> MetricResult:
        graph, simulator = await asyncio.gather(
            request_page_dependency_graph(data, cache), request_load_simulator(data, cache)
        )
        extras = {name: await fetch(data, cache) for name, fetch in dependencies.items()}
        return estimate_metric(estimator, MetricData(graph, simulator, data.navigation), extras)

    return await cache.request(kind, data, compute)


async def request_first_contentful_paint(data: MetricComputationInput, cache: ArtifactCache) -> MetricResult:
    return await _request_metric("LanternFirstContentfulPaint", FirstContentfulPaint(), data, cache, {})


async def request_largest_contentful_paint(data: MetricComputationInput, cache: ArtifactCache) -> MetricResult:
    return await _request_metric(
        "LanternLargestContentfulPaint",
        LargestContentfulPaint(),
        data,
        cache,
        {"fcp": request_first_contentful_paint},
    )


async def request_interactive(data: MetricComputationInput, cache: ArtifactCache) -> MetricResult:
    return await _request_metric(
        "LanternInteractive", Interactive(), data, cache, {"lcp": request_largest_contentful_paint}
    )


_METRIC_REQUESTS = {
    "first-contentful-paint": request_first_contentful_paint,
    "largest-contentful-paint": request_largest_contentful_paint,
    "interactive": request_interactive,
}


async def compute_lantern_metrics(
    data: MetricComputationInput,
    cache: Optional[ArtifactCache] = None,
    *,
    metrics: Sequence[str] = METRIC_NAMES,
    allow_unavailable: bool = False,
) -> Dict[str, Union[MetricResult, MetricUnavailableError]]:
    """Estimate the requested metrics for one navigation.

    With ``allow_unavailable`` a metric that cannot be computed for this page is
    reported as its :class:`MetricUnavailableError` instead of failing the run.
    """

    if data.gather_mode != "navigation":
        raise UnsupportedModeError(
            f"Lantern metrics are only available for navigations, not {data.gather_mode!r}",
            details={"gather_mode": data.gather_mode},
        )
    unknown = [name for name in metrics if name not in _METRIC_REQUESTS]
    if unknown:
        raise ValueError(f"Unknown metric(s): {', '.join(unknown)}")

    if cache is None:
        cache = ArtifactCache()
    outcomes = await asyncio.gather(
        *(_METRIC_REQUESTS[name](data, cache) for name in metrics),
        return_exceptions=True,
    )
    results: Dict[str, Union[MetricResult, MetricUnavailableError]] = {}
    for name, outcome in zip(metrics, outcomes):
        if isinstance(outcome, MetricUnavailableError) and allow_unavailable:
            logger.warning("%s unavailable: %s", name, outcome)
            results[name] = outcome
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            results[name] = outcome
    return results
