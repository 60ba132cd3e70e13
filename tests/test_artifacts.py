from __future__ import annotations

import asyncio

import pytest

from lantern.artifacts import (
    ArtifactCache,
    MetricComputationInput,
    compute_lantern_metrics,
    fingerprint,
    request_first_contentful_paint,
)
from lantern.errors import ErrorKind, MetricUnavailableError, UnsupportedModeError
from lantern.metrics import MetricResult, NavigationMilestones
from lantern.trace.types import Initiator, ResourceTiming

from conftest import make_document, make_event, make_request, make_task


def _records():
    parser = Initiator(type="parser", url="https://example.com/")
    timing = ResourceTiming(connect_start=0.0, connect_end=40.0, send_end=41.0, receive_headers_end=120.0)
    return [
        make_document(network_end_time=300.0, resource_size=20_000, timing=timing),
        make_request("css", "https://example.com/app.css", resource_type="Stylesheet", priority="VeryHigh",
                     renderer_start_time=100.0, network_end_time=400.0, initiator=parser, timing=timing),
        make_request("js", "https://cdn.example.com/app.js", renderer_start_time=110.0, network_end_time=600.0,
                     initiator=parser, resource_size=60_000, timing=timing),
        make_request("img", "https://cdn.example.com/hero.png", resource_type="Image", priority="Low",
                     renderer_start_time=120.0, network_end_time=1100.0, initiator=parser, timing=timing),
    ]


def _events():
    events = make_task(650.0, 120.0, make_event("EvaluateScript", 651.0, 100.0, url="https://cdn.example.com/app.js"))
    return events + make_task(800.0, 40.0, make_event("Layout", 801.0, 20.0))


def _input(simulator=None, **overrides) -> MetricComputationInput:
    fields = dict(
        requests=_records(),
        main_thread_events=_events(),
        url="https://example.com/",
        navigation=NavigationMilestones(time_origin=0.0, first_contentful_paint=900.0, largest_contentful_paint=1200.0),
        simulator=simulator,
    )
    fields.update(overrides)
    return MetricComputationInput(**fields)


def test_concurrent_requests_share_one_computation() -> None:
    cache = ArtifactCache()
    calls = []

    async def compute():
        calls.append(1)
        await asyncio.sleep(0)
        return object()

    async def run():
        return await asyncio.gather(*(cache.request("Thing", ("a", 1), compute) for _ in range(3)))

    first, second, third = asyncio.run(run())
    assert first is second is third
    assert len(calls) == 1
    assert (cache.misses, cache.hits, len(cache)) == (1, 2, 1)


def test_failures_are_cached() -> None:
    cache = ArtifactCache()
    calls = []

    async def compute():
        calls.append(1)
        raise ValueError("boom")

    async def run():
        for _ in range(2):
            with pytest.raises(ValueError, match="boom"):
                await cache.request("Thing", "key", compute)

    asyncio.run(run())
    assert len(calls) == 1


def test_fingerprint_compares_values_by_content_and_objects_by_identity() -> None:
    assert fingerprint({"a": [1, 2], "b": None}) == fingerprint({"b": None, "a": (1, 2)})
    assert fingerprint(_records()) == fingerprint(_records())
    assert fingerprint(_records()) != fingerprint(_records()[:2])
    marker = object()
    assert fingerprint(marker) == fingerprint(marker)
    assert fingerprint(object()) != fingerprint(marker)


def test_all_metrics_are_ordered(simulator) -> None:
    cache = ArtifactCache()
    results = asyncio.run(compute_lantern_metrics(_input(simulator), cache))

    fcp = results["first-contentful-paint"]
    lcp = results["largest-contentful-paint"]
    interactive = results["interactive"]
    assert all(isinstance(result, MetricResult) for result in results.values())
    assert 0 < fcp.timing <= lcp.timing <= interactive.timing
    # One dependency graph and one entry per metric, shared across the dependent metrics.
    assert len(cache) == 4


def test_metric_requests_are_memoized(simulator) -> None:
    cache = ArtifactCache()
    data = _input(simulator)

    async def run():
        first = await request_first_contentful_paint(data, cache)
        second = await request_first_contentful_paint(data, cache)
        return first, second

    first, second = asyncio.run(run())
    assert first is second


def test_simulator_is_loaded_from_settings_when_not_given() -> None:
    cache = ArtifactCache()
    results = asyncio.run(compute_lantern_metrics(_input(), cache, metrics=["first-contentful-paint"]))
    assert results["first-contentful-paint"].timing > 0
    # Network analysis, simulator, dependency graph and the metric.
    assert len(cache) == 4


def test_only_navigations_are_supported(simulator) -> None:
    with pytest.raises(UnsupportedModeError) as excinfo:
        asyncio.run(compute_lantern_metrics(_input(simulator, gather_mode="timespan")))
    assert excinfo.value.kind is ErrorKind.UNSUPPORTED_MODE


def test_unknown_metric_names_are_rejected(simulator) -> None:
    with pytest.raises(ValueError, match="speed-index"):
        asyncio.run(compute_lantern_metrics(_input(simulator), metrics=["speed-index"]))


def test_unavailable_metrics(simulator) -> None:
    navigation = NavigationMilestones(first_contentful_paint=900.0)

    with pytest.raises(MetricUnavailableError):
        asyncio.run(compute_lantern_metrics(_input(simulator, navigation=navigation)))

    results = asyncio.run(
        compute_lantern_metrics(_input(simulator, navigation=navigation), allow_unavailable=True)
    )
    assert isinstance(results["first-contentful-paint"], MetricResult)
    assert results["largest-contentful-paint"].code == "NO_LCP"
    # Interactive is clamped to LCP, so it is unavailable too.
    assert results["interactive"].code == "NO_LCP"
