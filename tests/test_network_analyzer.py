from __future__ import annotations

import math

import pytest

from lantern.errors import ErrorKind, NetworkAnalysisError
from lantern.network import (
    analyze,
    estimate_if_connection_was_reused,
    estimate_rtt_by_origin,
    estimate_throughput,
    find_last_document_for_url,
    find_resource_for_url,
)
from lantern.trace.types import ResourceTiming

from conftest import make_document, make_request


def _connected(request_id: str, origin: str, rtt: float, **overrides):
    timing = ResourceTiming(connect_start=0.0, connect_end=rtt, send_end=rtt + 1, receive_headers_end=rtt + 1 + 200)
    return make_request(request_id, f"{origin}/{request_id}", timing=timing, protocol="http/1.1", **overrides)


def test_analyze_rejects_empty_input() -> None:
    with pytest.raises(NetworkAnalysisError) as excinfo:
        analyze([])
    assert excinfo.value.kind is ErrorKind.NETWORK_ANALYSIS
    assert excinfo.value.code == "NO_NETWORK_RECORDS"


def test_rtt_from_connection_timing_per_origin() -> None:
    records = [_connected(f"a{i}", "http://a.test", 100.0) for i in range(3)]
    records += [_connected(f"c{i}", "http://c.test", 40.0) for i in range(3)]
    estimates = estimate_rtt_by_origin(records)
    assert estimates["http://a.test"].min == pytest.approx(100.0)
    assert estimates["http://c.test"].median == pytest.approx(40.0)


def test_origins_with_few_samples_fall_back_to_page_defaults() -> None:
    records = [_connected(f"a{i}", "http://a.test", 100.0) for i in range(3)]
    records += [_connected(f"c{i}", "http://c.test", 40.0) for i in range(3)]
    records.append(_connected("b0", "http://b.test", 300.0))

    analysis = analyze(records)

    assert analysis.rtt == pytest.approx(40.0)
    assert analysis.additional_rtt_by_origin["http://a.test"] == pytest.approx(60.0)
    assert analysis.additional_rtt_by_origin["http://c.test"] == pytest.approx(0.0)
    # A single request is not enough to trust b.test's own estimate.
    assert analysis.additional_rtt_by_origin["http://b.test"] == 0.0
    assert analysis.for_origin("http://b.test").samples == 1
    assert analysis.for_origin("http://unknown.test") is analysis.default


def test_server_response_time_is_ttfb_minus_rtt() -> None:
    records = [_connected(f"a{i}", "http://a.test", 100.0) for i in range(3)]
    analysis = analyze(records)
    # receive_headers_end - send_end = 200, minus the origin's 100ms RTT.
    assert analysis.server_response_time_by_origin["http://a.test"] == pytest.approx(100.0)


def test_observed_server_response_time_wins() -> None:
    records = [_connected(f"a{i}", "http://a.test", 100.0, server_response_time=12.0) for i in range(3)]
    assert analyze(records).server_response_time_by_origin["http://a.test"] == pytest.approx(12.0)


def test_coarse_rtt_estimate_without_connection_timing() -> None:
    timing = ResourceTiming(send_start=300.0)
    records = [make_request("a", "https://a.test/a", timing=timing, connection_reused=False)]
    estimates = estimate_rtt_by_origin(records)
    # DNS + TCP + TLS round trips before sending, scaled down as a coarse estimate.
    assert estimates["https://a.test"].min == pytest.approx(300.0 / 3 * 0.3)


def test_no_timing_information_raises() -> None:
    records = [make_request("a", "https://a.test/a", timing=ResourceTiming(), resource_type=None)]
    with pytest.raises(NetworkAnalysisError) as excinfo:
        estimate_rtt_by_origin(records)
    assert excinfo.value.code == "NO_TIMING_INFORMATION"


def test_throughput_over_busy_download_time() -> None:
    records = [
        make_request("a", "https://a.test/a", transfer_size=50_000, response_headers_end_time=0.0, network_end_time=500.0),
        make_request("b", "https://a.test/b", transfer_size=50_000, response_headers_end_time=250.0, network_end_time=1000.0),
        make_request("c", "https://a.test/c", transfer_size=1, from_disk_cache=True),
    ]
    assert estimate_throughput(records) == pytest.approx(100_000 * 8)


def test_throughput_unknown_is_infinite() -> None:
    assert math.isinf(estimate_throughput([make_request("a", "https://a.test/a", transfer_size=0)]))


def test_connection_reuse_inferred_when_ids_are_untrustworthy() -> None:
    first = make_request("a", "https://a.test/a", connection_id=1, network_request_time=0.0, network_end_time=100.0)
    overlapping = make_request("b", "https://a.test/b", connection_id=1, network_request_time=50.0, network_end_time=150.0)
    later = make_request("c", "https://a.test/c", connection_id=1, network_request_time=120.0, network_end_time=200.0)
    reused = estimate_if_connection_was_reused([first, overlapping, later])
    assert reused == {"a": False, "b": False, "c": True}


def test_find_resource_and_document_ignore_fragments() -> None:
    records = [
        make_document("doc1", "https://example.com/"),
        make_request("img", "https://example.com/logo.png", resource_type="Image"),
        make_document("doc2", "https://example.com/#app"),
    ]
    assert find_resource_for_url(records, "https://example.com/#top").request_id == "doc1"
    assert find_last_document_for_url(records, "https://example.com/").request_id == "doc2"
    assert find_resource_for_url(records, "https://other.test/") is None
