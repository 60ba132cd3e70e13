"""Derive RTT, server response time and throughput estimates from observed requests."""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence
from urllib.parse import urldefrag

import numpy as np

from ..constants import MIN_ORIGIN_SAMPLES, ResourceType
from ..errors import NetworkAnalysisError
from ..trace.types import NetworkRequest, ResourceTiming

logger = logging.getLogger(__name__)

INITIAL_CONGESTION_WINDOW_BYTES = 14 * 1460
COARSE_ESTIMATE_MULTIPLIER = 0.3
DEFAULT_SERVER_RESPONSE_PERCENTAGE = 0.4
SERVER_RESPONSE_PERCENTAGE_OF_TTFB = {
    ResourceType.DOCUMENT: 0.4,
    ResourceType.XHR: 0.2,
    ResourceType.FETCH: 0.2,
}

Estimator = Callable[[NetworkRequest, ResourceTiming, bool], Sequence[float]]


@dataclass(frozen=True)
class Summary:
    min: float
    max: float
    avg: float
    median: float
    num: int

    @classmethod
    def of(cls, values: Sequence[float]) -> "Summary":
        arr = np.asarray(values, dtype=float)
        return cls(
            min=float(arr.min()),
            max=float(arr.max()),
            avg=float(arr.mean()),
            median=float(np.median(arr)),
            num=int(arr.size),
        )


@dataclass(frozen=True)
class OriginEstimate:
    rtt: float
    server_response_time_ms: float
    throughput_bps: float
    samples: int = 0

    @property
    def unconstrained(self) -> bool:
        return math.isinf(self.throughput_bps)


@dataclass(frozen=True)
class NetworkAnalysis:
    """Per-origin network characteristics plus the page-wide fallback."""

    rtt: float
    throughput: float
    default: OriginEstimate
    additional_rtt_by_origin: Mapping[str, float] = field(default_factory=dict)
    server_response_time_by_origin: Mapping[str, float] = field(default_factory=dict)
    origins: Mapping[str, OriginEstimate] = field(default_factory=dict)

    def for_origin(self, origin: str) -> OriginEstimate:
        return self.origins.get(origin, self.default)


def group_by_origin(records: Iterable[NetworkRequest]) -> Dict[str, List[NetworkRequest]]:
    grouped: Dict[str, List[NetworkRequest]] = defaultdict(list)
    for record in records:
        grouped[record.origin].append(record)
    return dict(grouped)


def can_trust_connection_information(records: Sequence[NetworkRequest]) -> bool:
    started: Dict[Optional[int], bool] = {}
    for record in records:
        started[record.connection_id] = started.get(record.connection_id, False) or not record.connection_reused
    # Every request on one connection id, or a connection that was never opened.
    if len(started) <= 1:
        return False
    return all(started.values())


def estimate_if_connection_was_reused(
    records: Sequence[NetworkRequest],
    *,
    force_coarse_estimates: bool = False,
) -> Dict[str, bool]:
    if not force_coarse_estimates and can_trust_connection_information(records):
        return {record.request_id: bool(record.connection_reused) for record in records}

    # Without trustworthy ids a request reused a connection if it was H2 or started
    # after the first request to the same origin had already finished.
    reused: Dict[str, bool] = {}
    for origin_records in group_by_origin(records).values():
        earliest_reuse = min(record.network_end_time for record in origin_records)
        for record in origin_records:
            reused[record.request_id] = record.network_request_time >= earliest_reuse or record.is_h2
        first = min(origin_records, key=lambda record: record.network_request_time)
        reused[first.request_id] = False
    return reused


def _rtt_via_connection_timing(record: NetworkRequest, timing: ResourceTiming, reused: bool) -> Sequence[float]:
    connect_start, connect_end = timing.connect_start, timing.connect_end
    ssl_start, ssl_end = timing.ssl_start, timing.ssl_end
    if connect_start >= 0 and connect_end >= 0 and record.protocol.startswith("h3"):
        return [connect_end - connect_start]
    if ssl_start >= 0 and ssl_end >= 0 and ssl_start != connect_start:
        # Assume TLS False Start: one round trip for TCP, one for TLS.
        return [connect_end - ssl_start, ssl_start - connect_start]
    if connect_start >= 0 and connect_end >= 0:
        return [connect_end - connect_start]
    return []


def _rtt_via_download_timing(record: NetworkRequest, timing: ResourceTiming, reused: bool) -> Sequence[float]:
    if reused or record.transfer_size <= INITIAL_CONGESTION_WINDOW_BYTES:
        return []
    if not math.isfinite(timing.receive_headers_end) or timing.receive_headers_end < 0:
        return []
    total_time = record.network_end_time - record.network_request_time
    after_first_byte = total_time - timing.receive_headers_end
    round_trips = math.log2(record.transfer_size / INITIAL_CONGESTION_WINDOW_BYTES)
    # Past a handful of round trips bandwidth dominates latency.
    if round_trips > 5:
        return []
    return [after_first_byte / round_trips]


def _rtt_via_send_start_timing(record: NetworkRequest, timing: ResourceTiming, reused: bool) -> Sequence[float]:
    if reused or not math.isfinite(timing.send_start) or timing.send_start < 0:
        return []
    round_trips = 1
    if not record.protocol.startswith("h3"):
        round_trips += 1
    if record.is_secure:
        round_trips += 1
    return [timing.send_start / round_trips]


def _rtt_via_headers_end_timing(record: NetworkRequest, timing: ResourceTiming, reused: bool) -> Sequence[float]:
    if not math.isfinite(timing.receive_headers_end) or timing.receive_headers_end < 0:
        return []
    if not record.resource_type:
        return []
    percentage = SERVER_RESPONSE_PERCENTAGE_OF_TTFB.get(record.resource_type, DEFAULT_SERVER_RESPONSE_PERCENTAGE)
    estimated_response_time = timing.receive_headers_end * percentage
    # TTFB = DNS + TCP + (TLS) + request round trip + server response time
    round_trips = 1
    if not reused:
        round_trips += 1
        if not record.protocol.startswith("h3"):
            round_trips += 1
        if record.is_secure:
            round_trips += 1
    return [max((timing.receive_headers_end - estimated_response_time) / round_trips, 3.0)]


def _analyzable(records: Iterable[NetworkRequest]) -> List[NetworkRequest]:
    return [record for record in records if record.parsed_url is not None and record.timing is not None]


def _collect_by_origin(
    records: Sequence[NetworkRequest],
    reused: Mapping[str, bool],
    estimators: Sequence[Estimator],
    multiplier: float = 1.0,
) -> List[float]:
    values: List[float] = []
    for estimator in estimators:
        for record in records:
            for value in estimator(record, record.timing, reused.get(record.request_id, False)):
                values.append(value * multiplier)
    return values


def estimate_rtt_by_origin(
    records: Sequence[NetworkRequest],
    *,
    force_coarse_estimates: bool = False,
) -> Dict[str, Summary]:
    records = _analyzable(records)
    reused = estimate_if_connection_was_reused(records)
    estimates: Dict[str, Summary] = {}
    for origin, origin_records in group_by_origin(records).items():
        values: List[float] = []
        if not force_coarse_estimates:
            values = _collect_by_origin(origin_records, reused, [_rtt_via_connection_timing])
        # Connection timing is missing for reused connections, proxies and some protocols.
        if not values:
            values = _collect_by_origin(
                origin_records,
                reused,
                [_rtt_via_download_timing, _rtt_via_send_start_timing, _rtt_via_headers_end_timing],
                multiplier=COARSE_ESTIMATE_MULTIPLIER,
            )
        if values:
            estimates[origin] = Summary.of(values)
    if not estimates:
        raise NetworkAnalysisError("No timing information available", code="NO_TIMING_INFORMATION")
    return estimates


def _server_response_time(record: NetworkRequest, rtt: float) -> Optional[float]:
    if record.server_response_time is not None:
        return record.server_response_time
    timing = record.timing
    if timing is None:
        return None
    if not math.isfinite(timing.receive_headers_end) or timing.receive_headers_end < 0:
        return None
    if not math.isfinite(timing.send_end) or timing.send_end < 0:
        return None
    ttfb = timing.receive_headers_end - timing.send_end
    return max(ttfb - rtt, 0.0)


def estimate_server_response_time_by_origin(
    records: Sequence[NetworkRequest],
    rtt_by_origin: Mapping[str, float],
    default_rtt: float = 0.0,
) -> Dict[str, Summary]:
    estimates: Dict[str, Summary] = {}
    for origin, origin_records in group_by_origin(_analyzable(records)).items():
        rtt = rtt_by_origin.get(origin, default_rtt)
        values = [v for v in (_server_response_time(r, rtt) for r in origin_records) if v is not None]
        if values:
            estimates[origin] = Summary.of(values)
    return estimates


def estimate_throughput(records: Sequence[NetworkRequest]) -> float:
    """Bits per second over the time something was downloading; ``inf`` if unknown."""

    total_bytes = 0
    boundaries = []
    for record in records:
        if record.from_cache or not record.transfer_size:
            continue
        scheme = record.parsed_url.scheme if record.parsed_url else None
        # Bodies that never crossed the network or never completed skew the estimate.
        if scheme == "data" or record.failed or not record.finished or record.status_code > 300:
            continue
        total_bytes += record.transfer_size
        boundaries.append((record.response_headers_end_time, 1))
        boundaries.append((record.network_end_time, -1))
    if not boundaries:
        return math.inf

    # Ends sort before starts at the same instant.
    boundaries.sort(key=lambda item: (item[0], item[1]))
    inflight = 0
    current_start = 0.0
    busy_ms = 0.0
    for time, delta in boundaries:
        if delta > 0:
            if inflight == 0:
                current_start = time
            inflight += 1
        else:
            inflight -= 1
            if inflight == 0:
                busy_ms += time - current_start
    if busy_ms <= 0:
        return math.inf
    return total_bytes * 8 / (busy_ms / 1000.0)


def _completed_requests(records: Sequence[NetworkRequest]) -> int:
    return sum(1 for r in records if r.finished and not r.failed and not r.from_cache)


def analyze(records: Sequence[NetworkRequest]) -> NetworkAnalysis:
    """Estimate network characteristics for every origin seen in ``records``."""

    if not records:
        raise NetworkAnalysisError("No network records to analyze", code="NO_NETWORK_RECORDS")

    throughput = estimate_throughput(records)
    rtt_by_origin = estimate_rtt_by_origin(records)
    min_rtt = min(summary.min for summary in rtt_by_origin.values())
    srt_by_origin = estimate_server_response_time_by_origin(
        records, {origin: summary.min for origin, summary in rtt_by_origin.items()}, default_rtt=min_rtt
    )

    all_srt = [s.median for s in srt_by_origin.values()]
    default_srt = float(np.median(all_srt)) if all_srt else 0.0
    default = OriginEstimate(rtt=min_rtt, server_response_time_ms=default_srt, throughput_bps=throughput)

    origins: Dict[str, OriginEstimate] = {}
    additional_rtt: Dict[str, float] = {}
    server_response_time: Dict[str, float] = {}
    for origin, origin_records in group_by_origin(_analyzable(records)).items():
        samples = _completed_requests(origin_records)
        rtt_summary = rtt_by_origin.get(origin)
        srt_summary = srt_by_origin.get(origin)
        if samples < MIN_ORIGIN_SAMPLES or rtt_summary is None:
            logger.debug("origin %s has %d completed requests, using page defaults", origin, samples)
            origins[origin] = OriginEstimate(default.rtt, default.server_response_time_ms, throughput, samples)
            additional_rtt[origin] = 0.0
            server_response_time[origin] = default.server_response_time_ms
            continue
        srt = srt_summary.median if srt_summary is not None else default_srt
        origins[origin] = OriginEstimate(rtt_summary.min, srt, throughput, samples)
        additional_rtt[origin] = rtt_summary.min - min_rtt
        server_response_time[origin] = srt

    logger.debug(
        "network analysis: rtt=%.1fms throughput=%s origins=%d", min_rtt, throughput, len(origins)
    )
    return NetworkAnalysis(
        rtt=min_rtt,
        throughput=throughput,
        default=default,
        additional_rtt_by_origin=additional_rtt,
        server_response_time_by_origin=server_response_time,
        origins=origins,
    )


def _strip_fragment(url: str) -> str:
    return urldefrag(url)[0]


def find_resource_for_url(records: Sequence[NetworkRequest], url: str) -> Optional[NetworkRequest]:
    """First request whose URL matches ``url`` ignoring fragments."""

    target = _strip_fragment(url)
    for record in records:
        if url.startswith(record.url) and _strip_fragment(record.url) == target:
            return record
    for record in records:
        if _strip_fragment(record.url) == target:
            return record
    return None


def find_last_document_for_url(records: Sequence[NetworkRequest], url: str) -> Optional[NetworkRequest]:
    target = _strip_fragment(url)
    matching = [
        record
        for record in records
        if record.resource_type == ResourceType.DOCUMENT and _strip_fragment(record.url) == target
    ]
    return matching[-1] if matching else None
