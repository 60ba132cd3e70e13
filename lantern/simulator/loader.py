"""Build a :class:`Simulator` from settings and the observed network analysis."""

from __future__ import annotations

import logging
from typing import Dict

from ..config import Settings
from ..constants import DEVTOOLS_RTT_ADJUSTMENT_FACTOR, DEVTOOLS_THROUGHPUT_ADJUSTMENT_FACTOR
from ..errors import SettingsError
from ..network.analyzer import NetworkAnalysis
from .engine import Simulator, SimulatorOptions

logger = logging.getLogger(__name__)


def load_simulator(settings: Settings, analysis: NetworkAnalysis) -> Simulator:
    method = settings.throttling_method
    throttling = settings.throttling

    additional_rtt: Dict[str, float] = dict(analysis.additional_rtt_by_origin)
    server_response_time: Dict[str, float] = dict(analysis.server_response_time_by_origin)
    if settings.precomputed_lantern_data is not None:
        additional_rtt = dict(settings.precomputed_lantern_data.additional_rtt_by_origin)
        server_response_time = dict(settings.precomputed_lantern_data.server_response_time_by_origin)

    if method == "provided":
        # The page was loaded unthrottled; replay what was observed.
        rtt = analysis.rtt
        throughput = analysis.throughput
        cpu_slowdown = 1.0
    elif method == "devtools":
        # DevTools applied request-level latency, which overstates the connection RTT.
        rtt = throttling.request_latency_ms / DEVTOOLS_RTT_ADJUSTMENT_FACTOR
        throughput = throttling.download_throughput_kbps * 1024 / DEVTOOLS_THROUGHPUT_ADJUSTMENT_FACTOR
        cpu_slowdown = 1.0
    elif method == "simulate":
        rtt = throttling.rtt_ms
        throughput = throttling.throughput_kbps * 1024
        cpu_slowdown = throttling.cpu_slowdown_multiplier
    else:
        raise SettingsError(f"Unknown throttling method {method!r}", code="UNKNOWN_THROTTLING_METHOD")

    options = SimulatorOptions(
        rtt=rtt,
        throughput=throughput,
        cpu_slowdown_multiplier=cpu_slowdown,
        max_concurrent_requests=settings.simulator.max_concurrent_requests,
        max_connections_per_origin=settings.simulator.max_connections_per_origin,
        additional_rtt_by_origin=additional_rtt,
        server_response_time_by_origin=server_response_time,
    )
    logger.debug(
        "simulator (%s): rtt=%.1fms throughput=%.0fbps cpu x%.1f", method, rtt, throughput, cpu_slowdown
    )
    return Simulator(options)
