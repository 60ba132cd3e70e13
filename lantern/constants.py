"""Shared constants: resource types, priorities and throttling presets."""

from __future__ import annotations

from types import MappingProxyType


class ResourceType:
    XHR = "XHR"
    FETCH = "Fetch"
    EVENT_SOURCE = "EventSource"
    SCRIPT = "Script"
    STYLESHEET = "Stylesheet"
    IMAGE = "Image"
    MEDIA = "Media"
    FONT = "Font"
    DOCUMENT = "Document"
    TEXT_TRACK = "TextTrack"
    WEB_SOCKET = "WebSocket"
    OTHER = "Other"
    MANIFEST = "Manifest"
    SIGNED_EXCHANGE = "SignedExchange"
    PING = "Ping"
    PREFLIGHT = "Preflight"
    CSP_VIOLATION_REPORT = "CSPViolationReport"
    PREFETCH = "Prefetch"


# Penalty (ms) added to a node's observed start when ordering the ready queue.
PRIORITY_START_PENALTY_MS = MappingProxyType({
    "VeryHigh": 0.0,
    "High": 250.0,
    "Medium": 500.0,
    "Low": 1000.0,
    "VeryLow": 2000.0,
})

NON_NETWORK_SCHEMES = frozenset({"blob", "data", "intent", "file", "filesystem", "chrome-extension"})
SECURE_SCHEMES = frozenset({"https", "wss"})

# These must match the factors DevTools applies to its own throttling.
DEVTOOLS_RTT_ADJUSTMENT_FACTOR = 3.75
DEVTOOLS_THROUGHPUT_ADJUSTMENT_FACTOR = 0.9

# Roughly the 75th percentile of 4G connections ("Fast 3G" in WebPageTest terms).
MOBILE_SLOW_4G = MappingProxyType({
    "rtt_ms": 150.0,
    "throughput_kbps": 1.6 * 1024,
    "request_latency_ms": 150.0 * DEVTOOLS_RTT_ADJUSTMENT_FACTOR,
    "download_throughput_kbps": 1.6 * 1024 * DEVTOOLS_THROUGHPUT_ADJUSTMENT_FACTOR,
    "upload_throughput_kbps": 750.0 * DEVTOOLS_THROUGHPUT_ADJUSTMENT_FACTOR,
    "cpu_slowdown_multiplier": 4.0,
})

DEFAULT_SERVER_RESPONSE_TIME_MS = 30.0
DEFAULT_MAX_CONCURRENT_REQUESTS = 10
DEFAULT_MAX_CONNECTIONS_PER_ORIGIN = 6
DNS_RESOLUTION_RTT_MULTIPLIER = 2.0

# Origins with fewer completed requests than this use the page-wide estimate.
MIN_ORIGIN_SAMPLES = 3

SIGNIFICANT_CPU_TASK_MS = 10.0
