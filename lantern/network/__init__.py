"""Network analysis plus the simulated links, DNS and connection pools."""

from .analyzer import (
    NetworkAnalysis,
    OriginEstimate,
    Summary,
    analyze,
    estimate_if_connection_was_reused,
    estimate_rtt_by_origin,
    estimate_server_response_time_by_origin,
    estimate_throughput,
    find_last_document_for_url,
    find_resource_for_url,
    group_by_origin,
)
from .connection import Connection, ConnectionPool, DNSCache
from .fabric import LinkStats, OrderedResource, SharedLink

__all__ = [
    "Connection",
    "ConnectionPool",
    "DNSCache",
    "LinkStats",
    "NetworkAnalysis",
    "OrderedResource",
    "OriginEstimate",
    "SharedLink",
    "Summary",
    "analyze",
    "estimate_if_connection_was_reused",
    "estimate_rtt_by_origin",
    "estimate_server_response_time_by_origin",
    "estimate_throughput",
    "find_last_document_for_url",
    "find_resource_for_url",
    "group_by_origin",
]
