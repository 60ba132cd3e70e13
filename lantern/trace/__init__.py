"""Request records, main-thread events and their loaders."""

from .types import (
    CallFrame,
    Initiator,
    NetworkRequest,
    ParsedURL,
    RedirectHop,
    ResourceTiming,
    StackTrace,
    TraceEvent,
    TraceParseError,
    parse_url,
)
from .trace_loader import iter_request_records, load_main_thread_events, load_requests

__all__ = [
    "CallFrame",
    "Initiator",
    "NetworkRequest",
    "ParsedURL",
    "RedirectHop",
    "ResourceTiming",
    "StackTrace",
    "TraceEvent",
    "TraceParseError",
    "parse_url",
    "iter_request_records",
    "load_main_thread_events",
    "load_requests",
]
