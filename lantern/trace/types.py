"""Normalized request records and main-thread trace events."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from ..constants import NON_NETWORK_SCHEMES, SECURE_SCHEMES

_DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443}


class TraceParseError(ValueError):
    """Raised when a record or trace event fails validation."""


@dataclass(frozen=True)
class ParsedURL:
    scheme: str
    host: str
    origin: str


def parse_url(url: str) -> Optional[ParsedURL]:
    """Return the scheme/host/origin of ``url`` or ``None`` when it cannot be parsed."""

    if not isinstance(url, str) or not url:
        return None
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if not scheme:
        return None
    host = parts.hostname or ""
    if scheme in NON_NETWORK_SCHEMES:
        return ParsedURL(scheme=scheme, host=host, origin="null")
    if scheme in _DEFAULT_PORTS and not host:
        return None
    if not host:
        return ParsedURL(scheme=scheme, host="", origin="null")
    origin = f"{scheme}://{host}"
    if port is not None and port != _DEFAULT_PORTS.get(scheme):
        origin = f"{origin}:{port}"
    return ParsedURL(scheme=scheme, host=host, origin=origin)


@dataclass(frozen=True)
class CallFrame:
    url: str
    function_name: str = ""
    line_number: int = -1
    column_number: int = -1


@dataclass(frozen=True)
class StackTrace:
    call_frames: Tuple[CallFrame, ...] = ()
    parent: Optional["StackTrace"] = None


@dataclass(frozen=True)
class Initiator:
    type: str = "other"
    url: Optional[str] = None
    stack: Optional[StackTrace] = None


@dataclass(frozen=True)
class ResourceTiming:
    """Chrome resource timing; offsets are ms relative to ``request_time``, -1 if absent."""

    request_time: float = 0.0
    dns_start: float = -1.0
    dns_end: float = -1.0
    connect_start: float = -1.0
    connect_end: float = -1.0
    ssl_start: float = -1.0
    ssl_end: float = -1.0
    send_start: float = -1.0
    send_end: float = -1.0
    receive_headers_start: float = -1.0
    receive_headers_end: float = -1.0


@dataclass(frozen=True)
class RedirectHop:
    ts: float
    url: Optional[str] = None


@dataclass(frozen=True)
class NetworkRequest:
    request_id: str
    url: str
    parsed_url: Optional[ParsedURL]
    resource_type: Optional[str] = None
    priority: str = "Low"
    protocol: str = "http/1.1"
    document_url: str = ""
    connection_id: Optional[int] = None
    connection_reused: Optional[bool] = None
    initiator: Initiator = field(default_factory=Initiator)
    timing: Optional[ResourceTiming] = None
    renderer_start_time: float = 0.0
    network_request_time: float = 0.0
    response_headers_end_time: float = 0.0
    network_end_time: float = 0.0
    transfer_size: int = 0
    resource_size: int = 0
    status_code: int = 200
    from_disk_cache: bool = False
    from_memory_cache: bool = False
    finished: bool = True
    failed: bool = False
    frame_id: Optional[str] = None
    is_link_preload: bool = False
    mime_type: str = ""
    from_worker: bool = False
    server_response_time: Optional[float] = None
    redirects: Tuple[RedirectHop, ...] = ()
    # Relationships are ids resolved through a RequestArena.
    redirect_source_id: Optional[str] = None
    redirect_destination_id: Optional[str] = None
    redirect_ids: Tuple[str, ...] = ()
    initiator_request_id: Optional[str] = None

    @property
    def origin(self) -> str:
        return self.parsed_url.origin if self.parsed_url else "null"

    @property
    def is_secure(self) -> bool:
        return bool(self.parsed_url) and self.parsed_url.scheme in SECURE_SCHEMES

    @property
    def is_h2(self) -> bool:
        return self.protocol.lower() in ("h2", "h3", "http/2", "http/2.0", "quic")

    @property
    def from_cache(self) -> bool:
        return self.from_disk_cache or self.from_memory_cache

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "NetworkRequest":
        request_id = _coerce_str(payload.get("request_id"), "request_id")
        url = _coerce_str(payload.get("url"), "url")
        connection_id = payload.get("connection_id")
        connection_reused = payload.get("connection_reused")
        timing = payload.get("timing")
        redirects = payload.get("redirects") or ()
        if not isinstance(redirects, Sequence) or isinstance(redirects, str):
            raise TraceParseError("redirects must be a list")
        return cls(
            request_id=request_id,
            url=url,
            parsed_url=parse_url(url),
            resource_type=_coerce_optional_str(payload.get("resource_type"), "resource_type"),
            priority=_coerce_optional_str(payload.get("priority"), "priority") or "Low",
            protocol=_coerce_optional_str(payload.get("protocol"), "protocol") or "http/1.1",
            document_url=_coerce_optional_str(payload.get("document_url"), "document_url") or "",
            connection_id=None if connection_id is None else _coerce_int(connection_id, "connection_id"),
            connection_reused=None if connection_reused is None else bool(connection_reused),
            initiator=_parse_initiator(payload.get("initiator")),
            timing=None if timing is None else _parse_timing(timing),
            renderer_start_time=_coerce_float(payload.get("renderer_start_time", 0.0), "renderer_start_time"),
            network_request_time=_coerce_float(payload.get("network_request_time", 0.0), "network_request_time"),
            response_headers_end_time=_coerce_float(
                payload.get("response_headers_end_time", 0.0), "response_headers_end_time"
            ),
            network_end_time=_coerce_float(payload.get("network_end_time", 0.0), "network_end_time"),
            transfer_size=_coerce_int(payload.get("transfer_size", 0), "transfer_size"),
            resource_size=_coerce_int(payload.get("resource_size", 0), "resource_size"),
            status_code=_coerce_int(payload.get("status_code", 200), "status_code"),
            from_disk_cache=bool(payload.get("from_disk_cache", False)),
            from_memory_cache=bool(payload.get("from_memory_cache", False)),
            finished=bool(payload.get("finished", True)),
            failed=bool(payload.get("failed", False)),
            frame_id=_coerce_optional_str(payload.get("frame_id"), "frame_id"),
            is_link_preload=bool(payload.get("is_link_preload", False)),
            mime_type=_coerce_optional_str(payload.get("mime_type"), "mime_type") or "",
            from_worker=bool(payload.get("from_worker", False)),
            server_response_time=(
                None
                if payload.get("server_response_time") is None
                else _coerce_float(payload["server_response_time"], "server_response_time")
            ),
            redirects=tuple(_parse_redirect(hop) for hop in redirects),
        )


@dataclass(frozen=True)
class TraceEvent:
    name: str
    ts: float
    dur: float = 0.0
    tid: int = 0
    args: Mapping[str, Any] = field(default_factory=dict)

    @property
    def data(self) -> Mapping[str, Any]:
        data = self.args.get("data") if isinstance(self.args, Mapping) else None
        return data if isinstance(data, Mapping) else {}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TraceEvent":
        args = payload.get("args") or {}
        if not isinstance(args, Mapping):
            raise TraceParseError("args must be a mapping")
        return cls(
            name=_coerce_str(payload.get("name"), "name"),
            ts=_coerce_float(payload.get("ts"), "ts"),
            dur=_coerce_float(payload.get("dur", 0.0) or 0.0, "dur"),
            tid=_coerce_int(payload.get("tid", 0), "tid"),
            args=dict(args),
        )


def _parse_initiator(value: Any) -> Initiator:
    if value is None:
        return Initiator()
    if not isinstance(value, Mapping):
        raise TraceParseError("initiator must be a mapping")
    stack = value.get("stack")
    return Initiator(
        type=_coerce_optional_str(value.get("type"), "initiator.type") or "other",
        url=_coerce_optional_str(value.get("url"), "initiator.url"),
        stack=None if stack is None else _parse_stack(stack),
    )


def _parse_stack(value: Any) -> StackTrace:
    if not isinstance(value, Mapping):
        raise TraceParseError("initiator.stack must be a mapping")
    frames = []
    for frame in value.get("call_frames") or ():
        if not isinstance(frame, Mapping):
            raise TraceParseError("call frames must be mappings")
        frames.append(
            CallFrame(
                url=str(frame.get("url") or ""),
                function_name=str(frame.get("function_name") or ""),
                line_number=_coerce_int(frame.get("line_number", -1), "line_number", allow_negative=True),
                column_number=_coerce_int(frame.get("column_number", -1), "column_number", allow_negative=True),
            )
        )
    parent = value.get("parent")
    return StackTrace(call_frames=tuple(frames), parent=None if parent is None else _parse_stack(parent))


def _parse_timing(value: Any) -> ResourceTiming:
    if not isinstance(value, Mapping):
        raise TraceParseError("timing must be a mapping")
    fields: Dict[str, float] = {}
    for name in ResourceTiming.__dataclass_fields__:
        if name in value and value[name] is not None:
            fields[name] = _coerce_float(value[name], f"timing.{name}")
    return ResourceTiming(**fields)


def _parse_redirect(value: Any) -> RedirectHop:
    if not isinstance(value, Mapping):
        raise TraceParseError("redirect hops must be mappings")
    return RedirectHop(
        ts=_coerce_float(value.get("ts"), "redirects.ts"),
        url=_coerce_optional_str(value.get("url"), "redirects.url"),
    )


def _coerce_float(value: Any, field_name: str) -> float:
    if value is None:
        raise TraceParseError(f"{field_name} is required")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise TraceParseError(f"{field_name} must be a float") from exc


def _coerce_int(value: Any, field_name: str, *, allow_negative: bool = False) -> int:
    if value is None:
        raise TraceParseError(f"{field_name} is required")
    try:
        result = int(value)
    except (TypeError, ValueError) as exc:
        raise TraceParseError(f"{field_name} must be an integer") from exc
    if result < 0 and not allow_negative:
        raise TraceParseError(f"{field_name} must be non-negative")
    return result


def _coerce_str(value: Any, field_name: str) -> str:
    result = _coerce_optional_str(value, field_name)
    if result is None:
        raise TraceParseError(f"{field_name} is required")
    return result


def _coerce_optional_str(value: Any, field_name: str) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    raise TraceParseError(f"{field_name} must be a string if provided")
