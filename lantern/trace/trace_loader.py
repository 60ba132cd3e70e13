"""Streaming utilities for reading request logs and main-thread traces."""

from __future__ import annotations

import gzip
import io
import json
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Mapping, TextIO, Union

from .types import NetworkRequest, TraceEvent, TraceParseError

RecordIterable = Iterable[Union[Mapping[str, Any], NetworkRequest]]
RecordSource = Union[str, Path, TextIO, RecordIterable]


def iter_request_records(source: RecordSource, *, strict: bool = True) -> Iterator[NetworkRequest]:
    """Yield normalized request records from a JSON/JSONL(.gz) path, stream or iterable."""

    for payload in _iter_payloads(source, strict=strict, list_key="requests"):
        if isinstance(payload, NetworkRequest):
            yield payload
            continue
        try:
            if not isinstance(payload, Mapping):
                raise TraceParseError(f"unsupported request row type: {type(payload)!r}")
            yield NetworkRequest.from_dict(payload)
        except TraceParseError:
            if strict:
                raise
            continue


def load_requests(source: RecordSource, *, strict: bool = True) -> List[NetworkRequest]:
    """Materialise all request records from ``source`` into a list."""

    return list(iter_request_records(source, strict=strict))


def load_main_thread_events(source: RecordSource, *, strict: bool = True) -> List[TraceEvent]:
    """Load main-thread trace events, sorted by timestamp."""

    events: List[TraceEvent] = []
    for payload in _iter_payloads(source, strict=strict, list_key="traceEvents"):
        if isinstance(payload, TraceEvent):
            events.append(payload)
            continue
        try:
            if not isinstance(payload, Mapping):
                raise TraceParseError(f"unsupported trace event type: {type(payload)!r}")
            events.append(TraceEvent.from_dict(payload))
        except TraceParseError:
            if strict:
                raise
            continue
    events.sort(key=lambda evt: evt.ts)
    return events


def _iter_payloads(source: RecordSource, *, strict: bool, list_key: str) -> Iterator[Any]:
    if isinstance(source, (str, Path)):
        with _open_text(Path(source)) as stream:
            yield from _iter_from_stream(stream, strict=strict, list_key=list_key)
    elif isinstance(source, io.TextIOBase):
        yield from _iter_from_stream(source, strict=strict, list_key=list_key)
    else:
        yield from source


def _iter_from_stream(stream: TextIO, *, strict: bool, list_key: str) -> Iterator[Any]:
    text = stream.read()
    stripped = text.lstrip()
    # A whole-document JSON array/object, otherwise one JSON value per line.
    if stripped.startswith("["):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise TraceParseError(f"invalid JSON document: {exc.msg}") from exc
        yield from payload
        return
    if stripped.startswith("{"):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, Mapping) and isinstance(payload.get(list_key), list):
            yield from payload[list_key]
            return

    for line_no, line in enumerate(text.splitlines(), start=1):
        row = line.strip()
        if not row or row.startswith("#"):
            continue
        try:
            yield json.loads(row)
        except json.JSONDecodeError as exc:
            if strict:
                raise TraceParseError(f"invalid JSON on line {line_no}: {exc.msg}") from exc
            continue


def _open_text(path: Path) -> TextIO:
    if path.suffix.lower() == ".gz":
        return gzip.open(path, mode="rt", encoding="utf-8")
    return path.open("rt", encoding="utf-8")
