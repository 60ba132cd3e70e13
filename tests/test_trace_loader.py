from __future__ import annotations

import gzip
import io
import json

import pytest

from lantern.trace import TraceParseError, load_main_thread_events, load_requests, parse_url


def _row(request_id: str, **extra):
    row = {
        "request_id": request_id,
        "url": f"https://example.com/{request_id}.js",
        "resource_type": "Script",
        "connection_id": 1,
        "connection_reused": False,
        "timing": {"request_time": 0, "connect_start": 0, "connect_end": 40, "send_end": 41},
        "renderer_start_time": 10,
        "network_end_time": 120,
        "resource_size": 2048,
    }
    row.update(extra)
    return row


def test_load_requests_from_jsonl_gz(tmp_path) -> None:
    path = tmp_path / "requests.jsonl.gz"
    with gzip.open(path, "wt", encoding="utf-8") as f:
        f.write(json.dumps(_row("a")) + "\n")
        f.write("\n# comment\n")
        f.write(json.dumps(_row("b", redirects=[{"ts": 50, "url": "http://example.com/b.js"}])) + "\n")

    records = load_requests(path)
    assert [r.request_id for r in records] == ["a", "b"]
    assert records[0].parsed_url.origin == "https://example.com"
    assert records[0].timing.connect_end == 40
    assert records[0].timing.ssl_start == -1
    assert records[1].redirects[0].url == "http://example.com/b.js"


def test_load_requests_from_wrapped_json_document() -> None:
    stream = io.StringIO(json.dumps({"requests": [_row("a"), _row("b")]}))
    assert [r.request_id for r in load_requests(stream)] == ["a", "b"]


def test_missing_connection_fields_are_kept_as_none() -> None:
    row = _row("a")
    del row["connection_id"]
    del row["timing"]
    record = load_requests([row])[0]
    assert record.connection_id is None
    assert record.timing is None


def test_strict_mode_raises_and_lenient_mode_skips() -> None:
    rows = [_row("a"), {"request_id": "b"}, _row("c")]
    with pytest.raises(TraceParseError):
        load_requests(rows)
    assert [r.request_id for r in load_requests(rows, strict=False)] == ["a", "c"]


def test_invalid_json_line_reports_line_number() -> None:
    stream = io.StringIO(json.dumps(_row("a")) + "\n{not json\n")
    with pytest.raises(TraceParseError, match="line 2"):
        load_requests(stream)


def test_main_thread_events_sorted_by_timestamp() -> None:
    payload = {
        "traceEvents": [
            {"name": "RunTask", "ts": 30, "dur": 5},
            {"name": "EvaluateScript", "ts": 10, "args": {"data": {"url": "https://example.com/a.js"}}},
        ]
    }
    events = load_main_thread_events(io.StringIO(json.dumps(payload)))
    assert [e.name for e in events] == ["EvaluateScript", "RunTask"]
    assert events[0].data["url"] == "https://example.com/a.js"
    assert events[1].data == {}


@pytest.mark.parametrize(
    "url, origin",
    [
        ("https://example.com/path?q=1#frag", "https://example.com"),
        ("http://example.com:8080/", "http://example.com:8080"),
        ("https://example.com:443/", "https://example.com"),
        ("data:image/png;base64,AAAA", "null"),
    ],
)
def test_parse_url_origin(url: str, origin: str) -> None:
    assert parse_url(url).origin == origin


@pytest.mark.parametrize("url", ["", "https://", "not a url", "http://example.com:99999/"])
def test_parse_url_rejects_malformed(url: str) -> None:
    assert parse_url(url) is None
