from __future__ import annotations

import pytest

from lantern.errors import ErrorKind, GraphConstructionError
from lantern.graph import (
    NodeType,
    PageURL,
    all_nodes,
    build_requests,
    clone_with_relationships,
    create_graph,
    get_cpu_nodes,
)
from lantern.trace.types import CallFrame, Initiator, RedirectHop, StackTrace

from conftest import find_node, make_document, make_event, make_request, make_task


def _ids(nodes):
    return sorted(node.id for node in nodes)


def test_redirect_chain_is_expanded_with_suffixed_ids() -> None:
    record = make_document(
        "1",
        "https://www.example.com/",
        renderer_start_time=0.0,
        network_end_time=400.0,
        redirects=(RedirectHop(ts=100.0, url="http://example.com/"), RedirectHop(ts=200.0, url="https://example.com/")),
    )
    arena = build_requests([record])

    assert [r.request_id for r in arena] == ["1", "1:redirect", "1:redirect:redirect"]
    first, second, final = arena["1"], arena["1:redirect"], arena["1:redirect:redirect"]

    assert first.url == "http://example.com/"
    assert first.network_end_time == 100.0
    assert second.url == "https://example.com/"
    assert second.network_end_time == 200.0
    assert final.url == "https://www.example.com/"
    assert final.network_end_time == 400.0

    assert arena.redirect_destination(first) is second
    assert arena.redirect_source(second) is first
    assert arena.redirect_destination(second) is final
    assert arena.redirect_source(final) is second
    assert arena.redirect_destination(final) is None
    assert [r.request_id for r in arena.redirects(final)] == ["1", "1:redirect"]
    # The redirect source is always the initiator.
    assert arena.initiator_request(final) is second


def test_redirected_navigation_links_hops_in_order() -> None:
    record = make_document(
        "1",
        "https://www.example.com/",
        network_end_time=400.0,
        redirects=(RedirectHop(ts=100.0, url="http://example.com/"),),
    )
    graph = create_graph([], [record], PageURL("http://example.com/", "https://www.example.com/"))

    assert graph.id == "1"
    final = find_node(graph, "1:redirect")
    assert [dep.id for dep in final.dependencies] == ["1"]
    assert final.is_main_document
    assert not graph.is_main_document


def test_records_without_connection_data_are_rejected() -> None:
    records = [make_document(), make_request("old", "https://example.com/a.js", connection_id=None)]
    with pytest.raises(GraphConstructionError) as excinfo:
        build_requests(records)
    assert excinfo.value.kind is ErrorKind.GRAPH_CONSTRUCTION
    assert excinfo.value.details["missing"] == ["connection_id"]


def test_records_without_timing_are_rejected() -> None:
    with pytest.raises(GraphConstructionError):
        build_requests([make_document(timing=None)])


def test_unparseable_urls_are_skipped() -> None:
    arena = build_requests([make_document(), make_request("bad", "https://")])
    assert "bad" not in arena
    assert len(arena) == 1


def test_duplicate_request_ids_are_suffixed() -> None:
    arena = build_requests([make_document("x"), make_request("x", "https://example.com/a.js")])
    assert [r.request_id for r in arena] == ["x", "x:duplicate"]


def _script_candidate(request_id: str, frame_id: str, **overrides):
    return make_request(
        request_id,
        "https://example.com/app.js",
        frame_id=frame_id,
        renderer_start_time=0.0,
        response_headers_end_time=50.0,
        network_end_time=80.0,
        **overrides,
    )


def test_initiator_disambiguated_by_frame() -> None:
    child = make_request(
        "img",
        "https://example.com/img.png",
        resource_type="Image",
        frame_id="main",
        renderer_start_time=100.0,
        initiator=Initiator(type="script", url="https://example.com/app.js"),
    )
    arena = build_requests(
        [_script_candidate("in-main", "main"), _script_candidate("in-iframe", "iframe"), child]
    )
    assert arena["img"].initiator_request_id == "in-main"


def test_ambiguous_initiator_is_left_unset() -> None:
    child = make_request(
        "img",
        "https://example.com/img.png",
        resource_type="Image",
        frame_id="main",
        renderer_start_time=100.0,
        initiator=Initiator(type="script", url="https://example.com/app.js"),
    )
    arena = build_requests([_script_candidate("a", "main"), _script_candidate("b", "main"), child])
    assert arena["img"].initiator_request_id is None


def test_initiator_must_have_responded_before_the_request_started() -> None:
    child = make_request(
        "img",
        "https://example.com/img.png",
        renderer_start_time=50.0,
        initiator=Initiator(type="script", url="https://example.com/app.js"),
    )
    # Headers arrived at exactly 50ms, which does not count as "before".
    arena = build_requests([_script_candidate("a", "main"), child])
    assert arena["img"].initiator_request_id is None


def test_link_preload_preferred_over_cache_hits() -> None:
    child = make_request(
        "font",
        "https://example.com/font.woff2",
        renderer_start_time=100.0,
        initiator=Initiator(type="script", url="https://example.com/app.js"),
    )
    preload = _script_candidate("preload", "main", is_link_preload=True)
    cached = _script_candidate("cached", "main", from_memory_cache=True)
    arena = build_requests([preload, cached, child])
    assert arena["font"].initiator_request_id == "preload"


def _script_initiated_image():
    return make_request(
        "img",
        "https://example.com/img.png",
        resource_type="Image",
        frame_id="main",
        renderer_start_time=100.0,
        initiator=Initiator(type="script", url="https://example.com/app.js"),
    )


def test_prefetch_of_type_other_is_not_the_initiator() -> None:
    prefetch = _script_candidate("prefetch", "main", resource_type="Other")
    arena = build_requests([prefetch, _script_candidate("script", "main"), _script_initiated_image()])
    assert arena["img"].initiator_request_id == "script"


@pytest.mark.parametrize(
    "candidates, expected",
    [
        (("a",), "a"),
        (("a", "b"), None),
    ],
)
def test_other_candidates_are_kept_when_nothing_else_matches(candidates, expected) -> None:
    records = [_script_candidate(request_id, "main", resource_type="Other") for request_id in candidates]
    arena = build_requests(records + [_script_initiated_image()])
    assert arena["img"].initiator_request_id == expected


def test_parser_initiated_request_prefers_a_document_initiator() -> None:
    page = "https://example.com/page"
    child = make_request(
        "css",
        "https://example.com/app.css",
        resource_type="Stylesheet",
        frame_id="main",
        renderer_start_time=100.0,
        initiator=Initiator(type="parser", url=page),
    )
    document = make_request(
        "page-doc", page, resource_type="Document", frame_id="main",
        response_headers_end_time=50.0, network_end_time=80.0,
    )
    script = make_request(
        "page-script", page, resource_type="Script", frame_id="main",
        response_headers_end_time=50.0, network_end_time=80.0,
    )
    arena = build_requests([script, document, child])
    assert arena["css"].initiator_request_id == "page-doc"


def test_script_initiated_request_does_not_prefer_documents() -> None:
    page = "https://example.com/page"
    child = make_request(
        "xhr",
        "https://example.com/api",
        resource_type="XHR",
        frame_id="main",
        renderer_start_time=100.0,
        initiator=Initiator(type="script", url=page),
    )
    document = make_request("page-doc", page, resource_type="Document", frame_id="main")
    script = make_request("page-script", page, resource_type="Script", frame_id="main")
    arena = build_requests([script, document, child])
    assert arena["xhr"].initiator_request_id is None


def test_network_nodes_depend_on_their_initiator() -> None:
    doc = make_document(network_end_time=100.0)
    script = make_request(
        "script",
        "https://cdn.example.com/app.js",
        renderer_start_time=60.0,
        initiator=Initiator(type="parser", url="https://example.com/"),
    )
    image = make_request(
        "image",
        "https://cdn.example.com/hero.png",
        resource_type="Image",
        renderer_start_time=200.0,
        initiator=Initiator(
            type="script",
            stack=StackTrace(call_frames=(CallFrame(url="https://cdn.example.com/app.js"),)),
        ),
    )
    graph = create_graph([], [doc, script, image], "https://example.com/")

    assert graph.id == "doc"
    assert graph.is_main_document
    assert _ids(find_node(graph, "script").dependencies) == ["doc"]
    assert _ids(find_node(graph, "image").dependencies) == ["script"]


def test_unrelated_requests_hang_off_the_root() -> None:
    doc = make_document()
    beacon = make_request("beacon", "https://stats.example.com/b", initiator=Initiator(type="other"), renderer_start_time=30.0)
    graph = create_graph([], [doc, beacon], "https://example.com/")
    assert _ids(find_node(graph, "beacon").dependencies) == ["doc"]


def test_missing_root_request_is_an_error() -> None:
    with pytest.raises(GraphConstructionError) as excinfo:
        create_graph([], [make_document()], "https://elsewhere.test/")
    assert excinfo.value.code == "NO_ROOT_REQUEST"


def test_cpu_tasks_absorb_children_and_truncate_on_overlap() -> None:
    events = make_task(0.0, 50.0, make_event("Layout", 10.0, 5.0)) + make_task(40.0, 30.0)
    first, second = get_cpu_nodes(events)
    assert [e.name for e in first.child_events] == ["Layout"]
    assert first.did_perform_layout()
    assert first.end_time == pytest.approx(40.0 - 0.001)
    assert second.end_time == pytest.approx(70.0)


def test_events_without_top_level_tasks_are_rejected() -> None:
    with pytest.raises(GraphConstructionError):
        get_cpu_nodes([make_event("Layout", 10.0, 5.0)])


def test_cpu_nodes_link_to_script_and_timer_installers() -> None:
    doc = make_document(network_end_time=100.0)
    script = make_request(
        "script",
        "https://example.com/app.js",
        renderer_start_time=50.0,
        network_end_time=150.0,
        initiator=Initiator(type="parser", url="https://example.com/"),
    )
    events = (
        make_task(160.0, 40.0, make_event("EvaluateScript", 161.0, 30.0, url="https://example.com/app.js"),
                  make_event("TimerInstall", 170.0, timerId=7))
        + make_task(300.0, 20.0, make_event("TimerFire", 301.0, timerId=7))
    )
    graph = create_graph(events, [doc, script], "https://example.com/")

    evaluate = find_node(graph, "1.160")
    timer = find_node(graph, "1.300")
    assert evaluate.type is NodeType.CPU
    assert _ids(evaluate.dependencies) == ["script"]
    assert [dep.id for dep in timer.dependencies] == ["1.160"]


def test_short_cpu_tasks_are_pruned() -> None:
    doc = make_document(network_end_time=100.0)
    events = make_task(150.0, 2.0, make_event("FunctionCall", 150.5, 1.0, frame="f")) + make_task(
        200.0, 2.0, make_event("Paint", 200.5, 1.0)
    )
    graph = create_graph(events, [doc], "https://example.com/")
    ids = _ids(all_nodes(graph))
    # The first paint task survives pruning even though it is short.
    assert ids == ["1.200", "doc"]


def test_script_initiated_request_depends_on_both_script_and_its_task() -> None:
    """A request issued while a script runs waits on both the script download and the task."""

    doc = make_document(network_end_time=100.0)
    script = make_request(
        "S",
        "https://example.com/app.js",
        renderer_start_time=50.0,
        response_headers_end_time=150.0,
        network_end_time=200.0,
        initiator=Initiator(type="parser", url="https://example.com/"),
    )
    xhr = make_request(
        "R",
        "https://api.example.com/data",
        resource_type="XHR",
        renderer_start_time=230.0,
        initiator=Initiator(
            type="script",
            stack=StackTrace(call_frames=(CallFrame(url="https://example.com/app.js"),)),
        ),
    )
    events = make_task(
        210.0,
        30.0,
        make_event("EvaluateScript", 211.0, 20.0, url="https://example.com/app.js"),
        make_event("ResourceSendRequest", 220.0, requestId="R"),
    )
    graph = create_graph(events, [doc, script, xhr], "https://example.com/")

    assert _ids(find_node(graph, "R").dependencies) == ["1.210", "S"]
    assert _ids(find_node(graph, "1.210").dependencies) == ["S"]


def test_clone_with_predicate_keeps_dependencies() -> None:
    doc = make_document(network_end_time=100.0)
    script = make_request("script", "https://example.com/app.js", renderer_start_time=60.0,
                          initiator=Initiator(type="parser", url="https://example.com/"))
    image = make_request("image", "https://example.com/a.png", resource_type="Image", renderer_start_time=70.0,
                         initiator=Initiator(type="parser", url="https://example.com/"))
    graph = create_graph([], [doc, script, image], "https://example.com/")

    clone = clone_with_relationships(graph, lambda node: node.id == "script")
    assert clone is not graph
    assert _ids(all_nodes(clone)) == ["doc", "script"]
    # The original graph is untouched.
    assert _ids(all_nodes(graph)) == ["doc", "image", "script"]
