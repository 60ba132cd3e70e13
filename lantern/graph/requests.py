"""Prepare observed requests for graph construction.

Records are validated, redirect chains are expanded into one record per hop,
and each record's initiating request is resolved. Relationships are stored as
request ids and looked up through a :class:`RequestArena`.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import replace
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from ..constants import ResourceType
from ..errors import GraphConstructionError
from ..trace.types import NetworkRequest, StackTrace, parse_url

logger = logging.getLogger(__name__)

REDIRECT_SUFFIX = ":redirect"
DUPLICATE_SUFFIX = ":duplicate"


class RequestArena:
    """Requests indexed by id, in insertion order."""

    def __init__(self, requests: Iterable[NetworkRequest] = ()) -> None:
        self._by_id: Dict[str, NetworkRequest] = {}
        for request in requests:
            self.add(request)

    def add(self, request: NetworkRequest) -> NetworkRequest:
        if request.request_id in self._by_id:
            raise KeyError(f"Duplicate request id {request.request_id}")
        self._by_id[request.request_id] = request
        return request

    def update(self, request: NetworkRequest) -> None:
        if request.request_id not in self._by_id:
            raise KeyError(request.request_id)
        self._by_id[request.request_id] = request

    def get(self, request_id: Optional[str]) -> Optional[NetworkRequest]:
        if request_id is None:
            return None
        return self._by_id.get(request_id)

    def __getitem__(self, request_id: str) -> NetworkRequest:
        return self._by_id[request_id]

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._by_id

    def __iter__(self) -> Iterator[NetworkRequest]:
        return iter(list(self._by_id.values()))

    def __len__(self) -> int:
        return len(self._by_id)

    def redirect_source(self, request: NetworkRequest) -> Optional[NetworkRequest]:
        return self.get(request.redirect_source_id)

    def redirect_destination(self, request: NetworkRequest) -> Optional[NetworkRequest]:
        return self.get(request.redirect_destination_id)

    def initiator_request(self, request: NetworkRequest) -> Optional[NetworkRequest]:
        return self.get(request.initiator_request_id)

    def redirects(self, request: NetworkRequest) -> List[NetworkRequest]:
        return [self._by_id[request_id] for request_id in request.redirect_ids if request_id in self._by_id]


def validate_request(request: NetworkRequest) -> None:
    missing = []
    if request.connection_id is None:
        missing.append("connection_id")
    if request.connection_reused is None:
        missing.append("connection_reused")
    if request.timing is None:
        missing.append("timing")
    if missing:
        raise GraphConstructionError(
            f"Trace is too old or incompatible: request {request.request_id} has no {', '.join(missing)}",
            code="INCOMPATIBLE_TRACE",
            details={"request_id": request.request_id, "missing": missing},
        )


def expand_redirects(request: NetworkRequest) -> List[NetworkRequest]:
    """Split a request with redirect hops into one record per hop plus the final one.

    Hop ``i`` keeps the original id with ``i`` ``:redirect`` suffixes; the final
    request gets one more suffix than the last hop.
    """

    hops = request.redirects
    if not hops:
        return [request]

    ids = [request.request_id]
    for _ in hops[1:]:
        ids.append(ids[-1] + REDIRECT_SUFFIX)
    final_id = ids[-1] + REDIRECT_SUFFIX

    chain: List[NetworkRequest] = []
    start = request.renderer_start_time
    for index, hop in enumerate(hops):
        parsed = parse_url(hop.url) if hop.url else None
        chain.append(
            replace(
                request,
                request_id=ids[index],
                url=hop.url if parsed is not None else request.url,
                parsed_url=parsed if parsed is not None else request.parsed_url,
                renderer_start_time=start,
                network_request_time=max(start, min(request.network_request_time, hop.ts)),
                response_headers_end_time=min(request.response_headers_end_time, hop.ts),
                network_end_time=hop.ts,
                redirects=(),
                redirect_ids=(),
                redirect_source_id=ids[index - 1] if index else None,
                redirect_destination_id=ids[index + 1] if index + 1 < len(hops) else final_id,
            )
        )
        start = max(start, hop.ts)

    final = replace(
        request,
        request_id=final_id,
        renderer_start_time=max(request.renderer_start_time, start),
        network_request_time=max(request.network_request_time, start),
        redirect_source_id=ids[-1],
        redirect_destination_id=None,
        redirect_ids=tuple(ids),
    )
    chain.append(final)
    return chain


def _stack_urls(stack: Optional[StackTrace], urls: List[str]) -> None:
    while stack is not None:
        for frame in stack.call_frames:
            if frame.url and frame.url not in urls:
                urls.append(frame.url)
        stack = stack.parent


def get_network_initiators(request: NetworkRequest) -> List[str]:
    """URLs that may have caused ``request``: the initiator url or the script stack."""

    initiator = request.initiator
    if initiator.url:
        return [initiator.url]
    urls: List[str] = []
    if initiator.type == "script":
        _stack_urls(initiator.stack, urls)
    return urls


def _narrow(candidates: List[NetworkRequest], keep: Callable[[NetworkRequest], bool]) -> List[NetworkRequest]:
    if len(candidates) <= 1:
        return candidates
    narrowed = [candidate for candidate in candidates if keep(candidate)]
    return narrowed or candidates


def choose_initiator_request(
    request: NetworkRequest,
    requests_by_url: Dict[str, List[NetworkRequest]],
    arena: RequestArena,
) -> Optional[NetworkRequest]:
    """Pick the request that initiated ``request``, or None when ambiguous."""

    if request.redirect_source_id is not None:
        return arena.get(request.redirect_source_id)

    initiators = get_network_initiators(request)
    if not initiators:
        return None

    candidates = [
        candidate
        for candidate in requests_by_url.get(initiators[0], [])
        if candidate.request_id != request.request_id
        and candidate.response_headers_end_time < request.renderer_start_time
        and candidate.finished
        and not candidate.failed
    ]
    candidates = _narrow(candidates, lambda c: c.resource_type != ResourceType.OTHER)
    candidates = _narrow(candidates, lambda c: c.frame_id == request.frame_id)
    if request.initiator.type == "parser":
        candidates = _narrow(candidates, lambda c: c.resource_type == ResourceType.DOCUMENT)
    if len(candidates) > 1:
        # A link preload was followed by a cache hit; the preload is the initiator.
        preloads = [c for c in candidates if c.is_link_preload]
        others = [c for c in candidates if not c.is_link_preload]
        if preloads and others and all(c.from_cache for c in others):
            candidates = preloads
    return candidates[0] if len(candidates) == 1 else None


def link_initiators(arena: RequestArena) -> RequestArena:
    requests_by_url: Dict[str, List[NetworkRequest]] = defaultdict(list)
    for request in arena:
        requests_by_url[request.url].append(request)

    for request in arena:
        initiator = choose_initiator_request(request, requests_by_url, arena)
        if initiator is not None:
            arena.update(replace(request, initiator_request_id=initiator.request_id))
    return arena


def build_requests(records: Sequence[NetworkRequest]) -> RequestArena:
    """Validate, expand and link ``records`` into a :class:`RequestArena`."""

    for record in records:
        validate_request(record)

    arena = RequestArena()
    for record in records:
        if record.parsed_url is None:
            logger.debug("skipping request %s with unparseable url %r", record.request_id, record.url)
            continue
        for request in expand_redirects(record):
            request_id = request.request_id
            while request_id in arena:
                request_id += DUPLICATE_SUFFIX
            if request_id != request.request_id:
                logger.debug("request id %s seen twice, stored as %s", request.request_id, request_id)
                request = replace(request, request_id=request_id)
            arena.add(request)
    return link_initiators(arena)
