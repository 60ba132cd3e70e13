"""DNS cache and per-origin connection pools used during simulation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

import simpy
from simpy.events import Event

from ..constants import (
    DEFAULT_MAX_CONNECTIONS_PER_ORIGIN,
    DEFAULT_SERVER_RESPONSE_TIME_MS,
    DNS_RESOLUTION_RTT_MULTIPLIER,
)
from ..trace.types import NetworkRequest
from .analyzer import estimate_if_connection_was_reused, group_by_origin
from .fabric import OrderedResource

logger = logging.getLogger(__name__)


class DNSCache:
    """Tracks when each host finished (or will finish) resolving."""

    def __init__(self, rtt: float) -> None:
        self.rtt = float(rtt)
        self._resolved_at: Dict[str, float] = {}

    def time_until_resolution(
        self,
        request: NetworkRequest,
        *,
        requested_at: float,
        update_cache: bool = True,
    ) -> float:
        host = request.parsed_url.host if request.parsed_url else request.url
        time_until_resolved = self.rtt * DNS_RESOLUTION_RTT_MULTIPLIER
        resolved_at = self._resolved_at.get(host)
        if resolved_at is not None:
            time_until_resolved = min(max(resolved_at - requested_at, 0.0), time_until_resolved)
        if update_cache:
            finish = requested_at + time_until_resolved
            previous = self._resolved_at.get(host)
            if previous is None or finish < previous:
                self._resolved_at[host] = finish
        return time_until_resolved


@dataclass(eq=False)
class Connection:
    origin: str
    rtt: float
    server_response_time: float
    secure: bool
    multiplexed: bool
    connection_id: Optional[int] = None
    warm: bool = False
    # Set while the first user performs the handshake; later users wait on it.
    opening: Optional[Event] = None

    @property
    def handshake_ms(self) -> float:
        # TCP, plus one more round trip for TLS.
        return self.rtt * (2 if self.secure else 1)


class _OriginConnections:
    def __init__(self, env: simpy.Environment, connections: List[Connection], pinned: bool) -> None:
        self.connections = connections
        self.multiplexed = connections[0].multiplexed
        self.pinned = pinned and not self.multiplexed
        self.by_id = {c.connection_id: c for c in connections if c.connection_id is not None}
        self.idle: List[Connection] = list(connections)
        self.exclusive: Dict[Connection, OrderedResource] = {}
        self.shared: Optional[OrderedResource] = None
        if self.pinned:
            self.exclusive = {c: OrderedResource(env, 1) for c in connections}
        elif not self.multiplexed:
            self.shared = OrderedResource(env, len(connections))

    def take_idle(self) -> Connection:
        for index, connection in enumerate(self.idle):
            if connection.warm:
                return self.idle.pop(index)
        return self.idle.pop(0)


class ConnectionPool:
    """Connections per origin, sized from what the observed requests used.

    HTTP/2 origins get a single multiplexed connection. HTTP/1.x origins get
    one exclusive connection per observed fresh connection; with
    ``pin_observed_connections`` every request is held to the connection id it
    used in the log, otherwise the pool is padded up to
    ``max_connections_per_origin`` and any idle connection (warm first) serves.
    """

    def __init__(
        self,
        env: simpy.Environment,
        records: Iterable[NetworkRequest],
        *,
        rtt: float,
        additional_rtt_by_origin: Optional[Mapping[str, float]] = None,
        server_response_time_by_origin: Optional[Mapping[str, float]] = None,
        max_connections_per_origin: int = DEFAULT_MAX_CONNECTIONS_PER_ORIGIN,
        pin_observed_connections: bool = False,
    ) -> None:
        self.env = env
        self.rtt = float(rtt)
        self.additional_rtt_by_origin = dict(additional_rtt_by_origin or {})
        self.server_response_time_by_origin = dict(server_response_time_by_origin or {})
        self.max_connections_per_origin = max(1, int(max_connections_per_origin))
        self.pin_observed_connections = pin_observed_connections
        self._records = [record for record in records if record.parsed_url is not None]
        self._reused = estimate_if_connection_was_reused(self._records)
        self._grouped = group_by_origin(self._records)
        self._origins: Dict[str, _OriginConnections] = {}

    def _create(self, origin: str, records: List[NetworkRequest]) -> _OriginConnections:
        rtt = self.rtt + self.additional_rtt_by_origin.get(origin, 0.0)
        srt = self.server_response_time_by_origin.get(origin, DEFAULT_SERVER_RESPONSE_TIME_MS)
        secure = records[0].is_secure
        multiplexed = any(record.is_h2 for record in records)

        def make(connection_id: Optional[int]) -> Connection:
            return Connection(origin, rtt, srt, secure, multiplexed, connection_id)

        if multiplexed:
            connections = [make(records[0].connection_id)]
        elif self.pin_observed_connections:
            ids: List[Optional[int]] = []
            for record in records:
                if record.connection_id not in ids:
                    ids.append(record.connection_id)
            connections = [make(connection_id) for connection_id in ids]
        else:
            fresh = sum(1 for record in records if not self._reused.get(record.request_id, False))
            count = max(fresh, self.max_connections_per_origin, 1)
            connections = [make(None) for _ in range(count)]
        logger.debug(
            "origin %s: %d connection(s), multiplexed=%s rtt=%.1f srt=%.1f",
            origin,
            len(connections),
            multiplexed,
            rtt,
            srt,
        )
        return _OriginConnections(self.env, connections, self.pin_observed_connections)

    def _origin(self, request: NetworkRequest) -> _OriginConnections:
        origin = request.origin
        pool = self._origins.get(origin)
        if pool is None:
            pool = self._create(origin, self._grouped.get(origin) or [request])
            self._origins[origin] = pool
        return pool

    def acquire(self, request: NetworkRequest, key: Any):
        """Process generator that returns the connection ``request`` will use."""

        pool = self._origin(request)
        if pool.multiplexed:
            return pool.connections[0]
        if pool.pinned:
            connection = pool.by_id.get(request.connection_id, pool.connections[0])
            yield pool.exclusive[connection].request(key)
            return connection
        assert pool.shared is not None
        yield pool.shared.request(key)
        return pool.take_idle()

    def release(self, request: NetworkRequest, connection: Connection) -> None:
        pool = self._origin(request)
        if pool.multiplexed:
            return
        if pool.pinned:
            pool.exclusive[connection].release()
            return
        assert pool.shared is not None
        pool.idle.append(connection)
        pool.shared.release()

    def connections_for(self, origin: str) -> List[Connection]:
        pool = self._origins.get(origin)
        return list(pool.connections) if pool else []
