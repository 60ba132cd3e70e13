"""SimPy primitives shared by the simulated network and CPU."""

from __future__ import annotations

import heapq
import math
import weakref
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Tuple

import simpy
from simpy.events import Event

_EPSILON_BYTES = 1e-6


def _bps_to_bytes_per_ms(bits_per_second: float) -> float:
    """Convert bits/second to bytes/millisecond."""
    if bits_per_second <= 0:
        return 0.0
    if math.isinf(bits_per_second):
        return math.inf
    return bits_per_second / 8.0 / 1000.0


class _InstantDispatcher:
    """Runs queued dispatches one at a time, each once nothing else is left at ``env.now``."""

    def __init__(self, env: simpy.Environment) -> None:
        # Weak, so the registry below does not keep environments alive.
        self._env = weakref.ref(env)
        self._pending: Deque[Callable[[], None]] = deque()
        self._armed = False

    @property
    def env(self) -> simpy.Environment:
        env = self._env()
        if env is None:
            raise RuntimeError("environment was garbage collected")
        return env

    def defer(self, dispatch: Callable[[], None]) -> None:
        self._pending.append(dispatch)
        self._arm()

    def _arm(self) -> None:
        if self._armed or not self._pending:
            return
        self._armed = True
        self.env.timeout(0).callbacks.append(self._run)

    def _run(self, _event: Event) -> None:
        self._armed = False
        if self.env.peek() == self.env.now:
            # Other events are still queued for this instant.
            self._arm()
            return
        self._pending.popleft()()
        self._arm()


_dispatchers: "weakref.WeakKeyDictionary[simpy.Environment, _InstantDispatcher]" = weakref.WeakKeyDictionary()


def _dispatcher_for(env: simpy.Environment) -> _InstantDispatcher:
    dispatcher = _dispatchers.get(env)
    if dispatcher is None:
        dispatcher = _dispatchers[env] = _InstantDispatcher(env)
    return dispatcher


class OrderedResource:
    """Capacity-limited resource granting waiters strictly by sort key.

    Unlike ``simpy.PriorityResource`` a request is never granted on arrival:
    grants happen once per instant after all same-time arrivals are queued, so
    requests that become ready together are admitted in key order.
    """

    def __init__(self, env: simpy.Environment, capacity: int = 1) -> None:
        self.env = env
        self.capacity = max(1, int(capacity))
        self.users = 0
        self._waiting: List[Tuple[Any, int, Event]] = []
        self._sequence = 0
        self._dispatch_pending = False

    def request(self, key: Any) -> Event:
        grant = self.env.event()
        self._sequence += 1
        heapq.heappush(self._waiting, (key, self._sequence, grant))
        self._schedule_dispatch()
        return grant

    def release(self) -> None:
        if self.users <= 0:
            raise RuntimeError("release() without a matching grant")
        self.users -= 1
        self._schedule_dispatch()

    @property
    def queue_len(self) -> int:
        return len(self._waiting)

    def _schedule_dispatch(self) -> None:
        if self._dispatch_pending:
            return
        self._dispatch_pending = True
        _dispatcher_for(self.env).defer(self._dispatch)

    def _dispatch(self) -> None:
        self._dispatch_pending = False
        while self._waiting and self.users < self.capacity:
            _, _, grant = heapq.heappop(self._waiting)
            self.users += 1
            grant.succeed()


@dataclass
class LinkStats:
    transfers: int = 0
    transfer_ms: float = 0.0
    bytes: float = 0.0
    peak_concurrency: int = 0

    def record(self, transfer_time: float, payload_bytes: float) -> None:
        self.transfers += 1
        self.transfer_ms += max(0.0, transfer_time)
        self.bytes += max(0.0, payload_bytes)


class SharedLink:
    """Client downlink whose throughput is split equally among active downloads."""

    def __init__(self, env: simpy.Environment, throughput_bps: float) -> None:
        self.env = env
        self.bandwidth_bytes_per_ms = _bps_to_bytes_per_ms(float(throughput_bps))
        self.stats = LinkStats()
        self._remaining: Dict[str, float] = {}
        self._last_update = env.now
        self._changed = env.event()

    @property
    def active(self) -> int:
        return len(self._remaining)

    def _share(self) -> float:
        return self.bandwidth_bytes_per_ms / max(1, len(self._remaining))

    def _settle(self) -> None:
        elapsed = self.env.now - self._last_update
        if elapsed > 0 and self._remaining:
            progress = self._share() * elapsed
            for key in self._remaining:
                self._remaining[key] -= progress
        self._last_update = self.env.now

    def _notify(self) -> None:
        changed, self._changed = self._changed, self.env.event()
        changed.succeed()

    def transfer(self, key: str, payload_bytes: float):
        """Process generator downloading ``payload_bytes``; use with ``yield from``."""

        if payload_bytes <= 0 or math.isinf(self.bandwidth_bytes_per_ms):
            return
        if self.bandwidth_bytes_per_ms <= 0:
            raise ValueError("throughput must be positive to download bytes")

        started = self.env.now
        self._settle()
        self._remaining[key] = float(payload_bytes)
        self.stats.peak_concurrency = max(self.stats.peak_concurrency, len(self._remaining))
        self._notify()
        while self._remaining[key] > _EPSILON_BYTES:
            wait = self._remaining[key] / self._share()
            yield self.env.timeout(wait) | self._changed
            self._settle()
        del self._remaining[key]
        self._notify()
        self.stats.record(self.env.now - started, payload_bytes)
