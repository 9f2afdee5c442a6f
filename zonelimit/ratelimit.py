"""Rate limit zones: request matching, per-key limiter maps and a shared zone registry."""

from __future__ import annotations

import fnmatch
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from zonelimit.distributed import RLStateValue
from zonelimit.ringbuffer import RingBufferRateLimiter, now


@dataclass
class Request:
    """The parts of an HTTP request that rate limiting looks at."""

    method: str = "GET"
    path: str = "/"
    host: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    remote_addr: str = ""
    query: str = ""


def _header_value(request: Request, name: str) -> Optional[str]:
    wanted = name.lower()
    for header, value in request.headers.items():
        if header.lower() == wanted:
            return value
    return None


def _bare_host(host: str) -> str:
    host = host.lower()
    if host.startswith("["):
        closing = host.find("]")
        return host[1:closing] if closing != -1 else host
    return host.split(":", 1)[0]


def _as_tuple(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    return tuple(str(item) for item in value)


@dataclass
class MatcherSet:
    """A set of matchers that must all match a request.

    Within each matcher any one of the listed values is enough. An empty
    matcher set matches every request.
    """

    methods: Sequence[str] = ()
    paths: Sequence[str] = ()
    hosts: Sequence[str] = ()
    headers: Mapping[str, Sequence[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.methods = tuple(method.upper() for method in _as_tuple(self.methods))
        self.paths = _as_tuple(self.paths)
        self.hosts = tuple(_bare_host(host) for host in _as_tuple(self.hosts))
        self.headers = {
            name.lower(): _as_tuple(values) for name, values in dict(self.headers).items()
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MatcherSet":
        """Build a matcher set from a mapping with method, path, host and header keys."""
        known = {"method": "methods", "path": "paths", "host": "hosts", "header": "headers"}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ValueError(f"unknown matcher(s): {', '.join(unknown)}")
        return cls(**{known[name]: value for name, value in data.items()})

    def matches(self, request: Request) -> bool:
        """Return whether the request satisfies every matcher in the set."""
        if self.methods and request.method.upper() not in self.methods:
            return False
        if self.paths:
            path = request.path.lower()
            if not any(fnmatch.fnmatchcase(path, pattern.lower()) for pattern in self.paths):
                return False
        if self.hosts and _bare_host(request.host) not in self.hosts:
            return False
        for name, values in self.headers.items():
            actual = _header_value(request, name)
            if actual is None:
                return False
            if values and not any(fnmatch.fnmatchcase(actual, value) for value in values):
                return False
        return True


def any_match(matcher_sets: Iterable[MatcherSet], request: Request) -> bool:
    """Return whether any matcher set matches; no matcher sets match everything."""
    sets = list(matcher_sets)
    return not sets or any(matcher_set.matches(request) for matcher_set in sets)


class RateLimitersMap:
    """The rate limiters of one zone, keyed by rate limit key."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self._limiters: Dict[str, RingBufferRateLimiter] = {}

    def __len__(self) -> int:
        with self.lock:
            return len(self._limiters)

    def __contains__(self, key: object) -> bool:
        with self.lock:
            return key in self._limiters

    def get_or_insert(self, key: str, max_events: int, window: float) -> RingBufferRateLimiter:
        """Return the limiter for ``key``, creating it with these settings if absent."""
        with self.lock:
            limiter = self._limiters.get(key)
            if limiter is None:
                limiter = RingBufferRateLimiter(max_events, window)
                self._limiters[key] = limiter
            return limiter

    def update_all(self, max_events: int, window: float) -> None:
        """Apply new settings to every existing limiter."""
        with self.lock:
            for limiter in self._limiters.values():
                limiter.update(max_events, window)

    def sweep(self) -> None:
        """Forget limiters whose events have all fallen out of their window."""
        with self.lock:
            expired = [key for key, limiter in self._limiters.items() if _is_expired(limiter)]
            for key in expired:
                del self._limiters[key]

    def state_for_zone(self, timestamp: float) -> Dict[str, RLStateValue]:
        """Return the count and oldest event of every limiter as of ``timestamp``."""
        with self.lock:
            return {
                key: RLStateValue(*limiter.count(timestamp))
                for key, limiter in self._limiters.items()
            }


def _is_expired(limiter: RingBufferRateLimiter) -> bool:
    if limiter.max_events() == 0:
        return True
    newest = limiter.newest_event()
    if newest is None:
        return True
    return newest + limiter.window() < now()


class ZoneRegistry:
    """Reference-counted store of zone limiter maps that outlives reconfiguration."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, List[Any]] = {}

    def load_or_store(self, name: str, value: Any) -> Tuple[Any, bool]:
        """Return the stored value and ``True``, or store ``value`` and return it with ``False``."""
        with self._lock:
            entry = self._entries.get(name)
            if entry is not None:
                entry[1] += 1
                return entry[0], True
            self._entries[name] = [value, 1]
            return value, False

    def delete(self, name: str) -> bool:
        """Drop one reference to ``name``; return whether the entry was removed."""
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                return False
            entry[1] -= 1
            if entry[1] <= 0:
                del self._entries[name]
                return True
            return False

    def items(self) -> List[Tuple[str, Any]]:
        """Return a snapshot of the stored names and values."""
        with self._lock:
            return [(name, entry[0]) for name, entry in self._entries.items()]


@dataclass
class RateLimit:
    """An HTTP rate limit zone: which requests it covers and how many it allows."""

    key: str = ""
    max_events: int = 0
    window: float = 0.0
    match: List[MatcherSet] = field(default_factory=list)
    zone_name: str = field(default="", init=False)
    limiters_map: Optional[RateLimitersMap] = field(default=None, init=False, repr=False)

    def provision(self, name: str, registry: ZoneRegistry) -> None:
        """Validate the zone and attach it to the limiter map kept in ``registry``."""
        if self.window <= 0:
            raise ValueError("window must be greater than zero")
        if self.max_events < 0:
            raise ValueError("max_events must be at least zero")
        self.zone_name = name
        limiters, _ = registry.load_or_store(name, RateLimitersMap())
        self.limiters_map = limiters
        limiters.update_all(self.max_events, self.window)

    def permissiveness(self) -> float:
        """Events allowed per second; lower means a tighter limit."""
        return self.max_events / self.window