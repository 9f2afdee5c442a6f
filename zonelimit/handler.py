"""HTTP rate limiting middleware built from named rate limit zones."""

from __future__ import annotations

import logging
import random
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from zonelimit.distributed import (
    DistributedRateLimiting,
    FileStorage,
    MemoryStorage,
    Storage,
    StorageError,
)
from zonelimit.durations import parse_duration
from zonelimit.metrics import MetricsCollector, register_metrics
from zonelimit.ratelimit import MatcherSet, RateLimit, Request, ZoneRegistry, any_match
from zonelimit.ringbuffer import now

DEFAULT_SYNC_INTERVAL = 5.0
DEFAULT_SWEEP_INTERVAL = 60.0
EXCEEDED_EVENT = "rate_limit_exceeded"
EXCEEDED_NAME_PLACEHOLDER = "http.rate_limit.exceeded.name"

_HEADER_PREFIX = "http.request.header."
_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")

_logger = logging.getLogger(__name__)

# Zones persist here across handler reconfigurations.
ZONES = ZoneRegistry()


def _split_host_port(address: str) -> Tuple[str, str]:
    if address.startswith("["):
        end = address.find("]")
        if end == -1 or not address[end + 1:].startswith(":"):
            raise ValueError(f"missing port in address {address!r}")
        return address[1:end], address[end + 2:]
    host, sep, port = address.rpartition(":")
    if not sep or ":" in host:
        raise ValueError(f"missing port in address {address!r}")
    return host, port


def _host_and_port(address: str) -> Tuple[str, str]:
    try:
        return _split_host_port(address)
    except ValueError:
        return address, ""


class Replacer:
    """Expands ``{placeholder}`` names in strings from a set of known values."""

    def __init__(self, values: Optional[Mapping[str, str]] = None) -> None:
        self._values: Dict[str, str] = {}
        for key, value in (values or {}).items():
            self.set(key, value)

    @classmethod
    def for_request(cls, request: Request) -> "Replacer":
        """Build a replacer holding the common request placeholders."""
        host, port = _host_and_port(request.host)
        remote_host, remote_port = _host_and_port(request.remote_addr)
        uri = f"{request.path}?{request.query}" if request.query else request.path
        replacer = cls(
            {
                "http.request.method": request.method,
                "http.request.uri": uri,
                "http.request.uri.path": request.path,
                "http.request.uri.query": request.query,
                "http.request.orig_uri": uri,
                "http.request.orig_uri.path": request.path,
                "http.request.orig_uri.query": request.query,
                "http.request.host": host,
                "http.request.port": port,
                "http.request.hostport": request.host,
                "http.request.remote": request.remote_addr,
                "http.request.remote.host": remote_host,
                "http.request.remote.port": remote_port,
            }
        )
        for name, value in request.headers.items():
            replacer.set(_HEADER_PREFIX + name, value)
        return replacer

    @staticmethod
    def _normalize(key: str) -> str:
        if key.startswith(_HEADER_PREFIX):
            return _HEADER_PREFIX + key[len(_HEADER_PREFIX):].lower()
        return key

    def set(self, key: str, value: Any) -> None:
        """Give ``key`` the value ``value``."""
        self._values[self._normalize(key)] = str(value)

    def get(self, key: str) -> Optional[str]:
        """Return the value of ``key``, or ``None`` if it is unknown."""
        return self._values.get(self._normalize(key))

    def replace_all(self, text: str, empty: str) -> str:
        """Expand every placeholder; unknown ones become ``empty``."""

        def substitute(match: "re.Match[str]") -> str:
            value = self.get(match.group(1))
            return empty if value is None else value

        return _PLACEHOLDER.sub(substitute, text)


class RateLimitExceeded(Exception):
    """A request was refused because a rate limit zone is full (HTTP 429)."""

    status_code = 429

    def __init__(
        self, zone: str, key: str, wait: float, remote_ip: str, replacer: Replacer
    ) -> None:
        super().__init__(f"rate limit exceeded in zone {zone!r}")
        self.zone = zone
        self.key = key
        self.wait = wait
        self.remote_ip = remote_ip
        self.replacer = replacer
        # adding 0.5 before rounding makes this a ceiling
        self.retry_after = format(wait + 0.5, ".0f")

    @property
    def headers(self) -> Dict[str, str]:
        return {"Retry-After": self.retry_after}


def _duration(value: Any, name: str) -> float:
    """Read a duration given as a string like ``60s`` or as seconds."""
    if isinstance(value, bool):
        raise ValueError(f"invalid {name}: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return parse_duration(value)
        except ValueError as exc:
            raise ValueError(f"invalid {name} {value!r}: {exc}") from exc
    raise ValueError(f"invalid {name}: {value!r}")


def _reject_unknown(data: Mapping[str, Any], known: Iterable[str], where: str) -> None:
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ValueError(f"unknown field(s) in {where}: {', '.join(unknown)}")


def _zone_from_dict(name: str, data: Mapping[str, Any]) -> RateLimit:
    _reject_unknown(data, ("match", "key", "window", "max_events"), f"zone {name}")
    max_events = data.get("max_events", 0)
    if isinstance(max_events, bool) or not isinstance(max_events, int):
        raise ValueError(f"invalid max_events in zone {name}: {max_events!r}")
    return RateLimit(
        key=str(data.get("key", "")),
        max_events=max_events,
        window=_duration(data.get("window", 0), "window"),
        match=[MatcherSet.from_dict(matcher) for matcher in data.get("match", [])],
    )


def _storage_from_dict(data: Mapping[str, Any]) -> Storage:
    module = data.get("module")
    if module == "file_system":
        _reject_unknown(data, ("module", "root"), "storage")
        if "root" not in data:
            raise ValueError("file_system storage requires a root")
        return FileStorage(data["root"])
    if module == "memory":
        _reject_unknown(data, ("module",), "storage")
        return MemoryStorage()
    raise ValueError(f"unknown storage module {module!r}")


def _distributed_from_dict(data: Mapping[str, Any]) -> DistributedRateLimiting:
    fields = ("write_interval", "read_interval", "purge_age", "instance_id")
    _reject_unknown(data, fields, "distributed")
    options: Dict[str, Any] = {
        name: _duration(data[name], name) for name in fields[:3] if name in data
    }
    if "instance_id" in data:
        options["instance_id"] = str(data["instance_id"])
    return DistributedRateLimiting(**options)


def _request_from_environ(environ: Mapping[str, Any]) -> Request:
    headers: Dict[str, str] = {}
    for name, value in environ.items():
        if name.startswith("HTTP_"):
            headers[name[5:].replace("_", "-").title()] = str(value)
    for name in ("CONTENT_TYPE", "CONTENT_LENGTH"):
        if environ.get(name):
            headers[name.replace("_", "-").title()] = str(environ[name])
    remote = str(environ.get("REMOTE_ADDR", ""))
    if environ.get("REMOTE_PORT"):
        remote_host = f"[{remote}]" if ":" in remote else remote
        remote = f"{remote_host}:{environ['REMOTE_PORT']}"
    host = environ.get("HTTP_HOST") or environ.get("SERVER_NAME", "")
    path = f"{environ.get('SCRIPT_NAME', '')}{environ.get('PATH_INFO', '')}" or "/"
    return Request(
        method=str(environ.get("REQUEST_METHOD", "GET")),
        path=path,
        host=str(host),
        headers=headers,
        remote_addr=remote,
        query=str(environ.get("QUERY_STRING", "")),
    )


EventListener = Callable[[str, Dict[str, Any]], None]


@dataclass
class Handler:
    """Rate limits requests by zone; refused requests raise :class:`RateLimitExceeded`.

    Zone names must be unique within ``registry``. Durations are in seconds.
    """

    rate_limits: Dict[str, RateLimit] = field(default_factory=dict)
    jitter: float = 0.0
    sweep_interval: float = 0.0
    distributed: Optional[DistributedRateLimiting] = None
    storage: Optional[Storage] = None
    log_key: bool = False
    registry: ZoneRegistry = field(default_factory=lambda: ZONES, repr=False)
    listeners: List[EventListener] = field(default_factory=list, repr=False)
    _limits: List[RateLimit] = field(default_factory=list, init=False, repr=False)
    _metrics: Optional[MetricsCollector] = field(default=None, init=False, repr=False)
    _random: Optional[random.Random] = field(default=None, init=False, repr=False)
    _storage: Optional[Storage] = field(default=None, init=False, repr=False)
    _stop: Optional[threading.Event] = field(default=None, init=False, repr=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Handler":
        """Build a handler from a JSON-style configuration mapping."""
        known = (
            "handler",
            "rate_limits",
            "jitter",
            "sweep_interval",
            "distributed",
            "storage",
            "log_key",
        )
        _reject_unknown(data, known, "handler")
        if data.get("handler", "rate_limit") != "rate_limit":
            raise ValueError(f"not a rate_limit handler: {data['handler']!r}")
        handler = cls(
            rate_limits={
                name: _zone_from_dict(name, zone)
                for name, zone in data.get("rate_limits", {}).items()
            },
            jitter=float(data.get("jitter", 0.0)),
            sweep_interval=_duration(data.get("sweep_interval", 0), "sweep_interval"),
            log_key=bool(data.get("log_key", False)),
        )
        if data.get("distributed") is not None:
            handler.distributed = _distributed_from_dict(data["distributed"])
        if data.get("storage") is not None:
            handler.storage = _storage_from_dict(data["storage"])
        return handler

    def provision(
        self,
        storage: Optional[Storage] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        """Set up zones, metrics and background work.

        ``storage`` is used unless the handler configures its own; background
        threads stop when ``stop_event`` is set or :meth:`cleanup` is called.
        """
        if self.jitter < 0:
            raise ValueError("jitter must be at least zero")
        if self.sweep_interval < 0:
            raise ValueError("sweep interval must be at least zero")

        self._metrics = MetricsCollector()
        register_metrics()
        self._storage = self.storage or storage or MemoryStorage()
        self._stop = stop_event or threading.Event()

        limits = []
        for name, zone in self.rate_limits.items():
            try:
                zone.provision(name, self.registry)
            except ValueError as exc:
                raise ValueError(f"setting up rate limit {name}: {exc}") from exc
            limits.append(zone)
            self._metrics.record_config(name, zone.max_events, zone.window)
        self._limits = sorted(limits, key=RateLimit.permissiveness, reverse=True)

        if self.distributed is not None:
            distributed = self.distributed
            if distributed.read_interval < 0 or distributed.write_interval < 0:
                raise ValueError("sync intervals must be at least zero")
            if distributed.read_interval == 0:
                distributed.read_interval = DEFAULT_SYNC_INTERVAL
            if distributed.write_interval == 0:
                distributed.write_interval = DEFAULT_SYNC_INTERVAL
            try:
                distributed.sync_read(self._storage)
            except StorageError as exc:
                _logger.error("gathering initial rate limiter states: %s", exc)
            self._start(
                "rate-limit-sync",
                distributed.run,
                self._storage,
                self.registry,
                self._stop,
            )

        self._random = random.Random(now()) if self.jitter > 0 else None

        if self.sweep_interval == 0:
            self.sweep_interval = DEFAULT_SWEEP_INTERVAL
        self._start("rate-limit-sweep", self._sweep_loop)

    def _start(self, name: str, target: Callable[..., None], *args: Any) -> None:
        threading.Thread(target=target, args=args, name=name, daemon=True).start()

    def _sweep_loop(self) -> None:
        assert self._stop is not None
        while not self._stop.wait(self.sweep_interval):
            self.sweep()

    def serve(self, request: Request, next_handler: Callable[[Request], Any]) -> Any:
        """Apply every matching zone, then return what ``next_handler`` returns."""
        if self._metrics is None:
            raise RuntimeError("handler is not provisioned")
        metrics = self._metrics
        started = time.perf_counter()
        replacer = Replacer.for_request(request)

        last_zone: Optional[str] = None
        last_key = ""
        for zone in self._limits:
            if not any_match(zone.match, request):
                continue
            assert zone.limiters_map is not None
            last_zone = zone.zone_name
            key = replacer.replace_all(zone.key, "")
            last_key = key
            limiter = zone.limiters_map.get_or_insert(key, zone.max_events, zone.window)

            if self.distributed is None:
                wait: Optional[float] = limiter.when()
                if wait is not None and wait <= 0:
                    wait = None
            else:
                wait = self.distributed.check(limiter, key, zone.zone_name)

            if wait is not None:
                metrics.record_declined_request(zone.zone_name, key)
                metrics.record_request_per_key(zone.zone_name, key)
                metrics.record_process_time_per_key(
                    time.perf_counter() - started, zone.zone_name, key
                )
                raise self._exceeded(request, replacer, zone.zone_name, key, wait)

            metrics.update_keys_count(zone.zone_name, len(zone.limiters_map))

        elapsed = time.perf_counter() - started
        if last_zone is not None:
            metrics.record_request_per_key(last_zone, last_key)
            metrics.record_process_time_per_key(elapsed, last_zone, last_key)
        else:
            metrics.record_request(False)
            metrics.record_process_time(elapsed, False)

        return next_handler(request)

    def _exceeded(
        self, request: Request, replacer: Replacer, zone: str, key: str, wait: float
    ) -> RateLimitExceeded:
        if self._random is not None:
            wait += self._random.random() * wait * self.jitter

        remote_ip, _ = _host_and_port(request.remote_addr)
        if self.log_key:
            _logger.info(
                "rate limit exceeded: zone=%s wait=%.3fs remote_ip=%s key=%s",
                zone, wait, remote_ip, key,
            )
        else:
            _logger.info(
                "rate limit exceeded: zone=%s wait=%.3fs remote_ip=%s", zone, wait, remote_ip
            )

        event = {"zone": zone, "wait": wait, "remote_ip": remote_ip}
        for listener in self.listeners:
            listener(EXCEEDED_EVENT, dict(event))

        replacer.set(EXCEEDED_NAME_PLACEHOLDER, zone)
        return RateLimitExceeded(zone, key, wait, remote_ip, replacer)

    def sweep(self) -> None:
        """Forget expired limiters in every zone and refresh key counts."""
        for zone_name, limiters in self.registry.items():
            limiters.sweep()
            if self._metrics is not None and self._metrics.enabled:
                self._metrics.update_keys_count(zone_name, len(limiters))

    def cleanup(self) -> None:
        """Release this handler's zones and stop its background threads."""
        for name in self.rate_limits:
            self.registry.delete(name)
        if self._stop is not None:
            self._stop.set()

    def wsgi_app(self, app: Callable[..., Iterable[bytes]]) -> Callable[..., Iterable[bytes]]:
        """Wrap a WSGI application so requests pass through rate limiting."""

        def middleware(environ: Dict[str, Any], start_response: Callable[..., Any]):
            request = _request_from_environ(environ)
            try:
                return self.serve(request, lambda _request: app(environ, start_response))
            except RateLimitExceeded as exc:
                start_response(
                    "429 Too Many Requests",
                    [("Retry-After", exc.retry_after), ("Content-Length", "0")],
                )
                return [b""]

        return middleware