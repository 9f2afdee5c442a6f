"""Distributed rate limiting: sharing limiter state between instances through storage."""

from __future__ import annotations

import abc
import json
import logging
import os
import shutil
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

from zonelimit.ringbuffer import RingBufferRateLimiter, now

if TYPE_CHECKING:
    from zonelimit.ratelimit import ZoneRegistry

STORAGE_PREFIX = "rate_limit/instances"

_logger = logging.getLogger(__name__)


class StorageError(Exception):
    """A storage backend could not complete an operation."""


class Storage(abc.ABC):
    """A key-value store with slash-separated keys."""

    @abc.abstractmethod
    def store(self, key: str, value: bytes) -> None:
        """Save ``value`` under ``key``, replacing any previous value."""

    @abc.abstractmethod
    def load(self, key: str) -> bytes:
        """Return the value under ``key``; raise :class:`StorageError` if absent."""

    @abc.abstractmethod
    def list(self, prefix: str) -> List[str]:
        """Return the keys directly below ``prefix``."""

    @abc.abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key`` and everything below it; absent keys are ignored."""


def _key_parts(key: str) -> List[str]:
    parts = [part for part in key.split("/") if part]
    if any(part in (".", "..") for part in parts):
        raise StorageError(f"invalid storage key {key!r}")
    return parts


class FileStorage(Storage):
    """Storage in a directory tree on the local file system."""

    def __init__(self, path: "str | os.PathLike[str]") -> None:
        self.path = Path(path)

    def __repr__(self) -> str:
        return f"FileStorage({str(self.path)!r})"

    def _file(self, key: str) -> Path:
        return self.path.joinpath(*_key_parts(key))

    def store(self, key: str, value: bytes) -> None:
        target = self._file(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=target.parent, delete=False) as handle:
                handle.write(value)
                temporary = handle.name
            os.replace(temporary, target)
        except OSError as exc:
            raise StorageError(f"storing {key}: {exc}") from exc

    def load(self, key: str) -> bytes:
        try:
            return self._file(key).read_bytes()
        except FileNotFoundError as exc:
            raise StorageError(f"{key}: not found") from exc
        except OSError as exc:
            raise StorageError(f"loading {key}: {exc}") from exc

    def list(self, prefix: str) -> List[str]:
        directory = self._file(prefix)
        if not directory.is_dir():
            return []
        base = "/".join(_key_parts(prefix))
        try:
            names = sorted(entry.name for entry in directory.iterdir())
        except OSError as exc:
            raise StorageError(f"listing {prefix}: {exc}") from exc
        return [f"{base}/{name}" if base else name for name in names]

    def delete(self, key: str) -> None:
        target = self._file(key)
        try:
            if target.is_dir():
                shutil.rmtree(target)
            else:
                target.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"deleting {key}: {exc}") from exc


class MemoryStorage(Storage):
    """Storage held in a dictionary; useful for a single process and for tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: Dict[str, bytes] = {}

    def store(self, key: str, value: bytes) -> None:
        normalized = "/".join(_key_parts(key))
        with self._lock:
            self._values[normalized] = bytes(value)

    def load(self, key: str) -> bytes:
        normalized = "/".join(_key_parts(key))
        with self._lock:
            try:
                return self._values[normalized]
            except KeyError:
                raise StorageError(f"{key}: not found") from None

    def list(self, prefix: str) -> List[str]:
        base = "/".join(_key_parts(prefix))
        lead = f"{base}/" if base else ""
        with self._lock:
            children = {
                lead + stored[len(lead):].split("/", 1)[0]
                for stored in self._values
                if stored.startswith(lead) and stored != base
            }
        return sorted(children)

    def delete(self, key: str) -> None:
        normalized = "/".join(_key_parts(key))
        with self._lock:
            doomed = [
                stored
                for stored in self._values
                if stored == normalized or stored.startswith(normalized + "/")
            ]
            for stored in doomed:
                del self._values[stored]


@dataclass(frozen=True)
class RLStateValue:
    """Events within the window of one limiter and the oldest of them."""

    count: int
    oldest_event: Optional[float]


_EMPTY_VALUE = RLStateValue(0, None)


@dataclass
class RLState:
    """Snapshot of every limiter of one instance, by zone and key."""

    timestamp: float
    zones: Dict[str, Dict[str, RLStateValue]] = field(default_factory=dict)

    def encode(self) -> bytes:
        """Serialize the state for storage."""
        document = {
            "timestamp": self.timestamp,
            "zones": {
                zone: {
                    key: {"count": value.count, "oldest_event": value.oldest_event}
                    for key, value in limiters.items()
                }
                for zone, limiters in self.zones.items()
            },
        }
        return json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8")

    @classmethod
    def decode(cls, data: bytes) -> "RLState":
        """Read a state written by :meth:`encode`; raise ``ValueError`` if corrupted."""
        try:
            document = json.loads(data)
            timestamp = float(document["timestamp"])
            zones = {
                str(zone): {
                    str(key): RLStateValue(
                        int(value["count"]),
                        None if value["oldest_event"] is None else float(value["oldest_event"]),
                    )
                    for key, value in limiters.items()
                }
                for zone, limiters in document["zones"].items()
            }
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise ValueError(f"corrupted rate limiter state: {exc}") from exc
        return cls(timestamp, zones)


def write_rate_limit_state(state: RLState, instance_id: str, storage: Storage) -> None:
    """Store ``state`` as the state file of ``instance_id``."""
    storage.store(f"{STORAGE_PREFIX}/{instance_id}.rlstate", state.encode())


def _next_tick(scheduled: float, interval: float, current: float) -> float:
    missed = int((current - scheduled) // interval) + 1
    return scheduled + missed * interval


@dataclass
class DistributedRateLimiting:
    """Shares limiter state with other instances that use the same storage.

    Intervals and ages are in seconds; a ``purge_age`` of 0 never purges.
    """

    write_interval: float = 0.0
    read_interval: float = 0.0
    purge_age: float = 0.0
    instance_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    other_states: List[RLState] = field(default_factory=list, repr=False, compare=False)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def sync_read(self, storage: Storage) -> None:
        """Load the states of all other instances, purging stale ones."""
        files = storage.list(STORAGE_PREFIX)
        if not files:
            return
        own_file = f"{self.instance_id}.rlstate"
        states: List[RLState] = []
        for name in files:
            if name.endswith(own_file):
                continue
            try:
                encoded = storage.load(name)
            except StorageError as exc:
                _logger.error("unable to load distributed rate limiter state %s: %s", name, exc)
                continue
            try:
                state = RLState.decode(encoded)
            except ValueError as exc:
                _logger.error("corrupted rate limiter state file %s: %s", name, exc)
                continue
            if self.purge_age and state.timestamp < now() - self.purge_age:
                try:
                    storage.delete(name)
                except StorageError as exc:
                    _logger.error("cannot delete stale rate limiter state file %s: %s", name, exc)
                continue
            states.append(state)
        with self._lock:
            self.other_states = states

    def sync_write(self, storage: Storage, registry: "ZoneRegistry") -> None:
        """Store the state of every zone in ``registry`` as this instance's state."""
        timestamp = now()
        state = RLState(
            timestamp,
            {name: limiters.state_for_zone(timestamp) for name, limiters in registry.items()},
        )
        write_rate_limit_state(state, self.instance_id, storage)

    def check(
        self, limiter: RingBufferRateLimiter, key: str, zone_name: str
    ) -> Optional[float]:
        """Count this event against the whole cluster.

        Returns ``None`` and reserves a slot in ``limiter`` when the event is
        allowed; otherwise returns the seconds to wait before retrying.
        """
        max_allowed = limiter.max_events()
        window = limiter.window()
        with self._lock:
            states = self.other_states

        total = 0
        oldest = now()
        for state in states:
            if state.timestamp < now() - window:
                continue
            zone = state.zones.get(zone_name)
            if zone is None:
                continue
            value = zone.get(key, _EMPTY_VALUE)
            total += value.count
            if (
                value.oldest_event is not None
                and value.oldest_event < oldest
                and value.oldest_event > now() - window
            ):
                oldest = value.oldest_event
            if total >= max_allowed:
                return oldest + window - now()

        with limiter.lock:
            count, oldest_local = limiter.count_unsynced(now())
            total += count
            if (
                oldest_local is not None
                and oldest_local < oldest
                and oldest_local > now() - window
            ):
                oldest = oldest_local
            if total < max_allowed:
                limiter.reserve()
                return None
        return oldest + window - now()

    def run(
        self, storage: Storage, registry: "ZoneRegistry", stop_event: threading.Event
    ) -> None:
        """Read and write state on their intervals until ``stop_event`` is set."""
        if self.read_interval <= 0 or self.write_interval <= 0:
            raise ValueError("sync intervals must be greater than zero")
        start = time.monotonic()
        next_read = start + self.read_interval
        next_write = start + self.write_interval
        while True:
            timeout = max(0.0, min(next_read, next_write) - time.monotonic())
            if stop_event.wait(timeout):
                return
            current = time.monotonic()
            if current >= next_read:
                try:
                    self.sync_read(storage)
                except StorageError as exc:
                    _logger.error("syncing distributed limiter states: %s", exc)
                next_read = _next_tick(next_read, self.read_interval, current)
            if current >= next_write:
                try:
                    self.sync_write(storage, registry)
                except StorageError as exc:
                    _logger.error("distributing internal state: %s", exc)
                next_write = _next_tick(next_write, self.write_interval, current)