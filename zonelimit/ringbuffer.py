"""Sliding-window rate limiter backed by a ring of event timestamps."""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional, Tuple

# Marks a slot in the ring that has never held an event.
_NEVER = float("-inf")

_clock: Callable[[], float] = time.time


def now() -> float:
    """Return the current time in seconds, from the configured clock."""
    return _clock()


def set_clock(func: Optional[Callable[[], float]]) -> None:
    """Replace the clock used by :func:`now`; ``None`` restores the system clock."""
    global _clock
    _clock = time.time if func is None else func


class RingBufferRateLimiter:
    """Allows at most ``max_events`` events within a sliding ``window`` (seconds).

    With ``max_events`` of 0 no events are allowed. ``lock`` guards the ring;
    :meth:`count_unsynced` and :meth:`reserve` expect the caller to hold it.
    """

    def __init__(self, max_events: int, window: float) -> None:
        if max_events < 0:
            raise ValueError("max_events cannot be less than zero")
        if window < 0:
            raise ValueError("window cannot be less than zero")
        self.lock = threading.Lock()
        self._window = float(window)
        self._ring = [_NEVER] * max_events
        self._cursor = 0  # always the oldest timestamp

    def __repr__(self) -> str:
        return f"RingBufferRateLimiter(max_events={len(self._ring)}, window={self._window})"

    def when(self) -> float:
        """Seconds until the next allowed event; 0 means allowed and reserved."""
        with self.lock:
            if self._allowed():
                return 0.0
            if not self._ring:
                return self._window
            return self._ring[self._cursor] + self._window - now()

    def _allowed(self) -> bool:
        if not self._ring:
            return False
        if now() - self._ring[self._cursor] > self._window:
            self.reserve()
            return True
        return False

    def reserve(self) -> None:
        """Record an event now in the oldest slot and advance the cursor."""
        self._ring[self._cursor] = now()
        self._cursor = (self._cursor + 1) % len(self._ring)

    def max_events(self) -> int:
        """Return the number of events allowed within the window."""
        with self.lock:
            return len(self._ring)

    def window(self) -> float:
        """Return the size of the sliding window in seconds."""
        with self.lock:
            return self._window

    def update(self, max_events: int, window: float) -> None:
        """Change the limit and window.

        When the limit shrinks the oldest events are forgotten and the newest
        kept; when it grows the remembered events are kept in order.
        """
        if max_events < 0:
            raise ValueError("max_events cannot be less than zero")
        if window < 0:
            raise ValueError("window cannot be less than zero")
        with self.lock:
            self._window = float(window)
            if max_events == len(self._ring):
                return
            ordered = self._oldest_first()
            if max_events < len(ordered):
                kept = ordered[len(ordered) - max_events:]
            else:
                kept = ordered + [_NEVER] * (max_events - len(ordered))
            self._ring = kept
            self._cursor = 0

    def _oldest_first(self) -> list:
        return self._ring[self._cursor:] + self._ring[: self._cursor]

    def count(self, ref: float) -> Tuple[int, Optional[float]]:
        """Count events in the window ending at ``ref``.

        Returns the count and the oldest event in the window, or ``None``
        when the window holds no events.
        """
        with self.lock:
            return self.count_unsynced(ref)

    def count_unsynced(self, ref: float) -> Tuple[int, Optional[float]]:
        """Like :meth:`count`, for callers already holding ``lock``."""
        events = self._oldest_first()
        if not events:
            return 0, None
        beginning = ref - self._window
        size = len(events)
        for in_window, stamp in enumerate(reversed(events)):
            if stamp < beginning:
                if in_window == 0:
                    return 0, None
                return in_window, events[size - in_window]
        return size, events[0]

    def newest_event(self) -> Optional[float]:
        """Return the time of the most recent event, or ``None`` if there is none."""
        with self.lock:
            if not self._ring:
                return None
            newest = self._ring[self._cursor - 1]
            return None if newest == _NEVER else newest