# ============================================================================
# Pitboss -- Flight Recorder (pitboss/monitoring/flight_recorder.py)
# ============================================================================
#
# WHAT IS A FLIGHT RECORDER?
#   Like an airplane's "black box," it keeps the most recent structured
#   log events in memory. When an Issue shows up, the query surface can
#   rewind and show exactly which lines arrived just before it, or answer
#   "how many errors in the last hour" without re-reading log files.
#
# HOW IT WORKS:
#   - Circular buffer (deque with maxlen); new events push out old ones
#   - Thread-safe: every ingestion thread records into the same buffer
#   - Stores LogEvent objects as-is (they already carry a timestamp)
#
# MEMORY USAGE:
#   ~2000 events * ~600 bytes/event = ~1.2 MB.
# ============================================================================

from __future__ import annotations

import threading
from collections import deque
from typing import Optional, List, Iterable

from ..core.models import LogEvent


class FlightRecorder:
    """
    In-memory circular buffer of recent LogEvents.

    Usage:
        recorder = FlightRecorder(max_events=2000)
        recorder.record(event)
        recent = recorder.get_recent(50)
        trace = recorder.get_trace_around(issue.first_seen, window_seconds=30)
    """

    def __init__(self, max_events: int = 2000):
        self._buffer: deque = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._event_count = 0

    def record(self, event: LogEvent) -> LogEvent:
        with self._lock:
            self._buffer.append(event)
            self._event_count += 1
        return event

    def _events(self) -> List[LogEvent]:
        with self._lock:
            return list(self._buffer)

    def get_recent(self, n: int = 50) -> List[LogEvent]:
        """The N most recent events, newest first."""
        events = self._events()
        return list(reversed(events[-n:])) if n > 0 else []

    def get_trace_around(
        self,
        center_time: float,
        window_seconds: float = 30.0,
    ) -> List[LogEvent]:
        """
        Events within +/- window_seconds of center_time, oldest first.

        This is the "rewind" function: when an Issue appears at time T,
        call this to see everything from T-30s to T+30s.
        """
        return [
            e for e in self._events()
            if abs(e.timestamp - center_time) <= window_seconds
        ]

    def search(
        self,
        text: str = "",
        levels: Optional[Iterable[str]] = None,
        since: Optional[float] = None,
        source: Optional[str] = None,
        limit: int = 100,
    ) -> List[LogEvent]:
        """Events matching all given filters, newest first."""
        wanted = {lvl.upper() for lvl in levels} if levels else None
        needle = text.lower()
        hits = []
        for e in reversed(self._events()):
            if since is not None and e.timestamp < since:
                continue
            if wanted is not None and e.level not in wanted:
                continue
            if source is not None and e.source != source:
                continue
            if needle and needle not in e.message.lower():
                continue
            hits.append(e)
            if len(hits) >= limit:
                break
        return hits

    def clear(self) -> None:
        """Clear all events from the buffer. Useful for testing."""
        with self._lock:
            self._buffer.clear()
            self._event_count = 0

    @property
    def size(self) -> int:
        """Current number of events in the buffer."""
        return len(self._buffer)

    @property
    def total_recorded(self) -> int:
        return self._event_count
