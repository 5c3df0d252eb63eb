"""Ring buffer storage adapter for diagnostics logs.

Provides bounded in-memory storage that automatically evicts oldest
entries when the buffer is full. The engine keeps its own diagnostics
here so the query interface can serve them without unbounded growth.
"""

import threading
from collections import deque
from collections.abc import Iterable

from gcwatch.core.models import LogEntry


class RingBufferLogStorage:
    """Ring buffer implementation of LogStoragePort.

    Stores log entries in a fixed-size circular buffer. When the buffer
    is full, the oldest entry is automatically evicted to make room for
    new entries.

    Args:
        max_size: Maximum number of entries to store.
    """

    def __init__(self, max_size: int = 1000) -> None:
        self._buffer: deque[LogEntry] = deque(maxlen=max_size)
        self._lock = threading.Lock()

    def write(self, entry: LogEntry) -> None:
        """Write a log entry to storage."""
        with self._lock:
            self._buffer.append(entry)

    def read(self, since: float = 0, level: str | None = None) -> Iterable[LogEntry]:
        """Read log entries since the given timestamp.

        Returns entries with timestamp > since, ordered by timestamp ascending.
        """
        with self._lock:
            snapshot = list(self._buffer)
        filtered = [e for e in snapshot if e.timestamp > since]
        if level is not None:
            filtered = [e for e in filtered if e.level.upper() == level.upper()]
        return sorted(filtered, key=lambda e: e.timestamp)

    def count(self) -> int:
        """Return number of buffered entries."""
        return len(self._buffer)
