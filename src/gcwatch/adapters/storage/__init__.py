"""Storage adapters implementing core ports."""

from gcwatch.adapters.storage.in_memory import InMemorySeriesStorage, SeriesView
from gcwatch.adapters.storage.ring_buffer import RingBufferLogStorage
from gcwatch.adapters.storage.sqlite_checkpoint import SQLiteCheckpointStorage

__all__ = [
    "InMemorySeriesStorage",
    "RingBufferLogStorage",
    "SQLiteCheckpointStorage",
    "SeriesView",
]
