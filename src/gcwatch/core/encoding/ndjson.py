"""NDJSON encoders for query responses."""

import json
from collections.abc import Iterable
from typing import Any

from gcwatch.core.encoding.records import log_entry_to_dict
from gcwatch.core.models import LogEntry


def encode_ndjson(records: Iterable[dict[str, Any]]) -> str:
    """Encode dicts to newline-delimited JSON.

    Returns:
        NDJSON string with one JSON object per line.
        Empty string if no records.
    """
    lines = [json.dumps(record, default=str) for record in records]
    if not lines:
        return ""
    return "\n".join(lines) + "\n"


def encode_logs(entries: Iterable[LogEntry]) -> str:
    """Encode log entries to newline-delimited JSON."""
    return encode_ndjson(log_entry_to_dict(entry) for entry in entries)


def decode_ndjson(body: str) -> list[Any]:
    """Decode a JSON document or NDJSON stream into a list of values.

    A single JSON array is flattened; blank lines are skipped.

    Raises:
        json.JSONDecodeError: A line is not valid JSON.
    """
    stripped = body.strip()
    if not stripped:
        return []
    if stripped.startswith("["):
        decoded = json.loads(stripped)
        return list(decoded)
    try:
        return [json.loads(stripped)]
    except json.JSONDecodeError:
        if "\n" not in stripped:
            raise
    return [json.loads(line) for line in stripped.splitlines() if line.strip()]
