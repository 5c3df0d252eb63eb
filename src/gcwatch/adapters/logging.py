"""Python logging handler feeding the engine's diagnostics buffer.

Records emitted by the ``gcwatch`` loggers (evaluation timeouts, rejected
definitions, dispatch failures) are copied into a LogStoragePort so they
can be read back through the ``/logs`` endpoint.
"""

import logging
import traceback

from gcwatch.core.models import LogEntry
from gcwatch.core.ports import LogStoragePort

# Standard LogRecord attributes that should not be treated as extra fields
_STANDARD_LOGRECORD_ATTRS = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
    }
)

_DEFAULT_INCLUDE_ATTRS = ["logger", "funcName", "lineno"]


class DiagnosticsHandler(logging.Handler):
    """Logging handler that writes log records to a LogStoragePort.

    Example:
        ```python
        from gcwatch import DiagnosticsHandler, RingBufferLogStorage

        storage = RingBufferLogStorage(max_size=500)
        logging.getLogger("gcwatch").addHandler(DiagnosticsHandler(storage))
        ```
    """

    def __init__(
        self,
        storage: LogStoragePort,
        include_attrs: list[str] | None = None,
        level: int = logging.NOTSET,
    ) -> None:
        """Initialize the handler with a log storage backend.

        Args:
            storage: Storage adapter implementing LogStoragePort.
            include_attrs: LogRecord attributes to include. Defaults to
                ["logger", "funcName", "lineno"].
            level: Minimum level to record.
        """
        super().__init__(level)
        self._storage = storage
        self._include_attrs = include_attrs or _DEFAULT_INCLUDE_ATTRS

    @property
    def storage(self) -> LogStoragePort:
        return self._storage

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = self._to_entry(record)
            self._storage.write(entry)
        except Exception:  # noqa: BLE001
            self.handleError(record)

    def _to_entry(self, record: logging.LogRecord) -> LogEntry:
        attr_mapping: dict[str, str | int | float | bool] = {
            "logger": record.name,
            "module": record.module,
            "funcName": record.funcName or "",
            "lineno": record.lineno,
            "pathname": record.pathname,
        }
        attributes: dict[str, str | int | float | bool] = {
            key: attr_mapping[key] for key in self._include_attrs if key in attr_mapping
        }

        # Extra fields passed via ``extra=``
        for key, value in record.__dict__.items():
            if key not in _STANDARD_LOGRECORD_ATTRS and isinstance(
                value, (str, int, float, bool)
            ):
                attributes[key] = value

        if record.exc_info:
            exc_type, exc_value, exc_tb = record.exc_info
            if exc_type is not None:
                attributes["exc_type"] = exc_type.__name__
            if exc_value is not None:
                attributes["exc_message"] = str(exc_value)
            if exc_tb is not None:
                attributes["exc_traceback"] = "".join(
                    traceback.format_exception(exc_type, exc_value, exc_tb)
                )

        return LogEntry(
            timestamp=record.created,
            level=record.levelname,
            message=record.getMessage(),
            attributes=attributes,
        )
