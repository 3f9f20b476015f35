"""Python logging handler adapter for obsfly.

This adapter bridges Python's standard library logging module to the event
store's log stream, so the engine's own log records can be queried like any
other telemetry.
"""

import logging
import socket
import traceback

from obsfly.core.models import EventKind, LogRecord
from obsfly.core.ports import SyncEventWriter

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

# Default attributes copied from the LogRecord into labels
_DEFAULT_INCLUDE_ATTRS = ["logger", "funcName", "lineno"]


class EventStoreLogHandler(logging.Handler):
    """Logging handler that writes records to the store's log stream.

    Each record becomes a ``LogRecord`` event: the level becomes
    ``severity_text``, the formatted message becomes ``body`` and extra
    attributes become string labels.

    Example:
        ```python
        from obsfly.adapters.logging import EventStoreLogHandler
        from obsfly.adapters.storage import SQLiteEventStore

        store = SQLiteEventStore("obsfly.db")
        handler = EventStoreLogHandler(store, account_id=1, service_name="obsfly")
        logging.getLogger("obsfly").addHandler(handler)
        ```
    """

    def __init__(
        self,
        writer: SyncEventWriter,
        account_id: int,
        service_name: str = "obsfly",
        include_attrs: list[str] | None = None,
        retention_days: int = 30,
    ) -> None:
        """Initialize the handler with a synchronous event writer.

        Args:
            writer: Store adapter implementing SyncEventWriter.
            account_id: Account the records are stored under.
            service_name: Service name stamped on every record.
            include_attrs: LogRecord attributes to copy into labels. Defaults
                to ["logger", "funcName", "lineno"].
            retention_days: Retention of the stored records.
        """
        super().__init__()
        self._writer = writer
        self._account_id = account_id
        self._service_name = service_name
        self._include_attrs = include_attrs or _DEFAULT_INCLUDE_ATTRS
        self._retention_days = retention_days
        self._host_name = socket.gethostname()

    def _labels(self, record: logging.LogRecord) -> dict[str, str]:
        attr_mapping: dict[str, str | int] = {
            "logger": record.name,
            "funcName": record.funcName or "",
            "lineno": record.lineno,
            "pathname": record.pathname,
        }
        labels = {
            key: str(attr_mapping[key])
            for key in self._include_attrs
            if key in attr_mapping
        }

        # Extra attributes passed via the logging call
        for key, value in record.__dict__.items():
            if key not in _STANDARD_LOGRECORD_ATTRS and isinstance(
                value, (str, int, float, bool)
            ):
                labels[key] = str(value)

        if record.exc_info:
            exc_type, exc_value, exc_tb = record.exc_info
            if exc_type is not None:
                labels["exc_type"] = exc_type.__name__
            if exc_value is not None:
                labels["exc_message"] = str(exc_value)
            if exc_tb is not None:
                labels["exc_traceback"] = "".join(
                    traceback.format_exception(exc_type, exc_value, exc_tb)
                )
        return labels

    def emit(self, record: logging.LogRecord) -> None:
        """Write one log record to the store.

        Args:
            record: The log record to emit.
        """
        try:
            event = LogRecord(
                account_id=self._account_id,
                timestamp=record.created,
                service_name=self._service_name,
                host_name=self._host_name,
                labels=self._labels(record),
                retention_days=self._retention_days,
                severity_text=record.levelname,
                body=record.getMessage(),
                trace_id=str(getattr(record, "trace_id", "") or ""),
            )
            self._writer.insert_batch_sync(EventKind.LOG, [event])
        except Exception:
            self.handleError(record)
