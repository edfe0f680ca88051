"""Structured logging setup with JSON-lines output, correlation fields, and redaction.

Two layers cooperate:

- stdlib ``logging`` with a non-blocking ``QueueHandler`` feeding a
  ``QueueListener`` that writes canonical JSON lines to a per-run file (and
  optionally stdout);
- ``structlog`` for control-plane decision events. :func:`configure_structlog`
  routes those events into the stdlib pipeline so both share one sink.

Correlation fields (``run_id``, ``iteration``, ``task_id``) live in a context
variable and are stamped on every record emitted inside :func:`correlation_scope`.
"""

from __future__ import annotations

import contextvars
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Final, cast

import structlog

from convergence_orchestrator.domain.models import JSONValue

if TYPE_CHECKING:
    from convergence_orchestrator.config.schema import EngineConfig

LogRedactor = Callable[[JSONValue], JSONValue]

REDACTED: Final[str] = "***REDACTED***"

_CORRELATION_KEYS: Final[frozenset[str]] = frozenset({"run_id", "iteration", "task_id"})
_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
)
_INLINE_SECRET: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")

# Attributes every LogRecord carries; anything else on a record came from ``extra``.
_RESERVED_RECORD_FIELDS: Final[frozenset[str]] = frozenset(
    vars(logging.makeLogRecord({}))
) | {"message", "asctime", "correlation"}

_CORRELATION: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "convergence_correlation", default=()
)

_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Configuration for queue-backed structured logging."""

    run_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = "convergence_orchestrator"
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = "convergence.jsonl"
    log_to_stdout: bool = True
    redactor: LogRedactor | None = None

    @classmethod
    def from_engine_config(
        cls,
        config: EngineConfig,
        *,
        run_id: str,
        root: Path | str | None = None,
    ) -> LoggingConfig:
        """Take level, directory and stdout settings from the ``[observability]`` section.

        A relative ``log_dir`` is resolved against ``root`` when one is given.
        """
        log_dir = Path(config.log_dir)
        if root is not None and not log_dir.is_absolute():
            log_dir = Path(root) / log_dir
        return cls(
            run_id=run_id,
            base_log_dir=log_dir,
            level=config.log_level,
            log_to_stdout=config.log_to_stdout,
        )


class _CorrelatingQueueHandler(logging.handlers.QueueHandler):
    """Stamp the emitting thread's correlation context; count records dropped on overflow."""

    def __init__(self, log_queue: queue.Queue[object]) -> None:
        super().__init__(log_queue)
        self._drop_lock = threading.Lock()
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        record.correlation = _CORRELATION.get()
        return cast("logging.LogRecord", super().prepare(record))

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._drop_lock:
                self.dropped += 1


class _JsonLineFormatter(logging.Formatter):
    def __init__(self, *, redactor: LogRedactor, run_id: str) -> None:
        super().__init__()
        self._redactor = redactor
        self._run_id = run_id

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=UTC)
        event: dict[str, JSONValue] = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": _as_text(self._redactor(record.getMessage())),
            "run_id": self._run_id,
        }
        event.update(getattr(record, "correlation", ()))

        extras = {
            key: value
            for key, value in vars(record).items()
            if key not in _RESERVED_RECORD_FIELDS and not key.startswith("_")
        }
        if extras:
            event["fields"] = self._redactor(_to_json(extras))

        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(slots=True, eq=False)
class StructuredLoggingHandle:
    """Runtime handle for an active structured logging setup."""

    run_id: str
    log_path: Path
    logger: logging.Logger
    queue_handler: _CorrelatingQueueHandler
    listener: logging.handlers.QueueListener
    sinks: tuple[logging.Handler, ...]
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _closed: bool = field(default=False, repr=False)

    @property
    def dropped_records(self) -> int:
        return self.queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        """Wait for the listener to drain queued records, then flush every sink."""
        log_queue = cast("queue.Queue[object]", self.queue_handler.queue)
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while log_queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.005)
        for sink in self.sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self.listener.stop()
            self.logger.removeHandler(self.queue_handler)
            self.queue_handler.close()
            for sink in self.sinks:
                sink.close()
            self._closed = True


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """
    Configure queue-backed structured logging for a single run.

    Records go to ``<base_log_dir>/<run_id>/<log_filename>``. Any previously active
    setup is shut down first.
    """
    shutdown_logging()

    run_id = _non_empty(config.run_id, "run_id")
    logger_name = _non_empty(config.logger_name, "logger_name")
    log_filename = _non_empty(config.log_filename, "log_filename")
    if Path(log_filename).name != log_filename:
        raise ValueError("log_filename must not include path separators")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = parse_log_level(config.level)

    log_path = Path(config.base_log_dir) / run_id / log_filename
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = _JsonLineFormatter(
        redactor=config.redactor or default_log_redactor,
        run_id=run_id,
    )
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    queue_handler = _CorrelatingQueueHandler(queue.Queue(maxsize=config.queue_size))
    listener = logging.handlers.QueueListener(
        queue_handler.queue, *sinks, respect_handler_level=True
    )
    listener.start()
    logger.addHandler(queue_handler)

    handle = StructuredLoggingHandle(
        run_id=run_id,
        log_path=log_path,
        logger=logger,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    global _active
    with _active_lock:
        _active = handle
    return handle


def configure_structlog() -> None:
    """Route structlog events through stdlib logging so they land in the JSON sink.

    Event keyword arguments become the ``fields`` object of each JSON line.
    """
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None,
    *,
    timeout_seconds: float = 2.0,
) -> None:
    """Stop ``handle`` (default: the active one) and close its sinks. Safe to repeat."""
    global _active
    with _active_lock:
        target = handle or _active
        if target is _active:
            _active = None
    if target is not None:
        target.shutdown(timeout_seconds=timeout_seconds)


def flush_logging(*, timeout_seconds: float = 2.0) -> None:
    handle = get_active_logging_handle()
    if handle is not None:
        handle.flush(timeout_seconds=timeout_seconds)


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


def get_correlation_context() -> dict[str, str]:
    return dict(_CORRELATION.get())


@contextmanager
def correlation_scope(**fields: str | int | None) -> Iterator[None]:
    """Temporarily bind correlation fields for log records emitted in scope.

    ``None`` removes a field inherited from an outer scope.
    """
    state = get_correlation_context()
    for key, value in fields.items():
        if key not in _CORRELATION_KEYS:
            raise ValueError(f"unsupported correlation key {key!r}")
        if value is None:
            state.pop(key, None)
        else:
            state[key] = _non_empty(str(value), key)
    token = _CORRELATION.set(tuple(state.items()))
    try:
        yield
    finally:
        _CORRELATION.reset(token)


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask values under secret-looking keys and inline ``key=value``/bearer credentials."""
    if isinstance(value, str):
        masked = _INLINE_SECRET.sub(lambda match: f"{match[1]}{match[2]}{REDACTED}", value)
        return _BEARER.sub(f"Bearer {REDACTED}", masked)
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if _is_sensitive_key(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return level


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(term in lowered for term in _SENSITIVE_KEY_TERMS)


def _non_empty(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value.strip()


def _as_text(value: JSONValue) -> str:
    if isinstance(value, str):
        return value
    return "" if value is None else json.dumps(value, sort_keys=True, separators=(",", ":"))


def _to_json(value: object) -> JSONValue:
    if isinstance(value, Enum):
        value = value.value
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Mapping):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((_to_json(item) for item in value), key=repr)
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    return str(value)


__all__ = [
    "REDACTED",
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "parse_log_level",
    "setup_structured_logging",
    "shutdown_logging",
]
