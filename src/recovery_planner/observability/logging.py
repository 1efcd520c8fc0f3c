"""Run-scoped JSON-lines logging for the planner.

Each run gets ``<base_log_dir>/<run_id>/planner.jsonl``. Records pass through a
bounded queue so callers never block on disk; when the queue is full the record
is dropped and counted on the handle. Every line carries ``run_id`` plus any
correlation ids (``plan_id``, ``incident_id``, ``route_id``, ``node_id``) bound
through :func:`correlation_scope` or passed as structlog keys; remaining keys
land under ``fields`` after secret redaction.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import math
import queue
import re
import sys
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Final, cast

import structlog

from recovery_planner.domain.models import JSONValue

LogRedactor = Callable[[JSONValue], JSONValue]

REDACTED: Final[str] = "***REDACTED***"
DEFAULT_LOGGER_NAME: Final[str] = "recovery_planner"
DEFAULT_LOG_FILENAME: Final[str] = "planner.jsonl"
DEFAULT_QUEUE_SIZE: Final[int] = 4096

CORRELATION_KEYS: Final[frozenset[str]] = frozenset(
    {"run_id", "plan_id", "incident_id", "route_id", "node_id"}
)

_SECRET_KEY_MARKERS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)

_INLINE_SECRET_RULES: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(
            r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b\s*([:=])\s*"
            r"((?:bearer\s+)?[^\s,;]+)"
        ),
        r"\1\2" + REDACTED,
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), "Bearer " + REDACTED),
)

# Attributes every LogRecord carries; anything else on a record came from ``extra``.
_BUILTIN_RECORD_ATTRS: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.NOTSET, "", 0, "", None, None))
) | {"message", "asctime", "correlation"}

_CORRELATION: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "recovery_planner_correlation", default=()
)


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Settings for one run's log sink; invalid values fail at construction."""

    run_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = DEFAULT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = DEFAULT_QUEUE_SIZE
    log_filename: str = DEFAULT_LOG_FILENAME
    log_to_stdout: bool = False
    redactor: LogRedactor | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "run_id", _require_text(self.run_id, "run_id"))
        object.__setattr__(self, "logger_name", _require_text(self.logger_name, "logger_name"))
        filename = _require_text(self.log_filename, "log_filename")
        if Path(filename).name != filename:
            raise ValueError("log_filename must not include path separators")
        object.__setattr__(self, "log_filename", filename)
        if isinstance(self.queue_size, bool) or not isinstance(self.queue_size, int):
            raise ValueError(f"queue_size must be an integer, got {type(self.queue_size).__name__}")
        if self.queue_size <= 0:
            raise ValueError("queue_size must be > 0")
        object.__setattr__(self, "level", _resolve_level(self.level))

    @property
    def log_path(self) -> Path:
        return Path(self.base_log_dir) / self.run_id / self.log_filename


class _RunQueueHandler(logging.handlers.QueueHandler):
    """Stamps the caller's correlation scope on each record; counts overflow drops."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Runs on the calling thread, where the contextvar is still visible.
        scope = get_correlation_context()
        if scope:
            record.correlation = scope
        return cast("logging.LogRecord", super().prepare(record))

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


class _JsonLineFormatter(logging.Formatter):
    def __init__(self, run_id: str, redactor: LogRedactor) -> None:
        super().__init__()
        self._run_id = run_id
        self._redactor = redactor

    def format(self, record: logging.LogRecord) -> str:
        correlation, fields = _split_record(record)
        line: dict[str, JSONValue] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": self._redactor(record.getMessage()),
            "run_id": self._run_id,
        }
        line.update(correlation)
        if fields:
            line["fields"] = self._redactor(fields)
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class StructuredLoggingHandle:
    """Live logging setup for one run; shut it down when the run ends."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        config: LoggingConfig,
        log_queue: queue.Queue[logging.LogRecord],
        queue_handler: _RunQueueHandler,
        listener: logging.handlers.QueueListener,
    ) -> None:
        self.logger = logger
        self.run_id = config.run_id
        self.log_path = config.log_path
        self._queue = log_queue
        self._queue_handler = queue_handler
        self._listener = listener
        self._lock = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        """Wait up to ``timeout_seconds`` for queued records, then flush the sinks."""
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._listener.handlers:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._listener.handlers:
                sink.close()
            self._closed = True


class _ActiveHandleSlot:
    """The handle that ``flush_logging()``/``shutdown_logging()`` act on by default."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handle: StructuredLoggingHandle | None = None
        self._atexit_registered = False

    def get(self) -> StructuredLoggingHandle | None:
        with self._lock:
            return self._handle

    def set(self, handle: StructuredLoggingHandle) -> None:
        with self._lock:
            self._handle = handle
            if not self._atexit_registered:
                atexit.register(shutdown_logging)
                self._atexit_registered = True

    def clear(self, handle: StructuredLoggingHandle) -> None:
        with self._lock:
            if self._handle is handle:
                self._handle = None


_ACTIVE = _ActiveHandleSlot()


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Route ``config.logger_name`` through a queue into the run's JSONL file.

    Any previously active handle is shut down first; existing handlers on the
    logger are replaced.
    """
    previous = _ACTIVE.get()
    if previous is not None:
        shutdown_logging(previous)

    config.log_path.parent.mkdir(parents=True, exist_ok=True)
    level = cast("int", config.level)
    formatter = _JsonLineFormatter(
        config.run_id,
        config.redactor if config.redactor is not None else default_log_redactor,
    )
    sinks: list[logging.Handler] = [logging.FileHandler(config.log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler(sys.stdout))
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(config.logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _RunQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)

    handle = StructuredLoggingHandle(
        logger=logger,
        config=config,
        log_queue=log_queue,
        queue_handler=queue_handler,
        listener=listener,
    )
    _ACTIVE.set(handle)
    return handle


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = DEFAULT_LOGGER_NAME,
) -> StructuredLoggingHandle:
    """Configure logging from an ``[observability]`` config section.

    Also routes ``structlog`` loggers under ``logger_name`` through the same
    sink, so decision logs from the admission gate and the run loop land in
    ``<log_dir>/<run_id>/planner.jsonl``.
    """
    section = observability_config or {}
    level = section.get("log_level", "INFO")
    base_dir = log_dir if log_dir is not None else section.get("log_dir", "logs")
    handle = setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=base_dir if isinstance(base_dir, (str, Path)) else "logs",
            logger_name=logger_name,
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stdout=bool(section.get("log_to_stdout", False)),
            redactor=None if section.get("redact_secrets", True) else _keep_value,
        )
    )
    configure_structlog()
    return handle


def configure_structlog() -> None:
    """Send ``structlog`` events through stdlib logging as message plus extra fields."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def flush_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    target = handle if handle is not None else _ACTIVE.get()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    """Drain the queue and close every sink of ``handle`` (default: the active one)."""
    target = handle if handle is not None else _ACTIVE.get()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    _ACTIVE.clear(target)


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    return _ACTIVE.get()


def get_correlation_context() -> dict[str, str]:
    return dict(_CORRELATION.get())


@contextmanager
def correlation_scope(**ids: str | None) -> Iterator[None]:
    """Bind correlation ids for records logged inside the block.

    Scopes nest; passing ``None`` hides an outer id until the block exits.
    """
    merged = get_correlation_context()
    for key, value in ids.items():
        if value is None:
            merged.pop(key, None)
            continue
        text = value.strip() if isinstance(value, str) else ""
        if not text:
            raise ValueError(f"correlation value must not be empty: {key}")
        merged[key] = text
    token = _CORRELATION.set(tuple(merged.items()))
    try:
        yield
    finally:
        _CORRELATION.reset(token)


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask values under secret-looking keys and inline credentials, recursively."""
    if isinstance(value, str):
        for pattern, replacement in _INLINE_SECRET_RULES:
            value = pattern.sub(replacement, value)
        return value
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if _is_secret_key(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _keep_value(value: JSONValue) -> JSONValue:
    return value


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_KEY_MARKERS)


def _split_record(record: logging.LogRecord) -> tuple[dict[str, str], dict[str, JSONValue]]:
    """Separate correlation ids from the extra fields attached to ``record``."""
    correlation: dict[str, str] = {}
    scope = getattr(record, "correlation", None)
    if isinstance(scope, Mapping):
        correlation.update(
            (key, value)
            for key, value in scope.items()
            if isinstance(key, str) and isinstance(value, str)
        )

    fields: dict[str, JSONValue] = {}
    for key, value in vars(record).items():
        if key in _BUILTIN_RECORD_ATTRS or key.startswith("_"):
            continue
        if key in CORRELATION_KEYS and isinstance(value, str) and value.strip():
            correlation[key] = value.strip()
        else:
            fields[key] = _to_json(value)
    return correlation, fields


def _to_json(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, Enum):
        return _to_json(value.value)
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
    if isinstance(value, Mapping):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((_to_json(item) for item in value), key=repr)
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    return str(value)


def _require_text(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        raise ValueError(f"{name} must not be empty")
    return text


def _resolve_level(level: object) -> int:
    if isinstance(level, int) and not isinstance(level, bool):
        return level
    if isinstance(level, str):
        resolved = logging.getLevelNamesMapping().get(level.strip().upper())
        if resolved is not None:
            return resolved
    raise ValueError(f"unsupported logging level {level!r}")


__all__ = [
    "CORRELATION_KEYS",
    "DEFAULT_LOGGER_NAME",
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
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
