from __future__ import annotations

import contextvars
import json
import logging
import os
import queue
import time
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from typing import Any

_LOG_CONTEXT: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "worker_manager_log_ctx", default={}
)
_RESERVED_LOG_RECORD_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "message",
    "taskName",
}
_LOG_QUEUE: queue.SimpleQueue[logging.LogRecord] = queue.SimpleQueue()
_LOG_LISTENER: QueueListener | None = None
_LOG_DIR: Path | None = None
DEFAULT_LOG_DIR = Path.home() / ".worker-manager" / "logs"
LOG_FILE_NAME = "worker-manager.log"


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _LOG_CONTEXT.get({}).items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields become top-level keys."""

    def _normalize(self, value: Any) -> Any:
        if value is None or isinstance(value, (str, int, float, bool)):
            return value
        if isinstance(value, dict):
            return {str(k): self._normalize(v) for k, v in value.items()}
        if isinstance(value, (list, tuple, set, frozenset)):
            return [self._normalize(v) for v in value]
        return str(value)

    def format(self, record: logging.LogRecord) -> str:
        timestamp = time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
        payload: dict[str, Any] = {
            "timestamp": f"{timestamp}.{int(record.msecs):03d}Z",
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED_LOG_RECORD_ATTRS or key in payload or value is None:
                continue
            payload[key] = self._normalize(value)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["exception"] = record.exc_text
        return json.dumps(payload, ensure_ascii=False)


class _QueueMessageFormatter(logging.Formatter):
    # QueueHandler.prepare() drops exc_info; keep the traceback in exc_text only.
    def format(self, record: logging.LogRecord) -> str:
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        return record.getMessage()


def _resolve_log_dir(explicit: str | Path | None = None) -> Path:
    if explicit:
        return Path(explicit).expanduser()
    raw = os.getenv("WORKER_MANAGER_LOG_DIR")
    if raw:
        return Path(raw).expanduser()
    return DEFAULT_LOG_DIR


def _resolve_level(level: int | str | None) -> int:
    if level is None:
        level = os.getenv("WORKER_MANAGER_LOG_LEVEL", "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    level: int | str | None = None,
    log_dir: str | Path | None = None,
    *,
    file_logging: bool = True,
) -> logging.Logger:
    global _LOG_LISTENER, _LOG_DIR
    formatter = StructuredFormatter()
    context_filter = ContextFilter()
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers: list[logging.Handler] = [console_handler]
    if file_logging:
        target_dir = _resolve_log_dir(log_dir)
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                target_dir / LOG_FILE_NAME, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
            )
        except OSError as exc:
            logging.getLogger("worker-manager").warning(
                "File logging disabled (%s): %s", target_dir, exc
            )
        else:
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
            _LOG_DIR = target_dir
    root = logging.getLogger()
    queue_handler = QueueHandler(_LOG_QUEUE)
    queue_handler.addFilter(context_filter)
    queue_handler.setFormatter(_QueueMessageFormatter())
    root.handlers = [queue_handler]
    root.setLevel(_resolve_level(level))
    if _LOG_LISTENER:
        _LOG_LISTENER.stop()
    listener = QueueListener(_LOG_QUEUE, *handlers, respect_handler_level=True)
    listener.start()
    _LOG_LISTENER = listener
    return logging.getLogger("worker-manager")


def push_log_context(**kwargs: Any) -> contextvars.Token:
    context = dict(_LOG_CONTEXT.get({}))
    for key, value in kwargs.items():
        if value is not None:
            context[key] = value
    return _LOG_CONTEXT.set(context)


def pop_log_context(token: contextvars.Token) -> None:
    _LOG_CONTEXT.reset(token)


def current_log_context() -> dict[str, Any]:
    return dict(_LOG_CONTEXT.get({}))


def shutdown_logging() -> None:
    global _LOG_LISTENER
    if _LOG_LISTENER:
        _LOG_LISTENER.stop()
        _LOG_LISTENER = None


def get_log_dir() -> Path:
    if _LOG_DIR:
        return _LOG_DIR
    return DEFAULT_LOG_DIR
