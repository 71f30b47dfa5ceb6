from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import structlog


SERVICE_NAME = "flag-explorer-api"

# Loggers that are too chatty at INFO for a JSON log stream.
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def _renderer(fmt: str) -> Any:
    if fmt == "console":
        return structlog.dev.ConsoleRenderer(colors=False)
    return structlog.processors.JSONRenderer()


def setup_logging(
    *,
    level: str | None = None,
    log_file: str | None = None,
    fmt: str | None = None,
) -> None:
    """
    Structured logging, called once per process (lifespan or script entry point).

    - LOG_LEVEL (default INFO)
    - LOG_FORMAT: json (default) or console for local development
    - LOG_FILE: optional JSON-lines/console copy on disk; empty disables it
    - request-scoped fields bound with structlog.contextvars are merged into every event
    """
    lvl = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    file_path = log_file if log_file is not None else os.getenv("LOG_FILE", "")
    out_fmt = (fmt or os.getenv("LOG_FORMAT", "json")).strip().lower()

    root = logging.getLogger()
    root.setLevel(lvl)
    root.handlers.clear()

    formatter = logging.Formatter("%(message)s")
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if file_path:
        Path(file_path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(file_path))
    for h in handlers:
        h.setLevel(lvl)
        h.setFormatter(formatter)
        root.addHandler(h)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(out_fmt),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, lvl, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(**kwargs: Any):
    return structlog.get_logger().bind(service=SERVICE_NAME, **kwargs)


def bind_request_context(**kwargs: Any) -> None:
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
