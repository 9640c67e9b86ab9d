"""
Structured logging with request and repository context.

Every entry carries the current request_id; entries emitted while an indexing
run is active also carry the repository_id of that run.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Optional
from uuid import uuid4

import structlog

# Third-party loggers that flood INFO with per-request transport lines
NOISY_LOGGERS = ("httpx", "httpcore", "chromadb", "backoff", "google_genai", "openai")

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="no-request")


def get_request_id() -> str:
    return request_id_ctx.get()


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context. Generates one if not provided."""
    rid = request_id or str(uuid4())[:8]
    request_id_ctx.set(rid)
    return rid


def add_request_id(logger, method_name, event_dict):
    """Processor to add request_id to all log entries."""
    event_dict.setdefault("request_id", get_request_id())
    return event_dict


def bind_repository(repository_id: str) -> None:
    """Attach repository_id to every later entry in the current context."""
    structlog.contextvars.bind_contextvars(repository_id=str(repository_id))


def _renderer(debug: bool):
    # Console output only where the terminal can show it; JSON otherwise.
    encoding = (getattr(sys.stdout, "encoding", None) or "").lower()
    if debug and "utf" in encoding:
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(debug: bool = False) -> None:
    """Configure structlog and route stdlib logging to stdout."""
    # Indexed file contents may contain any unicode.
    for stream in (sys.stdout, sys.stderr):
        if hasattr(stream, "reconfigure"):
            stream.reconfigure(encoding="utf-8", errors="replace")

    level = logging.DEBUG if debug else logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_request_id,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            _renderer(debug),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    return structlog.get_logger(name)
