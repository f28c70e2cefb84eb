from __future__ import annotations

import os
import re
import sys
from collections.abc import Mapping
from typing import Any, TextIO

import structlog
from structlog.types import EventDict, Processor

GOOGLE_API_KEY_RE = re.compile(r"\bAIza[0-9A-Za-z_-]{35}\b")
KEY_QUERY_RE = re.compile(r"([?&]key=)[^&\s]+")

_LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40, "critical": 50}

_trace_pipeline = False


def redact_text(value: str) -> str:
    value = GOOGLE_API_KEY_RE.sub("[REDACTED_KEY]", value)
    return KEY_QUERY_RE.sub(r"\1[REDACTED]", value)


def _redact(value: Any) -> Any:
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, Mapping):
        return {key: _redact(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_redact(item) for item in value]
    if isinstance(value, tuple):
        return tuple(_redact(item) for item in value)
    return value


def _redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    return {key: _redact(value) for key, value in event_dict.items()}


def get_logger(name: str | None = None) -> Any:
    if name:
        return structlog.get_logger(logger_name=name)
    return structlog.get_logger()


def bind_reply_context(**fields: Any) -> None:
    structlog.contextvars.bind_contextvars(**fields)


def log_pipeline(logger: Any, event: str, **fields: Any) -> None:
    """Log raw provider traffic; promoted to info by ``REPLYSTREAM_TRACE_PIPELINE``."""
    if _trace_pipeline:
        logger.info(event, **fields)
    else:
        logger.debug(event, **fields)


def _env_flag(name: str) -> bool | None:
    value = os.environ.get(name)
    if value is None:
        return None
    return value.strip().lower() in {"1", "true", "yes", "on"}


def setup_logging(
    *,
    debug: bool = False,
    stream: TextIO | None = None,
    cache_logger_on_first_use: bool = True,
) -> None:
    """Configure structlog for the process.

    ``REPLYSTREAM_LOG_LEVEL`` sets the threshold (``--debug`` wins),
    ``REPLYSTREAM_LOG_FORMAT=json`` switches to one JSON object per line and
    ``REPLYSTREAM_LOG_COLOR`` forces console colors on or off. Every record
    passes through API key redaction before rendering.
    """
    global _trace_pipeline

    level_name = "debug" if debug else os.environ.get("REPLYSTREAM_LOG_LEVEL", "info")
    level = _LEVELS.get(level_name.strip().lower(), _LEVELS["info"])
    _trace_pipeline = bool(_env_flag("REPLYSTREAM_TRACE_PIPELINE"))

    target = stream if stream is not None else sys.stderr
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if os.environ.get("REPLYSTREAM_LOG_FORMAT", "").strip().lower() == "json":
        processors += [
            structlog.processors.format_exc_info,
            _redact_secrets,
            structlog.processors.JSONRenderer(default=str),
        ]
    else:
        colors = _env_flag("REPLYSTREAM_LOG_COLOR")
        if colors is None:
            colors = target.isatty()
        processors += [_redact_secrets, structlog.dev.ConsoleRenderer(colors=colors)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=target),
        cache_logger_on_first_use=cache_logger_on_first_use,
    )
