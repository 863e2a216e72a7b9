"""structlog setup for the CLI and the background worker."""

import logging
import re
import sys
from pathlib import Path
from typing import Optional

import structlog

# Memory content can carry credentials pasted from terminals and configs.
_REDACT_PATTERNS = [
    (re.compile(r"(gh[pousr]_)[A-Za-z0-9]{20,}"), r"\1REDACTED"),
    (re.compile(r"(sk-[a-zA-Z0-9_-]{4})[a-zA-Z0-9_-]{16,}"), r"\1...REDACTED"),
    (re.compile(r"(Bearer\s+)[a-zA-Z0-9_.-]{20,}"), r"\1REDACTED"),
    (re.compile(r"((?:password|passwd|secret|token)['\"]?\s*[:=]\s*['\"]?)[^\s'\",]+", re.I), r"\1REDACTED"),
    (re.compile(r"(\w+://[^:/\s]+:)[^@\s]+@"), r"\1REDACTED@"),
]


def redact(text: str) -> str:
    for pattern, replacement in _REDACT_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _redact_sensitive(_, __, event_dict: dict) -> dict:
    """Structlog processor that masks secrets in string values."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = redact(value)
    return event_dict


def setup_logging(json_mode: bool = False, level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure structlog on top of stdlib logging.

    Args:
        json_mode: JSON lines for the daemon; console renderer otherwise.
        level: Root log level name.
        log_file: Optional extra JSON-lines file handler.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.CallsiteParameterAdder(
            [
                structlog.processors.CallsiteParameter.MODULE,
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            ]
        ),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        _redact_sensitive,
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    def formatter(renderer) -> structlog.stdlib.ProcessorFormatter:
        return structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(
        formatter(structlog.processors.JSONRenderer() if json_mode else structlog.dev.ConsoleRenderer())
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(stream)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter(structlog.processors.JSONRenderer()))
        root.addHandler(file_handler)

    root.setLevel(log_level)
    # APScheduler logs every job execution at INFO
    logging.getLogger("apscheduler").setLevel(max(log_level, logging.WARNING))
