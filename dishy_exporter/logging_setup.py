"""Log output for the exporter: text for terminals, JSON lines for collectors.

Scrape and session events carry context fields (mutation counts, elapsed
time, target ids) attached with log_with_context(). Both formatters render
them: appended as key=value in text, nested under "context" in JSON.
"""

import sys
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

CONTEXT_ATTR = "context"

# Third-party loggers that are chatty at the exporter's own level
QUIET_LOGGERS = {
    "aiohttp.access": logging.WARNING,
    "websockets": logging.INFO,
}


def _context(record: logging.LogRecord) -> Dict[str, Any]:
    context = getattr(record, CONTEXT_ATTR, None)
    return context if isinstance(context, dict) else {}


class JSONFormatter(logging.Formatter):
    """One JSON object per line.

    Example output:
        {"ts": "2025-10-24T23:30:00.123+00:00", "level": "DEBUG",
         "logger": "dishy_exporter.session", "msg": "Snapshot acquired",
         "context": {"mutations": 2, "elapsed": 0.84},
         "source": "session.py:351"}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        context = _context(record)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        if record.levelno <= logging.DEBUG:
            entry["source"] = f"{record.filename}:{record.lineno}"
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """`2025-10-24 23:30:00 [INFO] dishy_exporter.server: Scrape complete elapsed=0.84`"""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        context = _context(record)
        if not context:
            return text
        pairs = []
        for key, value in context.items():
            if isinstance(value, str) and (" " in value or not value):
                value = json.dumps(value)
            pairs.append(f"{key}={value}")
        return f"{text} {' '.join(pairs)}"


FORMATTERS = {"text": TextFormatter, "json": JSONFormatter}


def resolve_level(level: Optional[str]) -> int:
    """Map a level name to its number; unknown or missing names mean INFO."""
    if not level:
        return logging.INFO
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    log_format: str = "text",
    log_level: Optional[str] = None,
    stream: Optional[TextIO] = None,
) -> logging.Handler:
    """Route all logging to a single stream handler (stderr by default).

    --quiet and --verbose are already folded into log_level by the CLI.
    An unknown log_format falls back to text.

    Returns:
        The installed handler
    """
    level = resolve_level(log_level)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(FORMATTERS.get(log_format, TextFormatter)())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    logging.getLogger("dishy_exporter").setLevel(level)
    for name, floor in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(level, floor))
    return handler


def log_with_context(
    logger: logging.Logger, level: int, message: str, **context: Any
) -> None:
    """Log message with context fields.

    Example:
        log_with_context(logger, logging.DEBUG, "Snapshot acquired", mutations=2, elapsed=0.84)
    """
    if not context:
        logger.log(level, message, stacklevel=2)
        return
    logger.log(level, message, extra={CONTEXT_ATTR: context}, stacklevel=2)
