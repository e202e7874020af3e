"""Central logging configuration for the agent.

This module configures Python logging with sane defaults and is intended to be
invoked from the CLI during startup.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

# Avoid reserved LogRecord attribute collisions in `extra`
_RESERVED_KEYS = {
    "name",
    "msg",
    "message",
    "asctime",
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
    "args",
}


def setup_logging(level: Optional[str] = None) -> None:
    """Initialize application logging.

    - `LOG_LEVEL` from the environment wins over the `level` argument
      (normally the settings file value).
    - Uses a concise, structured-ish format with timestamps.
    """

    log_level = (os.getenv("LOG_LEVEL") or level or "INFO").upper()

    root_logger = logging.getLogger()

    # Configure handlers once to avoid duplicates on repeated calls
    if not root_logger.handlers:
        logging.basicConfig(
            level=log_level,
            format=(
                "%(asctime)s | %(levelname)s | %(name)s | "
                "%(message)s"
            ),
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    root_logger.setLevel(log_level)

    # paramiko logs every kex/auth step at INFO; only show it when debugging
    paramiko_level = logging.DEBUG if root_logger.level == logging.DEBUG else logging.WARNING
    logging.getLogger("paramiko").setLevel(paramiko_level)


def log_event(logger: logging.Logger, event_name: str, level: int = logging.INFO, **fields: object) -> None:
    """Emit a log line with text message and structured context via `extra`.

    The message is a concise 'event | k=v ...' line, and the `extra` dict
    carries the same fields for structured handlers.
    """
    if not fields:
        logger.log(level, "%s", event_name, extra={"event": event_name})
        return

    keys = sorted(fields.keys())
    tmpl = " ".join(f"{k}=%s" for k in keys)
    values = tuple(fields[k] for k in keys)

    safe_extra: dict[str, object] = {"event": event_name}
    for k, v in fields.items():
        safe_key = k if k not in _RESERVED_KEYS else f"field_{k}"
        safe_extra[safe_key] = v

    logger.log(level, "%s | " + tmpl, event_name, *values, extra=safe_extra)
