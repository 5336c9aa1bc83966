"""Logging setup for Parley components.

Every component logs through ``parley.<name>``. Records can carry the turn
context of a practice session (``session_id``, ``state``, ``epoch``) through
``extra=`` or a :class:`SessionLogAdapter`; the JSON formatter lifts those
fields to the top level so a session's turns can be filtered out of the log.
"""

import logging
import json
import os
import sys
from datetime import datetime, timezone

CONTEXT_FIELDS = ("session_id", "state", "epoch", "topic", "duration_ms")


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record):
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0]:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class SessionFormatter(logging.Formatter):
    """Human-readable lines, prefixed with the session id when one is attached."""

    def __init__(self, name: str):
        super().__init__(
            f"%(asctime)s [{name}] %(levelname)s - %(session_prefix)s%(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record):
        session_id = getattr(record, "session_id", None)
        record.session_prefix = f"({session_id}) " if session_id else ""
        return super().format(record)


class SessionLogAdapter(logging.LoggerAdapter):
    """Stamps every record with the session it belongs to."""

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def _level_from_env(default: int) -> int:
    name = os.environ.get("PARLEY_LOG_LEVEL", "").upper()
    if not name:
        return default
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else default


def setup_logging(name: str, level: int = logging.INFO, json_output: bool = None) -> logging.Logger:
    """Set up logging for a component.

    Args:
        name: Component name (e.g., "turns", "capture")
        level: Logging level, overridden by PARLEY_LOG_LEVEL
        json_output: Force JSON (True) or text (False). When None, JSON is
            used if PARLEY_LOG_FORMAT is "json".

    Returns:
        Configured logger
    """
    logger = logging.getLogger(f"parley.{name}")
    level = _level_from_env(level)
    logger.setLevel(level)

    if json_output is None:
        json_output = os.environ.get("PARLEY_LOG_FORMAT", "").lower() == "json"

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(JSONFormatter() if json_output else SessionFormatter(name))
        logger.addHandler(handler)

    return logger


def session_logger(logger: logging.Logger, session_id: str) -> SessionLogAdapter:
    return SessionLogAdapter(logger, {"session_id": session_id})
