"""Lifecycle event sink used by the orchestrator."""

from __future__ import annotations

import logging
from typing import Any, Protocol

SEND_START = "send_start"
DELTA = "delta"
COMPLETE = "complete"
ERROR = "error"
CANCELLED = "cancelled"
MODEL_FALLBACK = "model_fallback"
AUTOSAVE_FAILED = "autosave_failed"


class EventSink(Protocol):
    def emit(self, event: str, **fields: Any) -> None: ...


class LoggingEventSink:
    """Writes lifecycle events to the ``polychat.events`` logger as key=value pairs."""

    _LEVELS = {
        DELTA: logging.DEBUG,
        ERROR: logging.WARNING,
        MODEL_FALLBACK: logging.WARNING,
        AUTOSAVE_FAILED: logging.ERROR,
    }

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger("polychat.events")

    def emit(self, event: str, **fields: Any) -> None:
        level = self._LEVELS.get(event, logging.INFO)
        if not self.logger.isEnabledFor(level):
            return
        details = " ".join(f"{k}={v!r}" for k, v in fields.items())
        self.logger.log(level, "%s %s", event, details)
