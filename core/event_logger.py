"""
CBS Books Activity Log

Every ledger change (invoice created/sent/paid/deleted, builder and expense
edits, email dispatch, sync trouble) is recorded as a timestamped event.
The newest events stay in memory for the API and the terminal; each one is
also written to the ``cbs.events`` logger as "[category] message (k=v)".

Usage:
    from core.event_logger import EventLogger

    events = EventLogger(max_events=1000)
    events.info("invoice", "Invoice marked sent", invoice_id="inv-1")
    events.for_entity("inv-1")
"""

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger("cbs.events")

# severity label → logging level
_LEVELS = {
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}

# detail keys that name a ledger record
ENTITY_KEYS = ("invoice_id", "client_id", "expense_id")


@dataclass(frozen=True)
class Event:
    timestamp: datetime
    severity: str
    category: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        if not self.details:
            return f"[{self.category}] {self.message}"
        pairs = ", ".join(f"{key}={value}" for key, value in self.details.items())
        return f"[{self.category}] {self.message} ({pairs})"

    def mentions(self, entity_id: str) -> bool:
        return any(self.details.get(key) == entity_id for key in ENTITY_KEYS)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity,
            "category": self.category,
            "message": self.message,
            "details": dict(self.details),
        }


class EventLogger:
    """Ring buffer of ledger events; the oldest fall off once ``max_events`` is reached."""

    def __init__(self, max_events: int = 1000):
        self._buffer: deque[Event] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def info(self, category: str, message: str, /, **details):
        self.record("INFO", category, message, details)

    def warn(self, category: str, message: str, /, **details):
        self.record("WARN", category, message, details)

    def error(self, category: str, message: str, /, **details):
        self.record("ERROR", category, message, details)

    def record(self, severity: str, category: str, message: str,
               details: dict[str, Any] | None = None) -> Event:
        if severity not in _LEVELS:
            raise ValueError(f"Unknown severity: {severity}")
        event = Event(datetime.now(timezone.utc), severity, category, message, details or {})
        with self._lock:
            self._buffer.append(event)
        logger.log(_LEVELS[severity], event.describe())
        return event

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------

    def _snapshot(self) -> list[Event]:
        with self._lock:
            return list(self._buffer)

    @property
    def count(self) -> int:
        return len(self._buffer)

    def get_recent(self, count: int = 100, category: str | None = None) -> list[dict]:
        """Newest ``count`` events (optionally one category), oldest first."""
        picked = [e for e in self._snapshot() if category in (None, e.category)]
        return [e.to_dict() for e in picked[-count:]] if count > 0 else []

    def for_entity(self, entity_id: str) -> list[dict]:
        """History of one invoice, builder, or expense."""
        return [e.to_dict() for e in self._snapshot() if e.mentions(entity_id)]

    def export_json(self, filepath: str | Path) -> int:
        """Write the buffer to ``filepath`` as JSON and return how many events went out."""
        events = [e.to_dict() for e in self._snapshot()]
        target = Path(filepath)
        target.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "event_count": len(events),
            "events": events,
        }
        target.write_text(json.dumps(payload, indent=2))
        logger.info("Exported %d events to %s", len(events), target)
        return len(events)
