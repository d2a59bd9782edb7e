from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, TextIO


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuditEvent:
    event_type: str
    user_id: str
    resource_id: Optional[str]
    action: str
    result: str
    risk_score: Optional[float]
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> Dict[str, Any]:
        row = asdict(self)
        row["timestamp"] = self.timestamp.isoformat()
        return row


class AuditSink(Protocol):
    async def log_event(self, event: AuditEvent) -> None:
        """Return only once the record is queued with the sink."""
        ...


@dataclass
class MemoryAuditSink:
    events: List[AuditEvent] = field(default_factory=list)

    async def log_event(self, event: AuditEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]


class JsonlAuditSink:
    """
    Context-managed, append-only JSONL audit ledger.

    Usage:
        with JsonlAuditSink(path) as sink:
            await sink.log_event(event)

    Writes JSONL (one JSON object per line), flushed per event.
    """

    def __init__(self, output_path: str) -> None:
        self.output_path = output_path
        self._fh: Optional[TextIO] = None

    def open(self) -> "JsonlAuditSink":
        os.makedirs(os.path.dirname(self.output_path) or ".", exist_ok=True)
        self._fh = open(self.output_path, "a", encoding="utf-8")
        return self

    def close(self) -> None:
        try:
            if self._fh:
                self._fh.flush()
        finally:
            if self._fh:
                self._fh.close()
                self._fh = None

    def __enter__(self) -> "JsonlAuditSink":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    async def log_event(self, event: AuditEvent) -> None:
        if self._fh is None:
            raise RuntimeError("JsonlAuditSink is not opened. Use 'with JsonlAuditSink(...) as sink:'")
        line = json.dumps(event.to_dict(), ensure_ascii=False, default=str) + "\n"
        self._fh.write(line)
        self._fh.flush()
