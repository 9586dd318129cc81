"""
Audit Sink — fire-and-forget record of business events.

Persistence of the audit trail lives outside this core; it only needs a
collaborator with `record(event_type, entity_type, entity_id, details)`.
A failing sink must never abort the operation that triggered it, so every
call site goes through `emit_audit`.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

import structlog

logger = structlog.get_logger()


class AuditSink(Protocol):
    def record(self, event_type: str, entity_type: str, entity_id: str, details: dict[str, Any]) -> None: ...


class StructlogAuditSink:
    """Default sink: audit events become structured log lines."""

    def __init__(self, logger_name: str = "audit"):
        self._log = structlog.get_logger(logger_name)

    def record(self, event_type: str, entity_type: str, entity_id: str, details: dict[str, Any]) -> None:
        self._log.info(event_type, entity_type=entity_type, entity_id=entity_id, **details)


@dataclass
class AuditRecord:
    event_type: str
    entity_type: str
    entity_id: str
    details: dict[str, Any]
    recorded_at: datetime = field(default_factory=datetime.utcnow)


class MemoryAuditSink:
    """Keeps events in a list; used by tests and in-process reporting."""

    def __init__(self):
        self.events: list[AuditRecord] = []

    def record(self, event_type: str, entity_type: str, entity_id: str, details: dict[str, Any]) -> None:
        self.events.append(AuditRecord(event_type, entity_type, entity_id, dict(details)))

    def of_type(self, event_type: str) -> list[AuditRecord]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        self.events.clear()


def emit_audit(sink: AuditSink | None, event_type: str, entity_type: str, entity_id: Any, details: dict[str, Any]) -> None:
    """Send an event to the sink, logging (never raising) on sink failure."""
    if sink is None:
        return
    try:
        sink.record(event_type, entity_type, str(entity_id), _plain(details))
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "audit.sink_failed",
            event_type=event_type,
            entity_type=entity_type,
            entity_id=str(entity_id),
            error=str(exc),
        )


def _plain(details: dict[str, Any]) -> dict[str, Any]:
    out = {}
    for key, value in details.items():
        if isinstance(value, Enum):
            out[key] = value.value
        elif isinstance(value, datetime):
            out[key] = value.isoformat()
        elif isinstance(value, (str, int, float, bool, list, dict)) or value is None:
            out[key] = value
        else:
            out[key] = str(value)
    return out
