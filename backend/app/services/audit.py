"""
Audit sinks. The core only emits events; a failing sink never fails the
business operation that triggered it (see ``emit_safely``).
"""
import logging
from typing import List, Protocol

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.models.assessment import AuditEvent

logger = logging.getLogger("costing-audit")


class AuditSink(Protocol):
    async def emit(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes each event as one structured log line."""

    async def emit(self, event: AuditEvent) -> None:
        logger.info(
            f"audit {event.entity_type}.{event.action}",
            extra={
                "assessment_id": event.entity_id,
                "operation": event.metadata.get("operation"),
                "from_stage": event.metadata.get("from_stage"),
                "to_stage": event.metadata.get("to_stage"),
            },
        )


class SqlAuditSink:
    """Persists events to the audit_logs table, one short transaction each."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def emit(self, event: AuditEvent) -> None:
        from app.models.orm_models import AuditLogRow

        async with self._session_factory() as session, session.begin():
            session.add(AuditLogRow(
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                action=event.action,
                event_metadata=event.model_dump(mode="json")["metadata"],
                changed_by=event.changed_by,
                created_at=event.timestamp,
            ))


class RecordingAuditSink:
    """Keeps events in memory. Used by tests and dry runs."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    async def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> List[str]:
        return [e.action for e in self.events]


async def emit_safely(sink: AuditSink, event: AuditEvent) -> None:
    try:
        await sink.emit(event)
    except Exception:
        logger.exception(
            f"Audit emission failed for {event.entity_type} {event.entity_id} ({event.action})",
            extra={"assessment_id": event.entity_id},
        )
