"""Services for FieldForge."""

from fieldforge.services.audit import AuditEvent, AuditSink, LoggingAuditSink, MemoryAuditSink
from fieldforge.services.entity_service import GenericEntityService
from fieldforge.services.sessions import SessionsService

__all__ = [
    "AuditEvent",
    "AuditSink",
    "GenericEntityService",
    "LoggingAuditSink",
    "MemoryAuditSink",
    "SessionsService",
]
