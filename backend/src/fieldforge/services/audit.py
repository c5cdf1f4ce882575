"""Audit sink boundary.

The core emits one AuditEvent per mutating operation. Persistence and
delivery belong to whatever sink the application wires in.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from fieldforge.db.schema import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    """A mutation to record.

    Attributes:
        resource: Entity name (or "session" for auth events)
        action: "create", "update", "delete", "force_logout", ...
        actor_id: User id of the caller
        before: Record snapshot before the change (None on create)
        after: Record snapshot after the change (None on delete)
        occurred_at: When the change was committed
    """

    resource: str
    action: str
    actor_id: int | None
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    occurred_at: datetime = field(default_factory=utcnow)


@runtime_checkable
class AuditSink(Protocol):
    """Receives audit events after the change commits."""

    def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes audit events to the ``fieldforge.audit`` logger."""

    def __init__(self, logger_name: str = "fieldforge.audit"):
        self._logger = logging.getLogger(logger_name)

    def record(self, event: AuditEvent) -> None:
        changed = _changed_fields(event.before, event.after)
        self._logger.info(
            "%s %s by user %s (fields: %s)",
            event.action,
            event.resource,
            event.actor_id,
            ", ".join(changed) if changed else "-",
        )


class MemoryAuditSink:
    """Keeps events in a list. Used by tests and local tooling."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)


def _changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    before = before or {}
    after = after or {}
    return sorted(k for k in set(before) | set(after) if before.get(k) != after.get(k))
