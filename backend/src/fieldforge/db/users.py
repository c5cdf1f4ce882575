"""User lookups shared by the token service and the request gate."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.engine import Engine

from fieldforge.db.engine import database_errors
from fieldforge.db.schema import roles, users


@dataclass
class UserRecord:
    """A user joined with its role.

    Attributes:
        id: Primary key of the users row
        email: Login email
        role: Role name (lowercase)
        role_priority: Role priority used for hierarchy checks
        is_active: False for deactivated accounts
        role_active: False when the role itself has been disabled
    """

    id: int
    email: str
    first_name: str
    last_name: str
    role: str
    role_priority: int
    is_active: bool = True
    role_active: bool = True

    @property
    def can_authenticate(self) -> bool:
        return self.is_active and self.role_active

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role,
            "role_priority": self.role_priority,
            "is_active": self.is_active,
        }


class UserDirectory:
    """Read-only access to users and their roles."""

    def __init__(self, engine: Engine):
        self._engine = engine

    def _query(self):
        return select(
            users.c.id,
            users.c.email,
            users.c.first_name,
            users.c.last_name,
            users.c.is_active,
            roles.c.name.label("role"),
            roles.c.priority.label("role_priority"),
            roles.c.is_active.label("role_active"),
        ).select_from(users.join(roles, users.c.role_id == roles.c.id))

    def get(self, user_id: int) -> UserRecord | None:
        """Load a user by id, or None if absent."""
        with database_errors(), self._engine.connect() as conn:
            row = conn.execute(self._query().where(users.c.id == user_id)).mappings().first()
        return self._to_record(row) if row else None

    def get_by_email(self, email: str) -> UserRecord | None:
        with database_errors(), self._engine.connect() as conn:
            row = conn.execute(
                self._query().where(users.c.email == email)
            ).mappings().first()
        return self._to_record(row) if row else None

    @staticmethod
    def _to_record(row: Any) -> UserRecord:
        return UserRecord(
            id=row["id"],
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            role=str(row["role"]).lower(),
            role_priority=row["role_priority"],
            is_active=bool(row["is_active"]),
            role_active=bool(row["role_active"]),
        )
