"""Role hierarchy as a priority total order."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.engine import Engine

from fieldforge.db.engine import DEFAULT_ROLES, database_errors
from fieldforge.db.schema import roles as roles_table

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Role:
    id: int | None
    name: str
    priority: int
    is_active: bool = True


# Higher number = more capability. Capability is decided by comparing
# priorities, never by inheritance.
ROLE_HIERARCHY = MappingProxyType({name: priority for name, priority, _ in DEFAULT_ROLES})


def _normalize(role: str | None) -> str:
    return (role or "").strip().lower()


class RoleHierarchy:
    """Read-only lookup of role priorities.

    Unknown and inactive roles have no priority and fail every check.
    """

    def __init__(self, roles: Iterable[Role]):
        catalog: dict[str, Role] = {}
        priorities: set[int] = set()
        for role in roles:
            name = _normalize(role.name)
            if not name:
                raise ValueError("Role name must not be empty")
            if name in catalog:
                raise ValueError(f"Duplicate role '{name}'")
            if role.priority in priorities:
                raise ValueError(f"Duplicate role priority {role.priority}")
            priorities.add(role.priority)
            catalog[name] = role
        self._roles = MappingProxyType(catalog)

    @classmethod
    def default(cls) -> RoleHierarchy:
        return cls(Role(id=None, name=name, priority=p) for name, p in ROLE_HIERARCHY.items())

    @classmethod
    def from_database(cls, engine: Engine) -> RoleHierarchy:
        """Load roles from the ``roles`` table, falling back to the defaults when empty."""
        with database_errors(), engine.connect() as conn:
            rows = conn.execute(
                select(
                    roles_table.c.id,
                    roles_table.c.name,
                    roles_table.c.priority,
                    roles_table.c.is_active,
                )
            ).mappings().all()
        if not rows:
            logger.warning("No roles in database, using default role hierarchy")
            return cls.default()
        return cls(
            Role(id=r["id"], name=r["name"], priority=r["priority"], is_active=bool(r["is_active"]))
            for r in rows
        )

    def get(self, role: str | None) -> Role | None:
        return self._roles.get(_normalize(role))

    def priority(self, role: str | None) -> int | None:
        """Priority of an active role, None if the role is unknown or inactive."""
        found = self.get(role)
        if found is None or not found.is_active:
            return None
        return found.priority

    def is_known(self, role: str | None) -> bool:
        return self.priority(role) is not None

    def meets_minimum_role(self, role: str | None, threshold: str | None) -> bool:
        """True when ``role``'s priority is at least ``threshold``'s priority."""
        have = self.priority(role)
        need = self.priority(threshold)
        if have is None or need is None:
            return False
        return have >= need

    def names(self) -> list[str]:
        """Role names ordered by ascending priority."""
        return [r.name for r in sorted(self._roles.values(), key=lambda r: r.priority)]


def exact_role(role: str | None, required: str | None) -> bool:
    """Case-insensitive role equality; empty values never match."""
    have = _normalize(role)
    return bool(have) and have == _normalize(required)
