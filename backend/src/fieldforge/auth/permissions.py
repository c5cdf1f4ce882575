"""Row-level security policy resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fieldforge.auth.roles import RoleHierarchy
from fieldforge.auth.types import Identity
from fieldforge.core.errors import UnknownEntityError
from fieldforge.metadata.registry import EntityMetadataRegistry
from fieldforge.query.builder import RowConstraint

logger = logging.getLogger(__name__)

OWN_RECORD_ONLY = "own_record_only"
ALL_RECORDS = "all_records"
NO_RECORDS = "none"

# Operations that may run under an ownership constraint
_CONSTRAINABLE = frozenset({"read", "update", "create"})


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of a permission check. Never persisted."""

    resource: str
    operation: str
    allowed: bool
    row_constraint: RowConstraint | None = None

    @classmethod
    def deny(cls, resource: str, operation: str) -> AccessDecision:
        return cls(resource=resource, operation=operation, allowed=False)


class PermissionResolver:
    """Resolves ``(role, resource, operation)`` to an AccessDecision.

    Every ambiguous case resolves to a denial:

    1. Unknown, missing or inactive role
    2. Unknown resource
    3. No ``rls_policy`` entry for the role
    4. Role below the entity's threshold for the operation
    5. ``own_record_only`` without a caller identity, or on delete
    6. ``none`` or an unrecognized policy kind
    """

    def __init__(self, registry: EntityMetadataRegistry, hierarchy: RoleHierarchy):
        self._registry = registry
        self._hierarchy = hierarchy

    @property
    def hierarchy(self) -> RoleHierarchy:
        return self._hierarchy

    def resolve(
        self,
        role: str | None,
        resource: str,
        operation: str,
        identity: Identity | None = None,
    ) -> AccessDecision:
        """Decide whether ``role`` may perform ``operation`` on ``resource``.

        Args:
            role: Caller's role name (case-insensitive)
            resource: Entity name
            operation: "create", "read", "update" or "delete"
            identity: Caller identity; required for ownership constraints

        Returns:
            AccessDecision, with a row constraint for ``own_record_only``
        """
        decision = self._resolve(role, resource, operation, identity)
        if not decision.allowed:
            logger.info(
                "Access denied: role=%s resource=%s operation=%s", role, resource, operation
            )
        return decision

    def _resolve(
        self,
        role: str | None,
        resource: str,
        operation: str,
        identity: Identity | None,
    ) -> AccessDecision:
        deny = AccessDecision.deny(resource, operation)

        if not self._hierarchy.is_known(role):
            return deny
        role_key = (role or "").strip().lower()

        try:
            entity = self._registry.get(resource)
        except UnknownEntityError:
            return deny

        policy = entity.rls_policy.get(role_key)
        if policy is None or policy == NO_RECORDS:
            return deny

        threshold = entity.permissions.for_operation(operation)
        if threshold is None or not self._hierarchy.meets_minimum_role(role_key, threshold):
            return deny

        if policy == ALL_RECORDS:
            return AccessDecision(resource=resource, operation=operation, allowed=True)

        if policy == OWN_RECORD_ONLY:
            if identity is None or operation not in _CONSTRAINABLE:
                return deny
            return AccessDecision(
                resource=resource,
                operation=operation,
                allowed=True,
                row_constraint=RowConstraint(
                    field=entity.owner_field_for(role_key),
                    value=identity.user_id,
                ),
            )

        return deny

    def meets_minimum_role(self, role: str | None, threshold: str | None) -> bool:
        return self._hierarchy.meets_minimum_role(role, threshold)

    def is_elevated(self, role: str | None, resource: str) -> bool:
        """Whether ``role`` may filter and sort on the entity's restricted fields."""
        entity = self._registry.get(resource)
        return self._hierarchy.meets_minimum_role(role, entity.restricted_min_role)
