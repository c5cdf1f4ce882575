"""Authentication and authorization for FieldForge."""

from fieldforge.auth.hashing import TokenHasher
from fieldforge.auth.middleware import AuthMiddleware, AuthSettings, get_identity
from fieldforge.auth.permissions import AccessDecision, PermissionResolver
from fieldforge.auth.roles import ROLE_HIERARCHY, Role, RoleHierarchy, exact_role
from fieldforge.auth.token_service import TokenService
from fieldforge.auth.types import (
    FEDERATED_PROVIDER,
    LOCAL_PROVIDER,
    AccessClaims,
    Identity,
    SessionInfo,
    TokenPair,
)

__all__ = [
    "FEDERATED_PROVIDER",
    "LOCAL_PROVIDER",
    "ROLE_HIERARCHY",
    "AccessClaims",
    "AccessDecision",
    "AuthMiddleware",
    "AuthSettings",
    "Identity",
    "PermissionResolver",
    "Role",
    "RoleHierarchy",
    "SessionInfo",
    "TokenHasher",
    "TokenPair",
    "TokenService",
    "exact_role",
    "get_identity",
]
