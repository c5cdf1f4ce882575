"""FastAPI dependencies for authentication and authorization.

The app factory stores the shared services on ``app.state``:
``registry`` (EntityMetadataRegistry) and ``permissions`` (PermissionResolver).
"""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, Request

from fieldforge.auth.middleware import get_identity
from fieldforge.auth.permissions import AccessDecision, PermissionResolver
from fieldforge.auth.roles import exact_role
from fieldforge.auth.types import Identity
from fieldforge.core.errors import AuthenticationError, AuthorizationError
from fieldforge.metadata.loader import EntityMetadata
from fieldforge.metadata.registry import EntityMetadataRegistry


def _resolver(request: Request) -> PermissionResolver:
    return request.app.state.permissions


def require_authenticated(request: Request) -> Identity:
    """Dependency that requires an authenticated caller.

    Raises:
        AuthenticationError: If the middleware attached no identity
    """
    identity = get_identity(request)
    if identity is None:
        raise AuthenticationError("Authentication required")
    return identity


def require_minimum_role(role: str) -> Callable[[Request], Identity]:
    """Create a dependency that requires ``role`` or any higher-priority role.

    Example:
        @router.get("/reports")
        def reports(identity: Identity = Depends(require_minimum_role("manager"))):
            ...
    """

    def dependency(request: Request) -> Identity:
        identity = require_authenticated(request)
        if not _resolver(request).meets_minimum_role(identity.role, role):
            raise AuthorizationError()
        return identity

    return dependency


def require_exact_role(*roles: str) -> Callable[[Request], Identity]:
    """Create a dependency that requires one of ``roles`` exactly, ignoring hierarchy."""

    def dependency(request: Request) -> Identity:
        identity = require_authenticated(request)
        if not any(exact_role(identity.role, r) for r in roles):
            raise AuthorizationError()
        return identity

    return dependency


def attach_entity_metadata(entity: str, request: Request) -> EntityMetadata:
    """Resolve the ``{entity}`` path parameter and attach its metadata to the request.

    Raises:
        UnknownEntityError: If no entity is registered under that name
    """
    registry: EntityMetadataRegistry = request.app.state.registry
    metadata = registry.get(entity)
    request.state.entity_metadata = metadata
    return metadata


def require_permission(operation: str) -> Callable[..., AccessDecision]:
    """Create a dependency that checks ``operation`` on the request's entity.

    Reads the entity from ``request.state.entity_metadata`` and stores the
    decision (with any row constraint) on ``request.state.access_decision``.
    """

    def dependency(
        request: Request,
        metadata: EntityMetadata = Depends(attach_entity_metadata),
        identity: Identity = Depends(require_authenticated),
    ) -> AccessDecision:
        decision = _resolver(request).resolve(identity.role, metadata.name, operation, identity)
        if not decision.allowed:
            raise AuthorizationError()
        request.state.access_decision = decision
        return decision

    return dependency
