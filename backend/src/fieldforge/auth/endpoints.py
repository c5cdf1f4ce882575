"""Authentication and session management API endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from fieldforge.auth.dependencies import require_authenticated, require_minimum_role
from fieldforge.auth.middleware import AuthSettings
from fieldforge.auth.token_service import TokenService
from fieldforge.auth.types import Identity
from fieldforge.core.errors import NotFoundError, ValidationError
from fieldforge.db.users import UserDirectory
from fieldforge.services.sessions import SessionsService


class RefreshRequest(BaseModel):
    """Request body for token refresh and logout."""

    refresh_token: str


class TokenResponse(BaseModel):
    """Response body carrying a token pair."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class DevTokenRequest(BaseModel):
    """Request body for a local development token."""

    user_id: int | None = None
    email: str | None = None


def _client(request: Request) -> tuple[str | None, str | None]:
    ip_address = request.client.host if request.client else None
    return ip_address, request.headers.get("user-agent")


def create_auth_router(
    tokens: TokenService,
    users: UserDirectory,
    settings: AuthSettings,
) -> APIRouter:
    """Create the auth router with injected dependencies.

    Args:
        tokens: Token service for session operations
        users: User lookup for ``/me`` and development tokens
        settings: Provider configuration (gates ``/dev-token``)

    Returns:
        Configured APIRouter
    """
    router = APIRouter(prefix="/api/auth", tags=["auth"])

    @router.post("/refresh", response_model=TokenResponse)
    def refresh(body: RefreshRequest, request: Request) -> TokenResponse:
        """Rotate a refresh token into a new token pair.

        Raises:
            InvalidRefreshTokenError: For every kind of unusable refresh token
        """
        ip_address, user_agent = _client(request)
        pair = tokens.refresh_access_token(body.refresh_token, ip_address, user_agent)
        return TokenResponse(**pair.to_dict())

    @router.post("/logout")
    def logout(
        body: RefreshRequest,
        identity: Identity = Depends(require_authenticated),
    ) -> dict[str, Any]:
        """Revoke the session behind one refresh token. Idempotent."""
        return {"revoked": tokens.revoke_refresh_token(body.refresh_token)}

    @router.post("/logout-all")
    def logout_all(identity: Identity = Depends(require_authenticated)) -> dict[str, Any]:
        return {"revoked": tokens.revoke_all_user_tokens(identity.user_id)}

    @router.get("/sessions")
    def sessions(identity: Identity = Depends(require_authenticated)) -> dict[str, Any]:
        return {"data": [s.to_dict() for s in tokens.get_user_tokens(identity.user_id)]}

    @router.get("/me")
    def me(identity: Identity = Depends(require_authenticated)) -> dict[str, Any]:
        """Get the current user, as stored now rather than as the token claims."""
        user = users.get(identity.user_id)
        if user is None:
            raise NotFoundError("User not found")
        return {**user.to_dict(), "provider": identity.provider}

    @router.post("/dev-token", response_model=TokenResponse)
    def dev_token(body: DevTokenRequest, request: Request) -> TokenResponse:
        """Issue a read-only token pair through the local provider.

        Answers 404 unless local authentication is enabled.
        """
        if not settings.local_auth_enabled:
            raise NotFoundError("Not found")
        if body.user_id is not None:
            user = users.get(body.user_id)
        elif body.email:
            user = users.get_by_email(body.email)
        else:
            raise ValidationError("user_id or email is required")
        if user is None:
            raise NotFoundError("User not found")

        ip_address, user_agent = _client(request)
        pair = tokens.generate_token_pair(
            user.id, ip_address, user_agent, provider=settings.local_provider
        )
        return TokenResponse(**pair.to_dict())

    return router


def create_admin_router(sessions: SessionsService) -> APIRouter:
    """Create the admin session management router."""
    router = APIRouter(prefix="/api/admin", tags=["admin"])
    admin_only = require_minimum_role("admin")

    @router.get("/sessions/{user_id}")
    def list_sessions(user_id: int, identity: Identity = Depends(admin_only)) -> dict[str, Any]:
        return {"data": sessions.list_sessions(user_id)}

    @router.post("/sessions/{user_id}/revoke")
    def force_logout(user_id: int, identity: Identity = Depends(admin_only)) -> dict[str, Any]:
        return {"revoked": sessions.force_logout(user_id, identity)}

    return router
