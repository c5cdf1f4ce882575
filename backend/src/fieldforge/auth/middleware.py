"""Authentication middleware for FastAPI."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from fieldforge.auth.token_service import TokenService
from fieldforge.auth.types import FEDERATED_PROVIDER, LOCAL_PROVIDER, Identity
from fieldforge.core.errors import (
    AuthenticationError,
    CredentialRejectedError,
    FieldForgeError,
)
from fieldforge.db.users import UserDirectory

logger = logging.getLogger(__name__)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

READ_ONLY_MESSAGE = (
    "Development users are read-only. "
    "Authenticate with the identity provider to modify data."
)


@dataclass(frozen=True)
class AuthSettings:
    """Per-instance configuration of the request gate.

    Attributes:
        local_auth_enabled: Accept tokens issued by the local (development) provider
        federated_provider: Provider name with full read/write access
        local_provider: Provider name restricted to read-only requests
        public_paths: Paths served without a credential
        read_only_exempt_paths: Paths the local provider may call with a mutating verb
    """

    local_auth_enabled: bool = False
    federated_provider: str = FEDERATED_PROVIDER
    local_provider: str = LOCAL_PROVIDER
    public_paths: tuple[str, ...] = (
        "/api/health",
        "/api/auth/refresh",
        "/api/auth/dev-token",
        "/docs",
        "/openapi.json",
        "/redoc",
    )
    read_only_exempt_paths: tuple[str, ...] = ("/api/auth/logout", "/api/auth/refresh")

    @property
    def providers(self) -> frozenset[str]:
        return frozenset({self.federated_provider, self.local_provider})


def _matches(path: str, prefixes: tuple[str, ...]) -> bool:
    return any(path == p or path.startswith(p.rstrip("/") + "/") for p in prefixes)


class AuthMiddleware(BaseHTTPMiddleware):
    """Rejects requests without a usable access token and attaches the caller.

    The middleware:
    1. Lets public paths through untouched
    2. Decodes the Bearer access token (401 on any defect)
    3. Checks the provider (unknown provider 401, disabled or read-only local provider 403)
    4. Confirms the user is still active when a user directory is configured (403)
    5. Sets ``request.state.identity``
    """

    def __init__(
        self,
        app,
        tokens: TokenService,
        settings: AuthSettings,
        users: UserDirectory | None = None,
    ):
        """Initialize middleware.

        Args:
            app: The ASGI application
            tokens: Decodes access tokens
            settings: Provider and path configuration
            users: Optional user lookup for the deactivation check
        """
        super().__init__(app)
        self._tokens = tokens
        self._settings = settings
        self._users = users

    async def dispatch(self, request: Request, call_next) -> Response:
        request.state.identity = None

        if request.method == "OPTIONS" or _matches(request.url.path, self._settings.public_paths):
            return await call_next(request)

        try:
            identity = await self._authenticate(request)
        except FieldForgeError as e:
            return JSONResponse(
                status_code=e.status_code,
                content={"error": e.to_dict()},
                headers={"WWW-Authenticate": "Bearer"} if e.status_code == 401 else None,
            )

        request.state.identity = identity
        return await call_next(request)

    async def _authenticate(self, request: Request) -> Identity:
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthenticationError("Authentication required")

        claims = self._tokens.decode_access_token(token.strip())
        if not claims.subject:
            raise AuthenticationError("Invalid token")
        if claims.provider not in self._settings.providers:
            logger.warning("Rejected token with provider %r", claims.provider)
            raise AuthenticationError("Invalid token")

        if claims.provider == self._settings.local_provider:
            if not self._settings.local_auth_enabled:
                logger.warning("Rejected local provider token for user %s", claims.user_id)
                raise CredentialRejectedError("Development authentication is disabled")
            if request.method in MUTATING_METHODS and not _matches(
                request.url.path, self._settings.read_only_exempt_paths
            ):
                raise CredentialRejectedError(READ_ONLY_MESSAGE)

        if claims.user_id is None:
            raise AuthenticationError("Invalid token")
        role = claims.role

        if self._users is not None:
            user = await run_in_threadpool(self._users.get, claims.user_id)
            if user is None or not user.can_authenticate:
                logger.warning("Rejected token for inactive user %s", claims.user_id)
                raise CredentialRejectedError("User account is disabled")
            # Role changes apply without waiting for the token to expire
            role = user.role

        if not role:
            raise AuthenticationError("Invalid token")

        return Identity(
            user_id=claims.user_id,
            subject=claims.subject,
            email=claims.email,
            role=role,
            provider=claims.provider,
        )


def get_identity(request: Request) -> Identity | None:
    """Get the authenticated caller from the request state."""
    return getattr(request.state, "identity", None)
