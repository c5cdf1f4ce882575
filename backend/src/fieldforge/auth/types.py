"""Authentication types."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

FEDERATED_PROVIDER = "auth0"
LOCAL_PROVIDER = "development"


@dataclass
class AccessClaims:
    """Claims carried by a validated access token.

    Attributes:
        subject: The ``sub`` claim (provider subject or user id)
        user_id: Internal users.id
        email: User email at issue time
        role: Role name at issue time
        provider: Identity provider that authenticated the user
        exp: Expiration timestamp (Unix epoch)
        iat: Issued at timestamp (Unix epoch)
        type: Token type ("access" or "refresh")
    """

    subject: str
    user_id: int | None
    email: str | None
    role: str | None
    provider: str | None
    exp: int
    iat: int
    type: str


@dataclass
class TokenPair:
    """Access and refresh token pair."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int = 900

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


@dataclass
class Identity:
    """The authenticated caller attached to a request."""

    user_id: int
    subject: str
    email: str | None
    role: str
    provider: str

    @property
    def is_local(self) -> bool:
        return self.provider == LOCAL_PROVIDER

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "subject": self.subject,
            "email": self.email,
            "role": self.role,
            "provider": self.provider,
        }


@dataclass
class SessionInfo:
    """Display-safe view of a refresh-token session; never carries the hash."""

    token_id: str
    created_at: datetime | str | None
    last_used_at: datetime | str | None
    expires_at: datetime | str | None
    ip_address: str | None
    user_agent: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_id": self.token_id,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
            "expires_at": self.expires_at,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }
