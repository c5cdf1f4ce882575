"""Refresh-token sessions and short-lived access tokens.

Session row states:

    Active -> Used (last_used_at set, still Active)
           -> Rotated (revoked, replaced by a newer session)
           -> Revoked (explicit logout)
           -> Expired (past expires_at)
    Expired/Revoked rows are kept until the cleanup sweep purges rows
    that expired more than ``retention_days`` ago.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

import jwt
from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.engine import Connection, Engine

from fieldforge.auth.hashing import TokenHasher
from fieldforge.auth.types import (
    FEDERATED_PROVIDER,
    AccessClaims,
    SessionInfo,
    TokenPair,
)
from fieldforge.core.errors import (
    AuthenticationError,
    CredentialRejectedError,
    ForeignKeyViolation,
    InvalidRefreshTokenError,
)
from fieldforge.db.engine import database_errors
from fieldforge.db.schema import refresh_tokens, utcnow
from fieldforge.db.users import UserDirectory, UserRecord

logger = logging.getLogger(__name__)

REASON_ROTATED = "rotated"
REASON_LOGOUT = "logout"
REASON_LOGOUT_ALL = "logout_all"


class TokenService:
    """Issues, rotates, revokes and purges refresh-token sessions.

    Uses HS256 JWTs signed with a shared secret. Only a salted hash of each
    refresh token is stored.
    """

    ACCESS_TOKEN_TTL = 15 * 60  # 15 minutes
    REFRESH_TOKEN_TTL = 7 * 24 * 60 * 60  # 7 days
    RETENTION_DAYS = 30

    def __init__(
        self,
        engine: Engine,
        secret_key: str,
        *,
        algorithm: str = "HS256",
        access_token_ttl: int | None = None,
        refresh_token_ttl: int | None = None,
        retention_days: int | None = None,
        hasher: TokenHasher | None = None,
        users: UserDirectory | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the token service.

        Args:
            engine: SQLAlchemy engine holding the refresh_tokens table
            secret_key: Secret for signing tokens (should be at least 32 chars)
            algorithm: JWT algorithm (default HS256)
            access_token_ttl: Access token lifetime in seconds
            refresh_token_ttl: Session lifetime in seconds
            retention_days: Days an expired session is kept before purge
            hasher: Refresh-token hasher
            users: User lookup (built from ``engine`` when omitted)
            clock: Returns the current UTC time
        """
        self._engine = engine
        self._secret_key = secret_key
        self._algorithm = algorithm
        self.access_token_ttl = access_token_ttl or self.ACCESS_TOKEN_TTL
        self.refresh_token_ttl = refresh_token_ttl or self.REFRESH_TOKEN_TTL
        self.retention_days = self.RETENTION_DAYS if retention_days is None else retention_days
        self._hasher = hasher or TokenHasher()
        self._users = users or UserDirectory(engine)
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def generate_token_pair(
        self,
        user_id: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
        *,
        provider: str = FEDERATED_PROVIDER,
        subject: str | None = None,
    ) -> TokenPair:
        """Create a new Active session for a user and return its token pair.

        Raises:
            ForeignKeyViolation: If the user does not exist
            CredentialRejectedError: If the user or its role is deactivated
        """
        user = self._users.get(user_id)
        if user is None:
            raise ForeignKeyViolation(f"User {user_id} does not exist")
        if not user.can_authenticate:
            raise CredentialRejectedError("User account is disabled")

        with database_errors(), self._engine.begin() as conn:
            pair = self._issue(conn, user, provider, subject, ip_address, user_agent)

        logger.info("Issued session for user %s via %s", user.id, provider)
        return pair

    def _issue(
        self,
        conn: Connection,
        user: UserRecord,
        provider: str,
        subject: str | None,
        ip_address: str | None,
        user_agent: str | None,
    ) -> TokenPair:
        """Insert one session row and sign its tokens."""
        now = self._clock()
        issued_at = int(now.timestamp())
        token_id = uuid.uuid4().hex
        subject = subject or str(user.id)

        access_token = jwt.encode(
            {
                "sub": subject,
                "userId": user.id,
                "email": user.email,
                "role": user.role,
                "provider": provider,
                "type": "access",
                "iat": issued_at,
                "exp": issued_at + self.access_token_ttl,
            },
            self._secret_key,
            algorithm=self._algorithm,
        )
        refresh_token = jwt.encode(
            {
                "sub": subject,
                "userId": user.id,
                "tokenId": token_id,
                "provider": provider,
                "type": "refresh",
                "jti": uuid.uuid4().hex,
                "iat": issued_at,
                "exp": issued_at + self.refresh_token_ttl,
            },
            self._secret_key,
            algorithm=self._algorithm,
        )

        conn.execute(
            insert(refresh_tokens).values(
                user_id=user.id,
                token_id=token_id,
                token_hash=self._hasher.hash(refresh_token),
                ip_address=ip_address,
                user_agent=user_agent,
                expires_at=now + timedelta(seconds=self.refresh_token_ttl),
                created_at=now,
            )
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_token_ttl,
        )

    # ------------------------------------------------------------------
    # Rotate
    # ------------------------------------------------------------------

    def refresh_access_token(
        self,
        raw_refresh_token: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        """Consume an Active session and replace it with a new one.

        Every failure raises the same InvalidRefreshTokenError so the
        response never reveals whether the session expired, was revoked,
        never existed or was tampered with.
        """
        payload = self._decode_refresh(raw_refresh_token)
        token_id = payload["tokenId"]
        now = self._clock()

        with database_errors(), self._engine.connect() as conn:
            row = conn.execute(
                select(refresh_tokens.c.user_id, refresh_tokens.c.token_hash).where(
                    self._active(now), refresh_tokens.c.token_id == token_id
                )
            ).mappings().first()

        if row is None:
            logger.warning("Refresh rejected: no active session %s", token_id)
            raise InvalidRefreshTokenError()

        if not self._hasher.verify(raw_refresh_token, row["token_hash"]):
            logger.warning("Refresh rejected: hash mismatch for session %s", token_id)
            raise InvalidRefreshTokenError()

        if payload.get("userId") != row["user_id"]:
            logger.warning("Refresh rejected: user mismatch for session %s", token_id)
            raise InvalidRefreshTokenError()

        user = self._users.get(row["user_id"])
        if user is None or not user.can_authenticate:
            logger.warning("Refresh rejected: user %s unavailable", row["user_id"])
            raise InvalidRefreshTokenError()

        with database_errors(), self._engine.begin() as conn:
            consumed = conn.execute(
                update(refresh_tokens)
                .where(self._active(now), refresh_tokens.c.token_id == token_id)
                .values(revoked_at=now, revoked_reason=REASON_ROTATED, last_used_at=now)
            )
            if consumed.rowcount != 1:
                # Another request rotated this session first
                logger.warning("Refresh rejected: session %s already consumed", token_id)
                raise InvalidRefreshTokenError()
            pair = self._issue(
                conn,
                user,
                payload.get("provider") or FEDERATED_PROVIDER,
                payload.get("sub"),
                ip_address,
                user_agent,
            )

        logger.info("Rotated session %s for user %s", token_id, user.id)
        return pair

    def _decode_refresh(self, raw_refresh_token: str) -> dict[str, Any]:
        try:
            payload = jwt.decode(
                raw_refresh_token,
                self._secret_key,
                algorithms=[self._algorithm],
            )
        except jwt.InvalidTokenError as e:
            logger.warning("Refresh rejected: %s", e.__class__.__name__)
            raise InvalidRefreshTokenError() from None

        if payload.get("type") != "refresh" or not payload.get("tokenId"):
            logger.warning("Refresh rejected: not a refresh token")
            raise InvalidRefreshTokenError()
        return payload

    # ------------------------------------------------------------------
    # Revoke and purge
    # ------------------------------------------------------------------

    def revoke_token(self, token_id: str, reason: str | None = None) -> bool:
        """Revoke one session. Returns False when nothing was revoked."""
        now = self._clock()
        with database_errors(), self._engine.begin() as conn:
            result = conn.execute(
                update(refresh_tokens)
                .where(
                    refresh_tokens.c.token_id == token_id,
                    refresh_tokens.c.revoked_at.is_(None),
                )
                .values(revoked_at=now, revoked_reason=reason or REASON_LOGOUT)
            )
        revoked = result.rowcount > 0
        if revoked:
            logger.info("Revoked session %s (%s)", token_id, reason or REASON_LOGOUT)
        return revoked

    def revoke_refresh_token(self, raw_refresh_token: str, reason: str | None = None) -> bool:
        """Revoke the session a refresh token belongs to (logout).

        Returns False for tokens that cannot be decoded.
        """
        try:
            payload = self._decode_refresh(raw_refresh_token)
        except InvalidRefreshTokenError:
            return False
        return self.revoke_token(payload["tokenId"], reason)

    def revoke_all_user_tokens(self, user_id: int, reason: str | None = None) -> int:
        """Revoke every Active session of a user. Returns the number revoked."""
        now = self._clock()
        with database_errors(), self._engine.begin() as conn:
            result = conn.execute(
                update(refresh_tokens)
                .where(self._active(now), refresh_tokens.c.user_id == user_id)
                .values(revoked_at=now, revoked_reason=reason or REASON_LOGOUT_ALL)
            )
        count = result.rowcount
        logger.info("Revoked %d session(s) for user %s", count, user_id)
        return count

    def cleanup_expired_tokens(self) -> int:
        """Delete sessions that expired more than ``retention_days`` ago.

        Revoked sessions that have not expired yet are kept.
        """
        cutoff = self._clock() - timedelta(days=self.retention_days)
        with database_errors(), self._engine.begin() as conn:
            result = conn.execute(
                delete(refresh_tokens).where(refresh_tokens.c.expires_at < cutoff)
            )
        count = result.rowcount
        logger.info("Purged %d expired session(s)", count)
        return count

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_user_tokens(self, user_id: int) -> list[SessionInfo]:
        """Active sessions of a user, newest first."""
        now = self._clock()
        with database_errors(), self._engine.connect() as conn:
            rows = conn.execute(
                select(
                    refresh_tokens.c.token_id,
                    refresh_tokens.c.created_at,
                    refresh_tokens.c.last_used_at,
                    refresh_tokens.c.expires_at,
                    refresh_tokens.c.ip_address,
                    refresh_tokens.c.user_agent,
                )
                .where(self._active(now), refresh_tokens.c.user_id == user_id)
                .order_by(refresh_tokens.c.created_at.desc(), refresh_tokens.c.id.desc())
            ).mappings().all()
        return [SessionInfo(**row) for row in rows]

    def decode_access_token(self, token: str) -> AccessClaims:
        """Validate an access token's signature, expiry and type.

        Raises:
            AuthenticationError: If the token is expired, invalid or not an access token
        """
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired") from None
        except jwt.InvalidTokenError:
            raise AuthenticationError("Invalid token") from None

        if payload.get("type") != "access":
            raise AuthenticationError("Invalid token")

        return AccessClaims(
            subject=payload.get("sub") or "",
            user_id=payload.get("userId"),
            email=payload.get("email"),
            role=payload.get("role"),
            provider=payload.get("provider"),
            exp=payload.get("exp", 0),
            iat=payload.get("iat", 0),
            type=payload["type"],
        )

    @staticmethod
    def _active(now: datetime):
        return and_(refresh_tokens.c.revoked_at.is_(None), refresh_tokens.c.expires_at > now)
