"""Administrative view of user sessions."""

from __future__ import annotations

import logging
from typing import Any

from fieldforge.auth.token_service import TokenService
from fieldforge.auth.types import Identity
from fieldforge.core.errors import NotFoundError
from fieldforge.db.users import UserDirectory
from fieldforge.services.audit import AuditEvent, AuditSink, LoggingAuditSink

logger = logging.getLogger(__name__)

REASON_ADMIN_FORCED = "admin_forced"


class SessionsService:
    """Lists and force-revokes another user's sessions."""

    def __init__(
        self,
        tokens: TokenService,
        users: UserDirectory,
        audit: AuditSink | None = None,
    ):
        self._tokens = tokens
        self._users = users
        self._audit = audit or LoggingAuditSink()

    def list_sessions(self, user_id: int) -> list[dict[str, Any]]:
        self._require_user(user_id)
        return [s.to_dict() for s in self._tokens.get_user_tokens(user_id)]

    def force_logout(self, user_id: int, actor: Identity) -> int:
        """Revoke every active session of ``user_id``.

        Returns:
            Number of sessions revoked
        """
        self._require_user(user_id)
        count = self._tokens.revoke_all_user_tokens(user_id, REASON_ADMIN_FORCED)
        logger.warning(
            "User %s force-logged out user %s (%d session(s))", actor.user_id, user_id, count
        )
        self._audit.record(
            AuditEvent(
                resource="session",
                action="force_logout",
                actor_id=actor.user_id,
                before={"user_id": user_id},
                after={"user_id": user_id, "revoked": count},
            )
        )
        return count

    def _require_user(self, user_id: int) -> None:
        if self._users.get(user_id) is None:
            raise NotFoundError(f"User {user_id} not found")
