"""Error taxonomy for the FieldForge backend.

Every error raised by the access-control and query core derives from
``FieldForgeError`` and carries the HTTP status it maps to. The API layer
registers a single exception handler for the base class.
"""

from typing import Any


class FieldForgeError(Exception):
    """Base exception for all FieldForge domain errors."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(FieldForgeError):
    """Malformed or disallowed request parameter.

    Examples:
    - Filter or sort field not in the entity's allow-list
    - Unknown filter operator
    - Page or limit out of bounds

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    code = "validation_error"


class ForeignKeyViolation(ValidationError):
    """A referenced row (user, customer, ...) does not exist."""

    code = "foreign_key_violation"


class AuthenticationError(FieldForgeError):
    """Missing, malformed, expired or wrong-provider credential.

    HTTP Status: 401 Unauthorized
    """

    status_code = 401
    code = "authentication_error"


class CredentialRejectedError(AuthenticationError):
    """A structurally valid credential that is not allowed to act.

    Examples:
    - Local provider token while local auth is disabled
    - Local provider token on a mutating request
    - Deactivated user

    HTTP Status: 403 Forbidden
    """

    status_code = 403
    code = "credential_rejected"


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token is unusable.

    The message is fixed so that expired, revoked, unknown and tampered
    tokens are indistinguishable to the caller.
    """

    code = "invalid_refresh_token"

    def __init__(self) -> None:
        super().__init__("Invalid refresh token")


class AuthorizationError(FieldForgeError):
    """Resolved role lacks permission or fails row-level security.

    HTTP Status: 403 Forbidden
    """

    status_code = 403
    code = "forbidden"

    def __init__(self, message: str = "Forbidden", details: dict[str, Any] | None = None):
        super().__init__(message, details)


class NotFoundError(FieldForgeError):
    """Entity or row absent, or filtered out by row-level security.

    HTTP Status: 404 Not Found
    """

    status_code = 404
    code = "not_found"


class UnknownEntityError(NotFoundError):
    """No metadata is registered under the requested entity name."""

    code = "unknown_entity"

    def __init__(self, entity_name: str):
        self.entity_name = entity_name
        super().__init__(f"Unknown entity '{entity_name}'")


class ConflictError(FieldForgeError):
    """Unique-constraint violation.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    code = "conflict"


class InfrastructureError(FieldForgeError):
    """Datastore unavailable or timed out.

    Never retried inside the core; callers retry at the transport layer.

    HTTP Status: 500 Internal Server Error
    """

    status_code = 500
    code = "infrastructure_error"
