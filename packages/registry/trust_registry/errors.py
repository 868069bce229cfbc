"""
Typed failures raised by the trust stores.

Callers branch on these; none of them signals a system fault. Storage
failures raised by a gateway backend are never wrapped in these types.
"""

from __future__ import annotations

# Shared by every access-token authentication failure so the external
# message does not reveal whether a token exists.
INVALID_TOKEN_MESSAGE = "Invalid or expired access token"


class IdentityError(Exception):
    """Base class for identity and trust failures."""

    code = "identity_error"
    public_message = "Request failed"

    def __init__(self, detail: str = "", *, public_message: str | None = None):
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message
        if public_message is not None:
            self.public_message = public_message


class NotFoundError(IdentityError):
    code = "not_found"
    public_message = "Not found"


class ConflictError(IdentityError):
    code = "conflict"
    public_message = "Conflicts with existing state"


class ExpiredError(IdentityError):
    code = "expired"
    public_message = "Expired"


class RevokedError(IdentityError):
    code = "revoked"
    public_message = "Revoked"


class UnauthenticatedError(IdentityError):
    code = "unauthenticated"
    public_message = INVALID_TOKEN_MESSAGE


class ForbiddenError(IdentityError):
    code = "forbidden"
    public_message = "Permission denied"


class InvalidTransitionError(IdentityError):
    code = "invalid_transition"
    public_message = "Invitation can no longer be changed"


class InvalidScopeError(IdentityError):
    code = "invalid_scope"
    public_message = "Requested scope is not permitted"


class FetchFailedError(IdentityError):
    code = "fetch_failed"
    public_message = "Certificate unavailable"

    def __init__(self, host_key: str, detail: str = ""):
        super().__init__(detail or f"certificate fetch failed for {host_key}")
        self.host_key = host_key


# Failures Validate may raise for a presented token
AUTHENTICATION_ERRORS = (UnauthenticatedError, ExpiredError, RevokedError)
