"""Refresh token engine errors.

Authentication-path failures all collapse to one opaque message at the
boundary; the specific reason travels on the exception for logging only.
Administrative paths (revoke, list) raise NotFoundError distinctly because
their callers are trusted.
"""

from enum import Enum
from uuid import UUID

INVALID_SESSION_MESSAGE = "Invalid session"


class FailureReason(str, Enum):
    """Why a presented refresh token was rejected."""

    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    REVOKED = "revoked"
    BLOCKED = "blocked"
    EXHAUSTED = "exhausted"
    DELETED = "deleted"


class RefreshTokenError(Exception):
    """Base refresh token error."""

    pass


class ValidationFailure(RefreshTokenError):
    """A presented token cannot be used.

    ``str()`` is always the generic message so the reason cannot leak to an
    untrusted caller by accident.
    """

    def __init__(self, reason: FailureReason, token_id: UUID | None = None):
        self.reason = reason
        self.token_id = token_id
        super().__init__(INVALID_SESSION_MESSAGE)


class IssuanceError(RefreshTokenError):
    """A token could not be issued. No record was created."""

    pass


class InvalidExpiryError(IssuanceError):
    """Requested expiry is not strictly in the future."""

    pass


class UnknownUserError(IssuanceError):
    """Token owner does not exist or is inactive."""

    pass


class NotFoundError(RefreshTokenError):
    """Administrative call referenced an unknown token or user."""

    def __init__(self, kind: str, identifier: object):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class ConcurrencyConflict(RefreshTokenError):
    """Optimistic-lock check failed; the row changed underneath us.

    Transient: the whole validate call is safe to retry.
    """

    def __init__(self, token_id: UUID):
        self.token_id = token_id
        super().__init__(f"Concurrent modification of refresh token {token_id}")


class OperationTimeout(RefreshTokenError):
    """Call exceeded its timeout; nothing was committed."""

    pass
