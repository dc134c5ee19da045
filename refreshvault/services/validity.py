"""Refresh token validity state machine.

State is never stored. It is recomputed from the record's fields and the
current time on every call, so there is no cached flag that can drift from
the columns it would be derived from.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from refreshvault.core.config import Settings
from refreshvault.models.refresh_token import RefreshToken
from refreshvault.services.errors import FailureReason

DEFAULT_MAX_FAILED_ATTEMPTS = 5
DEFAULT_BLOCK_WINDOW = timedelta(hours=1)


class TokenState(str, Enum):
    """Derived state of a refresh token at a point in time."""

    VALID = "valid"
    EXPIRED = "expired"
    REVOKED = "revoked"
    BLOCKED = "blocked"
    EXHAUSTED = "exhausted"
    DELETED = "deleted"

    @property
    def failure_reason(self) -> FailureReason | None:
        if self is TokenState.VALID:
            return None
        return FailureReason(self.value)


# Reasons on which a presentation of the token counts as another failure
PENALIZED_STATES = frozenset({TokenState.BLOCKED, TokenState.EXHAUSTED})


@dataclass(frozen=True)
class AbusePolicy:
    """Failure threshold and blocking window."""

    max_failed_attempts: int = DEFAULT_MAX_FAILED_ATTEMPTS
    block_window: timedelta = DEFAULT_BLOCK_WINDOW

    @classmethod
    def from_settings(cls, settings: Settings) -> "AbusePolicy":
        return cls(
            max_failed_attempts=settings.max_failed_attempts,
            block_window=timedelta(minutes=settings.block_window_minutes),
        )


def is_expired(record: RefreshToken, now: datetime) -> bool:
    # Inclusive: a token is already expired at the instant expires_at
    return now >= record.expires_at


def is_blocked(record: RefreshToken, now: datetime) -> bool:
    return record.blocked_until is not None and now < record.blocked_until


def has_exceeded_max_attempts(record: RefreshToken, policy: AbusePolicy) -> bool:
    return record.failed_attempts >= policy.max_failed_attempts


def classify(record: RefreshToken, now: datetime, policy: AbusePolicy | None = None) -> TokenState:
    """Derive the token's state.

    Order matters: deletion and revocation are permanent and win over
    everything; expiry is checked before blocking; an active block window
    is reported before exhaustion so callers can tell "cooling down" from
    "still exhausted after the window elapsed". Exhaustion only clears via
    a successful use or an administrative reset.
    """
    policy = policy or AbusePolicy()
    if record.deleted:
        return TokenState.DELETED
    if record.revoked:
        return TokenState.REVOKED
    if is_expired(record, now):
        return TokenState.EXPIRED
    if is_blocked(record, now):
        return TokenState.BLOCKED
    if has_exceeded_max_attempts(record, policy):
        return TokenState.EXHAUSTED
    return TokenState.VALID


def is_usable(record: RefreshToken, now: datetime, policy: AbusePolicy | None = None) -> bool:
    return classify(record, now, policy) is TokenState.VALID
