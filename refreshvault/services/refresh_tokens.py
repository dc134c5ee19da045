"""Refresh token service - issuance and validate/consume entry points."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TypeVar
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from refreshvault.core.config import settings
from refreshvault.services.abuse_counter import AbuseCounter
from refreshvault.services.crypto import TokenCodec, get_token_codec
from refreshvault.services.errors import (
    INVALID_SESSION_MESSAGE,
    ConcurrencyConflict,
    FailureReason,
    InvalidExpiryError,
    OperationTimeout,
    ValidationFailure,
)
from refreshvault.services.session_registry import IssuedToken, SessionRegistry
from refreshvault.services.validity import PENALIZED_STATES, AbusePolicy, classify

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Valid:
    """The token was accepted and its success has been recorded."""

    token_id: UUID
    user_id: UUID


@dataclass(frozen=True)
class Invalid:
    """The token was rejected.

    ``reason`` is for logs and metrics; untrusted callers only ever get
    ``public_message``.
    """

    reason: FailureReason
    token_id: UUID | None = None

    @property
    def public_message(self) -> str:
        return INVALID_SESSION_MESSAGE

    def to_exception(self) -> ValidationFailure:
        return ValidationFailure(self.reason, self.token_id)


ValidationResult = Valid | Invalid


class RefreshTokenService:
    """Coordinates codec, state machine, abuse counter and registry.

    Each call commits its own transaction. Calls accept a timeout; when it
    fires the transaction is rolled back, so a validate either fully applied
    its success/failure update or applied nothing.
    """

    def __init__(
        self,
        db: AsyncSession,
        codec: TokenCodec | None = None,
        policy: AbusePolicy | None = None,
    ):
        self.db = db
        self.codec = codec or get_token_codec()
        self.policy = policy or AbusePolicy.from_settings(settings)
        self.registry = SessionRegistry(db, self.codec, self.policy)
        self.counter = AbuseCounter(db, self.policy)

    async def _bounded(self, operation: Callable[[], Awaitable[T]], timeout: float | None) -> T:
        """Run ``operation`` and commit, all within ``timeout`` seconds."""
        timeout = timeout if timeout is not None else settings.operation_timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                result = await operation()
                await self.db.commit()
                return result
        except TimeoutError as e:
            await self.db.rollback()
            logger.warning(f"Refresh token operation timed out after {timeout}s; rolled back")
            raise OperationTimeout(f"Operation exceeded {timeout}s") from e
        except BaseException:
            await self.db.rollback()
            raise

    async def issue(
        self,
        user_id: UUID,
        *,
        ttl: timedelta | None = None,
        device_id: str | None = None,
        device_name: str | None = None,
        device_type: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        timeout: float | None = None,
    ) -> IssuedToken:
        """Issue a token valid for ``ttl`` (default from settings)."""
        ttl = ttl if ttl is not None else timedelta(days=settings.default_token_ttl_days)
        if ttl <= timedelta(0):
            raise InvalidExpiryError("Token TTL must be positive")
        now = datetime.now(UTC)

        async def _issue() -> IssuedToken:
            return await self.registry.issue(
                user_id,
                expires_at=now + ttl,
                device_id=device_id,
                device_name=device_name,
                device_type=device_type,
                ip_address=ip_address,
                user_agent=user_agent,
                now=now,
            )

        return await self._bounded(_issue, timeout)

    async def validate(
        self,
        plaintext: str,
        *,
        now: datetime | None = None,
        timeout: float | None = None,
    ) -> ValidationResult:
        """Check a presented token and record the outcome.

        On Valid the success has been applied. On Invalid with reason
        blocked or exhausted a failure has been applied; expired, revoked
        and deleted rows are terminal and are not touched, and not_found
        has no row to penalize.

        Raises:
            ConcurrencyConflict: the row kept changing across one retry.
            OperationTimeout: the call did not finish in time.
            DecryptionError: the stored ciphertext could not be read.
        """
        now = now or datetime.now(UTC)
        return await self._bounded(lambda: self._validate(plaintext, now), timeout)

    async def _validate(self, plaintext: str, now: datetime) -> ValidationResult:
        try:
            return await self._validate_once(plaintext, now)
        except ConcurrencyConflict as e:
            logger.info(f"Concurrent update on refresh token {e.token_id}; re-reading once")
        # Second pass sees the winner's committed row
        return await self._validate_once(plaintext, now)

    async def _validate_once(self, plaintext: str, now: datetime) -> ValidationResult:
        try:
            record = await self.registry.get_by_plaintext(plaintext)
        except UnicodeEncodeError:
            # Lone surrogates and the like can arrive from JSON but can never
            # be an issued value
            logger.info("Refresh token validation failed: not_found (unencodable value)")
            return Invalid(FailureReason.NOT_FOUND)
        if record is None or not self.codec.matches(
            plaintext, record.encrypted_value, record.key_id
        ):
            logger.info("Refresh token validation failed: not_found")
            return Invalid(FailureReason.NOT_FOUND)

        state = classify(record, now, self.policy)
        reason = state.failure_reason
        if reason is None:
            await self.counter.record_success(record, now)
            logger.debug(f"Refresh token {record.id} accepted (uses={record.usage_count})")
            return Valid(token_id=record.id, user_id=record.owner_user_id)

        if state in PENALIZED_STATES:
            await self.counter.record_failure(record, now)

        logger.info(f"Refresh token {record.id} rejected: {reason.value}")
        return Invalid(reason, token_id=record.id)

    async def consume(self, plaintext: str, *, timeout: float | None = None) -> Valid:
        """Like validate(), but raises ValidationFailure instead of returning Invalid."""
        result = await self.validate(plaintext, timeout=timeout)
        if isinstance(result, Invalid):
            raise result.to_exception()
        return result

    async def record_failed_attempt(
        self, token_id: UUID, *, now: datetime | None = None, timeout: float | None = None
    ) -> None:
        """Count a failure against a token reached through a non-secret handle."""
        now = now or datetime.now(UTC)
        await self._bounded(lambda: self.counter.record_failure_by_id(token_id, now), timeout)
