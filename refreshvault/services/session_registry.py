"""Session/device registry - tokens grouped by owner and device."""

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from refreshvault.models.refresh_token import RefreshToken, device_display_name
from refreshvault.models.soft_delete import active_only
from refreshvault.models.user import User
from refreshvault.services.crypto import TokenCodec
from refreshvault.services.errors import (
    ConcurrencyConflict,
    InvalidExpiryError,
    NotFoundError,
    UnknownUserError,
)
from refreshvault.services.validity import AbusePolicy, is_usable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedToken:
    """Result of issuance. The only time the plaintext value is handed out."""

    token_id: UUID
    plaintext: str
    expires_at: datetime

    def __repr__(self) -> str:
        return f"IssuedToken(token_id={self.token_id}, expires_at={self.expires_at})"


@dataclass(frozen=True)
class SessionInfo:
    """One active session as shown to the account owner or an admin."""

    token_id: UUID
    device_name: str | None
    device_type: str | None
    last_used_at: datetime | None
    ip_address: str | None


@dataclass(frozen=True)
class DeviceSummary:
    """Aggregate of all non-deleted tokens for one device."""

    device_id: str | None
    device_name: str | None
    device_type: str | None
    last_used_at: datetime | None
    token_count: int

    @property
    def display_name(self) -> str:
        return device_display_name(self.device_name, self.device_type)


@dataclass(frozen=True)
class UserTokenStats:
    """Per-user token counts."""

    user_id: UUID
    total: int
    usable: int


class SessionRegistry:
    """Issues refresh tokens and manages a user's sessions."""

    def __init__(
        self,
        db: AsyncSession,
        codec: TokenCodec,
        policy: AbusePolicy | None = None,
    ):
        self.db = db
        self.codec = codec
        self.policy = policy or AbusePolicy()

    async def _execute(self, stmt: Any) -> int:
        result: CursorResult[Any] = await self.db.execute(  # type: ignore[assignment]
            stmt.execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def _get_user(self, user_id: UUID) -> User | None:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def _require_user(self, user_id: UUID) -> None:
        if await self._get_user(user_id) is None:
            raise NotFoundError("user", user_id)

    async def get(self, token_id: UUID, *, include_deleted: bool = False) -> RefreshToken:
        """Load a token by id or raise NotFoundError."""
        stmt = select(RefreshToken).where(RefreshToken.id == token_id)
        if not include_deleted:
            stmt = stmt.where(active_only(RefreshToken))
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError("refresh token", token_id)
        return record

    async def get_by_plaintext(self, plaintext: str) -> RefreshToken | None:
        """Locate a record (deleted ones included) by its lookup hash."""
        result = await self.db.execute(
            select(RefreshToken)
            .where(RefreshToken.token_hash == self.codec.lookup_hash(plaintext))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def issue(
        self,
        user_id: UUID,
        *,
        expires_at: datetime,
        device_id: str | None = None,
        device_name: str | None = None,
        device_type: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> IssuedToken:
        """Create a new token in the VALID state.

        Raises:
            InvalidExpiryError: expires_at is not strictly after now.
            UnknownUserError: owner does not exist or is inactive.
            EncryptionError: no key material configured.
        """
        now = now or datetime.now(UTC)
        if expires_at <= now:
            raise InvalidExpiryError(f"Expiry {expires_at.isoformat()} is not in the future")

        user = await self._get_user(user_id)
        if user is None or not user.is_active:
            raise UnknownUserError(f"Cannot issue token for unknown or inactive user {user_id}")

        plaintext = self.codec.generate()
        encrypted, key_id = self.codec.encrypt_for_storage(plaintext)

        record = RefreshToken(
            token_hash=self.codec.lookup_hash(plaintext),
            encrypted_value=encrypted,
            key_id=key_id,
            owner_user_id=user_id,
            issued_at=now,
            expires_at=expires_at,
            device_id=device_id,
            device_name=device_name,
            device_type=device_type,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.db.add(record)
        await self.db.flush()

        logger.info(
            f"Issued refresh token {record.id} for user {user_id} "
            f"(device={device_id}, expires_at={expires_at.isoformat()})"
        )
        return IssuedToken(token_id=record.id, plaintext=plaintext, expires_at=expires_at)

    async def find_usable_by_user(
        self, user_id: UUID, now: datetime | None = None
    ) -> AsyncIterator[RefreshToken]:
        """Yield the user's usable tokens, most recently used first.

        The rows are a point-in-time snapshot taken when iteration starts;
        the iterator is single-pass.
        """
        now = now or datetime.now(UTC)
        await self._require_user(user_id)
        result = await self.db.execute(
            select(RefreshToken)
            .where(
                RefreshToken.owner_user_id == user_id,
                active_only(RefreshToken),
                RefreshToken.revoked.is_(False),
                RefreshToken.expires_at > now,
            )
            .order_by(
                # Never-used tokens sort last on every backend
                case((RefreshToken.last_used_at.is_(None), 1), else_=0),
                RefreshToken.last_used_at.desc(),
                RefreshToken.created_at.desc(),
            )
        )
        for record in result.scalars().all():
            if is_usable(record, now, self.policy):
                yield record

    async def list_sessions(self, user_id: UUID, now: datetime | None = None) -> list[SessionInfo]:
        """Usable sessions for a user. Never includes token values."""
        return [
            SessionInfo(
                token_id=record.id,
                device_name=record.device_name,
                device_type=record.device_type,
                last_used_at=record.last_used_at,
                ip_address=record.ip_address,
            )
            async for record in self.find_usable_by_user(user_id, now)
        ]

    async def revoke(self, token_id: UUID) -> int:
        """Revoke one token. Idempotent: returns 0 if already revoked or deleted."""
        exists = await self.db.execute(select(RefreshToken.id).where(RefreshToken.id == token_id))
        if exists.scalar_one_or_none() is None:
            raise NotFoundError("refresh token", token_id)

        count = await self._execute(
            update(RefreshToken)
            .where(
                RefreshToken.id == token_id,
                RefreshToken.revoked.is_(False),
                active_only(RefreshToken),
            )
            .values(revoked=True, version=RefreshToken.version + 1)
        )
        if count:
            logger.info(f"Revoked refresh token {token_id}")
        return count

    async def revoke_all_for_user(self, user_id: UUID, except_token_id: UUID | None = None) -> int:
        """Revoke every live token of a user, optionally keeping one."""
        await self._require_user(user_id)
        stmt = update(RefreshToken).where(
            RefreshToken.owner_user_id == user_id,
            RefreshToken.revoked.is_(False),
            active_only(RefreshToken),
        )
        if except_token_id is not None:
            stmt = stmt.where(RefreshToken.id != except_token_id)
        count = await self._execute(stmt.values(revoked=True, version=RefreshToken.version + 1))
        logger.info(
            f"Revoked {count} refresh tokens for user {user_id}"
            + (f" (kept {except_token_id})" if except_token_id else "")
        )
        return count

    async def revoke_all_for_device(self, user_id: UUID, device_id: str) -> int:
        """Revoke every live token for a user/device pair."""
        await self._require_user(user_id)
        count = await self._execute(
            update(RefreshToken)
            .where(
                RefreshToken.owner_user_id == user_id,
                RefreshToken.device_id == device_id,
                RefreshToken.revoked.is_(False),
                active_only(RefreshToken),
            )
            .values(revoked=True, version=RefreshToken.version + 1)
        )
        logger.info(f"Revoked {count} refresh tokens for user {user_id} on device {device_id}")
        return count

    async def list_devices(self, user_id: UUID) -> list[DeviceSummary]:
        """One entry per distinct device id, most recently used first."""
        await self._require_user(user_id)
        last_used = func.max(RefreshToken.last_used_at)
        result = await self.db.execute(
            select(
                RefreshToken.device_id,
                func.max(RefreshToken.device_name),
                func.max(RefreshToken.device_type),
                last_used,
                func.count(RefreshToken.id),
            )
            .where(RefreshToken.owner_user_id == user_id, active_only(RefreshToken))
            .group_by(RefreshToken.device_id)
        )
        devices = [
            DeviceSummary(
                device_id=device_id,
                device_name=device_name,
                device_type=device_type,
                # Aggregates bypass the column type on some backends
                last_used_at=_as_utc(last),
                token_count=count,
            )
            for device_id, device_name, device_type, last, count in result.all()
        ]
        epoch = datetime.min.replace(tzinfo=UTC)
        devices.sort(key=lambda d: d.last_used_at or epoch, reverse=True)
        return devices

    async def extend_expiry(
        self, token_id: UUID, delta: timedelta, now: datetime | None = None
    ) -> RefreshToken:
        """Push a usable token's expiry further out."""
        now = now or datetime.now(UTC)
        if delta <= timedelta(0):
            raise InvalidExpiryError("Expiry extension must be positive")
        record = await self.get(token_id)
        if not is_usable(record, now, self.policy):
            raise InvalidExpiryError(
                f"Refresh token {token_id} is not usable and cannot be extended"
            )
        count = await self._execute(
            update(RefreshToken)
            .where(RefreshToken.id == token_id, RefreshToken.version == record.version)
            .values(
                expires_at=record.expires_at + delta,
                version=RefreshToken.version + 1,
            )
        )
        if count != 1:
            raise ConcurrencyConflict(token_id)
        await self.db.refresh(record)
        return record

    async def soft_delete(self, token_id: UUID) -> None:
        """Hide a token from every lookup; the retention sweep removes it later."""
        record = await self.get(token_id)
        record.mark_deleted()
        await self._flush_versioned(token_id)
        logger.info(f"Soft-deleted refresh token {token_id}")

    async def restore(self, token_id: UUID) -> RefreshToken:
        """Undo a soft delete. Revocation, if any, stays in place."""
        record = await self.get(token_id, include_deleted=True)
        record.restore()
        await self._flush_versioned(token_id)
        return record

    async def _flush_versioned(self, token_id: UUID) -> None:
        try:
            await self.db.flush()
        except StaleDataError as e:
            raise ConcurrencyConflict(token_id) from e

    async def list_expiring_soon(
        self, within: timedelta, now: datetime | None = None
    ) -> list[RefreshToken]:
        """Live tokens whose expiry falls within the next ``within``."""
        now = now or datetime.now(UTC)
        result = await self.db.execute(
            select(RefreshToken)
            .where(
                RefreshToken.expires_at > now,
                RefreshToken.expires_at <= now + within,
                RefreshToken.revoked.is_(False),
                active_only(RefreshToken),
            )
            .order_by(RefreshToken.expires_at.asc())
        )
        return list(result.scalars().all())

    async def list_blocked(self, now: datetime | None = None) -> list[RefreshToken]:
        """Tokens inside an active block window, latest window end first."""
        now = now or datetime.now(UTC)
        result = await self.db.execute(
            select(RefreshToken)
            .where(RefreshToken.blocked_until > now, active_only(RefreshToken))
            .order_by(RefreshToken.blocked_until.desc())
        )
        return list(result.scalars().all())

    async def list_suspicious(self, threshold: int | None = None) -> list[RefreshToken]:
        """Tokens with at least ``threshold`` failed attempts (default: the policy max)."""
        threshold = threshold if threshold is not None else self.policy.max_failed_attempts
        result = await self.db.execute(
            select(RefreshToken)
            .where(RefreshToken.failed_attempts >= threshold, active_only(RefreshToken))
            .order_by(RefreshToken.failed_attempts.desc())
        )
        return list(result.scalars().all())

    async def list_by_ip_address(self, ip_address: str) -> list[RefreshToken]:
        """Tokens issued to ``ip_address``, newest first."""
        result = await self.db.execute(
            select(RefreshToken)
            .where(RefreshToken.ip_address == ip_address, active_only(RefreshToken))
            .order_by(RefreshToken.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_unused(self, since: datetime) -> list[RefreshToken]:
        """Tokens never used, or not used since ``since``, oldest first."""
        result = await self.db.execute(
            select(RefreshToken)
            .where(
                (RefreshToken.last_used_at.is_(None)) | (RefreshToken.last_used_at < since),
                active_only(RefreshToken),
            )
            .order_by(RefreshToken.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_most_active(self, limit: int = 10) -> list[RefreshToken]:
        """Tokens with the highest usage counts."""
        if limit < 1:
            raise ValueError("limit must be at least 1")
        result = await self.db.execute(
            select(RefreshToken)
            .where(active_only(RefreshToken))
            .order_by(RefreshToken.usage_count.desc(), RefreshToken.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_latest_for_device(self, user_id: UUID, device_id: str) -> RefreshToken | None:
        """The newest token for a user/device pair, revoked or expired ones included."""
        result = await self.db.execute(
            select(RefreshToken)
            .where(
                RefreshToken.owner_user_id == user_id,
                RefreshToken.device_id == device_id,
                active_only(RefreshToken),
            )
            .order_by(RefreshToken.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def token_statistics_by_user(self, now: datetime | None = None) -> list[UserTokenStats]:
        """Total and usable token counts per owner."""
        now = now or datetime.now(UTC)
        usable = case(
            (
                (RefreshToken.revoked.is_(False))
                & (RefreshToken.expires_at > now)
                & ((RefreshToken.blocked_until.is_(None)) | (RefreshToken.blocked_until <= now))
                & (RefreshToken.failed_attempts < self.policy.max_failed_attempts),
                1,
            ),
            else_=0,
        )
        result = await self.db.execute(
            select(RefreshToken.owner_user_id, func.count(RefreshToken.id), func.sum(usable))
            .where(active_only(RefreshToken))
            .group_by(RefreshToken.owner_user_id)
        )
        return [
            UserTokenStats(user_id=user_id, total=total, usable=int(usable_count or 0))
            for user_id, total, usable_count in result.all()
        ]


def _as_utc(value: datetime | str | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
