"""Abuse counter - failed-attempt accounting and temporary blocking.

All counters are updated by single UPDATE statements evaluated in the
database (``failed_attempts = failed_attempts + 1``), never by
read-modify-write in application memory, so concurrent failures from
several processes cannot lose increments.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import case, literal, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from refreshvault.models.base import UTCDateTime
from refreshvault.models.refresh_token import RefreshToken
from refreshvault.models.soft_delete import active_only
from refreshvault.services.errors import ConcurrencyConflict, NotFoundError
from refreshvault.services.validity import (
    AbusePolicy,
    has_exceeded_max_attempts,
    is_blocked,
)

logger = logging.getLogger(__name__)


class AbuseCounter:
    """Records authentication outcomes against refresh token rows."""

    def __init__(self, db: AsyncSession, policy: AbusePolicy | None = None):
        self.db = db
        self.policy = policy or AbusePolicy()

    async def _execute(self, stmt: Any) -> int:
        result: CursorResult[Any] = await self.db.execute(  # type: ignore[assignment]
            stmt.execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def record_success(self, record: RefreshToken, now: datetime) -> None:
        """Apply a successful use.

        Guarded by the version the caller classified, so of two concurrent
        successes on the same row only one can apply; the other gets
        ConcurrencyConflict and must re-read and re-classify.
        """
        stmt = (
            update(RefreshToken)
            .where(
                RefreshToken.id == record.id,
                RefreshToken.version == record.version,
                RefreshToken.revoked.is_(False),
                active_only(RefreshToken),
            )
            .values(
                failed_attempts=0,
                blocked_until=None,
                usage_count=RefreshToken.usage_count + 1,
                last_used_at=now,
                version=RefreshToken.version + 1,
            )
        )
        if await self._execute(stmt) != 1:
            raise ConcurrencyConflict(record.id)
        await self.db.refresh(record)

    async def record_failure(self, record: RefreshToken, now: datetime) -> bool:
        """Count one failed attempt, opening a block window at the threshold.

        Returns False if the row vanished (soft-deleted) in the meantime.
        """
        applied = await self._increment_failures(record.id, now)
        if applied:
            await self.db.refresh(record)
            if has_exceeded_max_attempts(record, self.policy):
                logger.warning(
                    f"Refresh token {record.id} blocked until {record.blocked_until} "
                    f"after {record.failed_attempts} failed attempts"
                )
        return applied

    async def record_failure_by_id(self, token_id: UUID, now: datetime) -> None:
        """Failure path for callers holding only the token id."""
        if not await self._increment_failures(token_id, now):
            raise NotFoundError("refresh token", token_id)

    async def _increment_failures(self, token_id: UUID, now: datetime) -> bool:
        new_count = RefreshToken.failed_attempts + 1
        block_until = literal(now + self.policy.block_window, UTCDateTime())
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.id == token_id, active_only(RefreshToken))
            .values(
                failed_attempts=new_count,
                # SET expressions see the pre-update row, so new_count is the
                # incremented value in both branches
                blocked_until=case(
                    (new_count >= self.policy.max_failed_attempts, block_until),
                    else_=RefreshToken.blocked_until,
                ),
                version=RefreshToken.version + 1,
            )
        )
        return await self._execute(stmt) == 1

    async def reset(self, token_id: UUID) -> None:
        """Administrative reset of the failure counter and any block window."""
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.id == token_id, active_only(RefreshToken))
            .values(failed_attempts=0, blocked_until=None, version=RefreshToken.version + 1)
        )
        if await self._execute(stmt) != 1:
            raise NotFoundError("refresh token", token_id)
        logger.info(f"Failed-attempt counter reset for refresh token {token_id}")

    async def unblock_elapsed(self, now: datetime) -> int:
        """Null out block windows that already ended.

        Purely cosmetic: classify() ignores a past blocked_until anyway, so
        the version is left alone to avoid spurious conflicts.
        """
        stmt = (
            update(RefreshToken)
            .where(
                RefreshToken.blocked_until.is_not(None),
                RefreshToken.blocked_until <= now,
                active_only(RefreshToken),
            )
            .values(blocked_until=None)
        )
        return await self._execute(stmt)

    def has_exceeded_max_attempts(self, record: RefreshToken) -> bool:
        return has_exceeded_max_attempts(record, self.policy)

    def is_blocked(self, record: RefreshToken, now: datetime) -> bool:
        return is_blocked(record, now)
