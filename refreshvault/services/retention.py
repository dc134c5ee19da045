"""Token retention service - purges refresh tokens nobody can use anymore."""

import asyncio
import threading
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import delete, or_, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from refreshvault.core import async_session_maker, settings
from refreshvault.core.logging import get_logger
from refreshvault.models.refresh_token import RefreshToken
from refreshvault.models.soft_delete import active_only
from refreshvault.services.abuse_counter import AbuseCounter
from refreshvault.services.validity import TokenState, classify

logger = get_logger("retention")

# How often to run cleanup (in seconds)
CLEANUP_INTERVAL_SECONDS = 3600  # 1 hour

DEFAULT_BATCH_SIZE = 1000
DEFAULT_GRACE_DAYS = 7

# States in which a record can never become usable again
TERMINAL_STATES = frozenset({TokenState.EXPIRED, TokenState.REVOKED, TokenState.DELETED})


def is_eligible_for_cleanup(record: RefreshToken, now: datetime) -> bool:
    """Expired, revoked, soft-deleted or explicitly flagged."""
    return record.marked_for_cleanup or classify(record, now) in TERMINAL_STATES


def _eligible_clause(now: datetime) -> Any:
    # SQL mirror of is_eligible_for_cleanup
    return or_(
        RefreshToken.expires_at <= now,
        RefreshToken.revoked.is_(True),
        RefreshToken.deleted.is_(True),
        RefreshToken.marked_for_cleanup.is_(True),
    )


async def sweep(
    db: AsyncSession,
    batch_size: int = DEFAULT_BATCH_SIZE,
    grace_days: int = DEFAULT_GRACE_DAYS,
    now: datetime | None = None,
) -> int:
    """Permanently delete up to ``batch_size`` eligible records.

    Only records created at least ``grace_days`` ago are considered, which
    keeps a short audit trail after expiry or revocation. Ids are selected
    first and then deleted with the eligibility condition repeated; since
    every eligible state is terminal, a row that was eligible at selection
    cannot have become usable by deletion time.

    Returns:
        Number of deleted records
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(days=grace_days)

    result = await db.execute(
        select(RefreshToken.id)
        .where(_eligible_clause(now), RefreshToken.created_at <= cutoff)
        .order_by(RefreshToken.created_at.asc())
        .limit(batch_size)
    )
    ids = list(result.scalars().all())
    if not ids:
        return 0

    deleted: CursorResult[Any] = await db.execute(  # type: ignore[assignment]
        delete(RefreshToken)
        .where(RefreshToken.id.in_(ids), _eligible_clause(now))
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    deleted_count = deleted.rowcount
    if deleted_count > 0:
        logger.info(f"Purged {deleted_count} refresh tokens (batch size {batch_size})")
    return deleted_count


async def mark_for_cleanup(db: AsyncSession, token_ids: Iterable[UUID]) -> int:
    """Force-include tokens in the next sweep regardless of their state."""
    ids = list(token_ids)
    if not ids:
        return 0
    result: CursorResult[Any] = await db.execute(  # type: ignore[assignment]
        update(RefreshToken)
        .where(RefreshToken.id.in_(ids), active_only(RefreshToken))
        .values(marked_for_cleanup=True, version=RefreshToken.version + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info(f"Marked {result.rowcount} refresh tokens for cleanup")
    return result.rowcount


class TokenRetentionService:
    """Background service that sweeps dead refresh tokens on a schedule."""

    _instance: Optional["TokenRetentionService"] = None
    _instance_lock: threading.Lock = threading.Lock()
    _task: asyncio.Task | None = None

    def __init__(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        grace_days: int = DEFAULT_GRACE_DAYS,
        interval_seconds: int = CLEANUP_INTERVAL_SECONDS,
    ):
        self._running = False
        self._batch_size = batch_size
        self._grace_days = grace_days
        self._interval_seconds = interval_seconds

    @classmethod
    def get_instance(cls) -> "TokenRetentionService":
        """Get singleton instance configured from settings (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                # Double-check locking pattern
                if cls._instance is None:
                    cls._instance = cls(
                        batch_size=settings.cleanup_batch_size,
                        grace_days=settings.cleanup_grace_days,
                        interval_seconds=settings.cleanup_interval_seconds,
                    )
        return cls._instance

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @batch_size.setter
    def batch_size(self, value: int) -> None:
        """Set sweep batch size (minimum 1)."""
        self._batch_size = max(1, value)
        logger.info(f"Token cleanup batch size set to {self._batch_size}")

    @property
    def grace_days(self) -> int:
        return self._grace_days

    @grace_days.setter
    def grace_days(self, value: int) -> None:
        """Set grace period in days (minimum 0)."""
        self._grace_days = max(0, value)
        logger.info(f"Token cleanup grace period set to {self._grace_days} days")

    async def start(self):
        """Start the background sweep task."""
        if self._running:
            logger.warning("Token retention service is already running")
            return

        self._running = True
        TokenRetentionService._task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            f"Token retention service started (grace: {self._grace_days} days, "
            f"batch: {self._batch_size}, interval: {self._interval_seconds}s)"
        )

    async def stop(self):
        """Stop the background sweep task."""
        self._running = False
        if TokenRetentionService._task:
            TokenRetentionService._task.cancel()
            try:
                await TokenRetentionService._task
            except asyncio.CancelledError:
                pass
            TokenRetentionService._task = None
        logger.info("Token retention service stopped")

    async def _cleanup_loop(self):
        """Main loop that periodically sweeps."""
        # Let the app finish starting before the first sweep
        await asyncio.sleep(60)

        while self._running:
            try:
                await self._run_cleanup()
            except Exception as e:
                logger.error(f"Error in token retention sweep: {e}")

            await asyncio.sleep(self._interval_seconds)

    async def _run_cleanup(self):
        """Execute a single sweep, then clear elapsed block windows."""
        async with async_session_maker() as db:
            try:
                deleted_count = await sweep(
                    db, batch_size=self._batch_size, grace_days=self._grace_days
                )
                unblocked = await AbuseCounter(db).unblock_elapsed(datetime.now(UTC))
                await db.commit()

                if deleted_count > 0 or unblocked > 0:
                    logger.info(
                        f"Token retention: purged {deleted_count} tokens, "
                        f"cleared {unblocked} elapsed blocks"
                    )

            except Exception as e:
                logger.exception(f"Error during token sweep: {e}")
                await db.rollback()
                raise

    async def run_cleanup_now(self, batch_size: int | None = None) -> int:
        """Manually trigger a sweep.

        Returns:
            Number of tokens deleted
        """
        async with async_session_maker() as db:
            return await sweep(
                db,
                batch_size=batch_size if batch_size is not None else self._batch_size,
                grace_days=self._grace_days,
            )
