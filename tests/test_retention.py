"""Tests for refresh token retention (sweep) and its background service."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from refreshvault.models import RefreshToken
from refreshvault.services.retention import (
    CLEANUP_INTERVAL_SECONDS,
    DEFAULT_BATCH_SIZE,
    DEFAULT_GRACE_DAYS,
    TokenRetentionService,
    is_eligible_for_cleanup,
    mark_for_cleanup,
    sweep,
)


async def remaining_ids(db) -> set:
    result = await db.execute(select(RefreshToken.id))
    return set(result.scalars().all())


class TestEligibility:
    """Which records the sweep may remove."""

    def _record(self, **fields) -> RefreshToken:
        now = datetime.now(UTC)
        fields.setdefault("issued_at", now)
        fields.setdefault("expires_at", now + timedelta(days=1))
        return RefreshToken(**fields)

    def test_valid_not_eligible(self):
        assert not is_eligible_for_cleanup(self._record(), datetime.now(UTC))

    def test_blocked_not_eligible(self):
        now = datetime.now(UTC)
        record = self._record(failed_attempts=5, blocked_until=now + timedelta(hours=1))
        assert not is_eligible_for_cleanup(record, now)

    @pytest.mark.parametrize(
        "fields",
        [
            {"revoked": True},
            {"deleted": True},
            {"marked_for_cleanup": True},
            {"expires_at": datetime(2020, 1, 1, tzinfo=UTC)},
        ],
    )
    def test_eligible(self, fields):
        assert is_eligible_for_cleanup(self._record(**fields), datetime.now(UTC))


class TestSweep:
    """Batch deletion."""

    @pytest.mark.asyncio
    async def test_removes_expired_and_revoked_only(self, db_session, user_factory, token_factory):
        user = await user_factory()
        created = datetime.now(UTC)
        await token_factory(user, expires_at=created - timedelta(days=1))
        await token_factory(user, revoked=True)
        valid, _ = await token_factory(user, expires_at=created + timedelta(days=6))

        deleted = await sweep(db_session, batch_size=10, grace_days=0, now=datetime.now(UTC))

        assert deleted == 2
        assert await remaining_ids(db_session) == {valid.id}

    @pytest.mark.asyncio
    async def test_grace_period_keeps_recent_records(
        self, db_session, user_factory, token_factory
    ):
        user = await user_factory()
        now = datetime.now(UTC)
        old, _ = await token_factory(user, revoked=True, created_at=now - timedelta(days=10))
        recent, _ = await token_factory(user, revoked=True)

        deleted = await sweep(db_session, grace_days=DEFAULT_GRACE_DAYS, now=now)

        assert deleted == 1
        assert await remaining_ids(db_session) == {recent.id}

    @pytest.mark.asyncio
    async def test_batch_size_limits_deletes(self, db_session, user_factory, token_factory):
        user = await user_factory()
        for _ in range(5):
            await token_factory(user, revoked=True)
        now = datetime.now(UTC)

        assert await sweep(db_session, batch_size=2, grace_days=0, now=now) == 2
        assert len(await remaining_ids(db_session)) == 3
        assert await sweep(db_session, batch_size=10, grace_days=0, now=now) == 3
        assert await sweep(db_session, batch_size=10, grace_days=0, now=now) == 0

    @pytest.mark.asyncio
    async def test_removes_soft_deleted(self, db_session, user_factory, token_factory):
        user = await user_factory()
        await token_factory(user, deleted=True)

        assert await sweep(db_session, grace_days=0, now=datetime.now(UTC)) == 1

    @pytest.mark.asyncio
    async def test_invalid_batch_size(self, db_session):
        with pytest.raises(ValueError):
            await sweep(db_session, batch_size=0)

    @pytest.mark.asyncio
    async def test_mark_for_cleanup(self, db_session, user_factory, token_factory):
        user = await user_factory()
        marked, _ = await token_factory(user)
        kept, _ = await token_factory(user)

        assert await mark_for_cleanup(db_session, [marked.id]) == 1
        assert await sweep(db_session, grace_days=0, now=datetime.now(UTC)) == 1
        assert await remaining_ids(db_session) == {kept.id}

    @pytest.mark.asyncio
    async def test_mark_for_cleanup_empty(self, db_session):
        assert await mark_for_cleanup(db_session, []) == 0


class TestTokenRetentionServiceSingleton:
    """Tests for singleton pattern and configuration."""

    def test_get_instance_returns_same_instance(self):
        TokenRetentionService._instance = None

        instance1 = TokenRetentionService.get_instance()
        instance2 = TokenRetentionService.get_instance()

        assert instance1 is instance2

    def test_defaults(self):
        service = TokenRetentionService()
        assert service.batch_size == DEFAULT_BATCH_SIZE
        assert service.grace_days == DEFAULT_GRACE_DAYS
        assert service._interval_seconds == CLEANUP_INTERVAL_SECONDS

    def test_minimums_enforced(self):
        service = TokenRetentionService()

        service.batch_size = 0
        assert service.batch_size == 1

        service.grace_days = -3
        assert service.grace_days == 0


class TestTokenRetentionServiceLifecycle:
    """Tests for service start/stop lifecycle."""

    @pytest.mark.asyncio
    async def test_start_sets_running_flag(self):
        service = TokenRetentionService()

        with patch.object(service, "_cleanup_loop", new_callable=AsyncMock):
            await service.start()

        assert service._running is True
        await service.stop()
        assert service._running is False

    @pytest.mark.asyncio
    async def test_start_twice_logs_warning(self):
        service = TokenRetentionService()

        with patch.object(service, "_cleanup_loop", new_callable=AsyncMock):
            await service.start()
            with patch("refreshvault.services.retention.logger") as mock_logger:
                await service.start()
                mock_logger.warning.assert_called()

        await service.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_task(self):
        service = TokenRetentionService()

        async def never_ending():
            await asyncio.sleep(1000)

        real_task = asyncio.create_task(never_ending())
        service._running = True
        TokenRetentionService._task = real_task

        await service.stop()

        assert real_task.cancelled() or real_task.done()
        assert TokenRetentionService._task is None


class TestTokenRetentionCleanup:
    """Tests for the scheduled sweep."""

    @pytest.mark.asyncio
    async def test_cleanup_loop_handles_errors(self):
        service = TokenRetentionService()
        service._running = True
        call_count = 0

        async def mock_run_cleanup():
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                raise Exception("Test error")
            service._running = False

        with patch.object(service, "_run_cleanup", side_effect=mock_run_cleanup):
            with patch("asyncio.sleep", new_callable=AsyncMock):
                with patch("refreshvault.services.retention.logger") as mock_logger:
                    await service._cleanup_loop()
                    mock_logger.error.assert_called()

        assert call_count == 2

    @pytest.mark.asyncio
    async def test_run_cleanup_logs_counts(self):
        service = TokenRetentionService(batch_size=50, grace_days=3)
        mock_db = AsyncMock()
        mock_counter = MagicMock()
        mock_counter.unblock_elapsed = AsyncMock(return_value=2)

        with patch(
            "refreshvault.services.retention.async_session_maker",
            return_value=AsyncMock(__aenter__=AsyncMock(return_value=mock_db)),
        ):
            with patch(
                "refreshvault.services.retention.sweep", new=AsyncMock(return_value=17)
            ) as mock_sweep:
                with patch(
                    "refreshvault.services.retention.AbuseCounter", return_value=mock_counter
                ):
                    with patch("refreshvault.services.retention.logger") as mock_logger:
                        await service._run_cleanup()

        mock_sweep.assert_called_once_with(mock_db, batch_size=50, grace_days=3)
        mock_db.commit.assert_awaited()
        assert "17" in str(mock_logger.info.call_args)

    @pytest.mark.asyncio
    async def test_run_cleanup_rolls_back_on_error(self):
        service = TokenRetentionService()
        mock_db = AsyncMock()

        with patch(
            "refreshvault.services.retention.async_session_maker",
            return_value=AsyncMock(__aenter__=AsyncMock(return_value=mock_db)),
        ):
            with patch(
                "refreshvault.services.retention.sweep",
                new=AsyncMock(side_effect=Exception("DB error")),
            ):
                with pytest.raises(Exception, match="DB error"):
                    await service._run_cleanup()

        mock_db.rollback.assert_awaited()

    @pytest.mark.asyncio
    async def test_run_cleanup_now_against_database(self, db_engine, user_factory, token_factory):
        user = await user_factory()
        await token_factory(user, revoked=True, created_at=datetime.now(UTC) - timedelta(days=30))
        await token_factory(user)
        service = TokenRetentionService(grace_days=7)
        session_maker = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

        with patch("refreshvault.services.retention.async_session_maker", session_maker):
            deleted = await service.run_cleanup_now()

        assert deleted == 1
        async with session_maker() as db:
            count = await db.scalar(select(func.count(RefreshToken.id)))
        assert count == 1

    @pytest.mark.asyncio
    async def test_run_cleanup_now_rejects_zero_batch(self, db_engine):
        """An explicit 0 is passed through and refused, not replaced by the default."""
        service = TokenRetentionService(batch_size=50)
        session_maker = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

        with patch("refreshvault.services.retention.async_session_maker", session_maker):
            with pytest.raises(ValueError, match="batch_size must be at least 1"):
                await service.run_cleanup_now(batch_size=0)

    @pytest.mark.asyncio
    async def test_run_cleanup_now_uses_default_batch(self):
        service = TokenRetentionService(batch_size=50, grace_days=3)
        mock_db = AsyncMock()

        with patch(
            "refreshvault.services.retention.async_session_maker",
            return_value=AsyncMock(__aenter__=AsyncMock(return_value=mock_db)),
        ):
            with patch(
                "refreshvault.services.retention.sweep", new=AsyncMock(return_value=0)
            ) as mock_sweep:
                await service.run_cleanup_now()

        mock_sweep.assert_called_once_with(mock_db, batch_size=50, grace_days=3)

    @pytest.mark.asyncio
    async def test_is_running_tracks_lifecycle(self):
        service = TokenRetentionService()
        assert service.is_running is False

        with patch.object(service, "_cleanup_loop", new_callable=AsyncMock):
            await service.start()
        assert service.is_running is True

        await service.stop()

        assert service.is_running is False
