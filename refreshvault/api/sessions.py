"""Session administration API endpoints.

Trusted administrative surface: unknown ids are reported as 404 here,
unlike the authentication path where every failure is the same opaque error.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from refreshvault.core import get_db, settings
from refreshvault.schemas.sessions import (
    DeviceResponse,
    MarkForCleanupRequest,
    MarkForCleanupResponse,
    MessageResponse,
    RevocationResponse,
    RevokeAllRequest,
    SessionResponse,
    SweepRequest,
    SweepResponse,
)
from refreshvault.services import retention
from refreshvault.services.abuse_counter import AbuseCounter
from refreshvault.services.crypto import get_token_codec
from refreshvault.services.errors import ConcurrencyConflict, NotFoundError
from refreshvault.services.session_registry import SessionRegistry
from refreshvault.services.validity import AbusePolicy

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sessions"])


def get_policy() -> AbusePolicy:
    """Dependency to get the abuse policy."""
    return AbusePolicy.from_settings(settings)


def get_session_registry(
    db: AsyncSession = Depends(get_db),
    policy: AbusePolicy = Depends(get_policy),
) -> SessionRegistry:
    """Dependency to get the session registry."""
    return SessionRegistry(db, get_token_codec(), policy)


def get_abuse_counter(
    db: AsyncSession = Depends(get_db),
    policy: AbusePolicy = Depends(get_policy),
) -> AbuseCounter:
    """Dependency to get the abuse counter."""
    return AbuseCounter(db, policy)


def _not_found(e: NotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _conflict(e: ConcurrencyConflict) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Token was modified concurrently, retry the request",
        headers={"Retry-After": "1"},
    )


@router.get("/users/{user_id}/sessions", response_model=list[SessionResponse])
async def list_sessions(
    user_id: UUID,
    registry: SessionRegistry = Depends(get_session_registry),
) -> list[SessionResponse]:
    """List a user's usable sessions, most recently used first."""
    try:
        sessions = await registry.list_sessions(user_id)
    except NotFoundError as e:
        raise _not_found(e) from e
    return [SessionResponse.model_validate(s) for s in sessions]


@router.get("/users/{user_id}/devices", response_model=list[DeviceResponse])
async def list_devices(
    user_id: UUID,
    registry: SessionRegistry = Depends(get_session_registry),
) -> list[DeviceResponse]:
    """List a user's devices with token counts."""
    try:
        devices = await registry.list_devices(user_id)
    except NotFoundError as e:
        raise _not_found(e) from e
    return [
        DeviceResponse(
            device_id=d.device_id,
            device_name=d.device_name,
            device_type=d.device_type,
            display_name=d.display_name,
            last_used_at=d.last_used_at,
            token_count=d.token_count,
        )
        for d in devices
    ]


@router.post("/users/{user_id}/sessions/revoke-all", response_model=RevocationResponse)
async def revoke_all_sessions(
    user_id: UUID,
    data: RevokeAllRequest,
    registry: SessionRegistry = Depends(get_session_registry),
) -> RevocationResponse:
    """Log a user out everywhere, optionally except the current session."""
    try:
        count = await registry.revoke_all_for_user(user_id, data.except_token_id)
    except NotFoundError as e:
        raise _not_found(e) from e
    return RevocationResponse(revoked=count)


@router.post(
    "/users/{user_id}/devices/{device_id}/revoke",
    response_model=RevocationResponse,
)
async def revoke_device(
    user_id: UUID,
    device_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
) -> RevocationResponse:
    """Log a user out of one device."""
    try:
        count = await registry.revoke_all_for_device(user_id, device_id)
    except NotFoundError as e:
        raise _not_found(e) from e
    return RevocationResponse(revoked=count)


@router.post("/tokens/{token_id}/revoke", response_model=RevocationResponse)
async def revoke_token(
    token_id: UUID,
    registry: SessionRegistry = Depends(get_session_registry),
) -> RevocationResponse:
    """Revoke a single token. Revoking twice reports 0 the second time."""
    try:
        count = await registry.revoke(token_id)
    except NotFoundError as e:
        raise _not_found(e) from e
    return RevocationResponse(revoked=count)


@router.post("/tokens/{token_id}/reset-failures", response_model=MessageResponse)
async def reset_failures(
    token_id: UUID,
    counter: AbuseCounter = Depends(get_abuse_counter),
) -> MessageResponse:
    """Clear the failed-attempt counter and any block window of a token."""
    try:
        await counter.reset(token_id)
    except NotFoundError as e:
        raise _not_found(e) from e
    logger.info(f"Admin reset failed attempts for refresh token {token_id}")
    return MessageResponse(message="Failed attempts reset")


@router.delete("/tokens/{token_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_token(
    token_id: UUID,
    registry: SessionRegistry = Depends(get_session_registry),
) -> None:
    """Soft-delete a token; the retention sweep removes it physically."""
    try:
        await registry.soft_delete(token_id)
    except NotFoundError as e:
        raise _not_found(e) from e
    except ConcurrencyConflict as e:
        raise _conflict(e) from e


@router.post("/tokens/{token_id}/restore", response_model=MessageResponse)
async def restore_token(
    token_id: UUID,
    registry: SessionRegistry = Depends(get_session_registry),
) -> MessageResponse:
    """Undo a soft delete."""
    try:
        await registry.restore(token_id)
    except NotFoundError as e:
        raise _not_found(e) from e
    except ConcurrencyConflict as e:
        raise _conflict(e) from e
    return MessageResponse(message="Token restored")


@router.post("/maintenance/mark-for-cleanup", response_model=MarkForCleanupResponse)
async def mark_for_cleanup(
    data: MarkForCleanupRequest,
    db: AsyncSession = Depends(get_db),
) -> MarkForCleanupResponse:
    """Force tokens into the next retention sweep."""
    marked = await retention.mark_for_cleanup(db, data.token_ids)
    return MarkForCleanupResponse(marked=marked)


@router.post("/maintenance/sweep", response_model=SweepResponse)
async def run_sweep(
    data: SweepRequest,
    db: AsyncSession = Depends(get_db),
) -> SweepResponse:
    """Run one retention sweep now."""
    deleted = await retention.sweep(
        db,
        batch_size=data.batch_size,
        grace_days=settings.cleanup_grace_days,
    )
    return SweepResponse(deleted=deleted)
