"""Pydantic schemas for the session administration API.

Token values never appear in any response model.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SessionResponse(BaseModel):
    """An active session."""

    model_config = ConfigDict(from_attributes=True)

    token_id: UUID
    device_name: str | None = None
    device_type: str | None = None
    last_used_at: datetime | None = None
    ip_address: str | None = None


class DeviceResponse(BaseModel):
    """Per-device aggregate."""

    device_id: str | None = None
    device_name: str | None = None
    device_type: str | None = None
    display_name: str
    last_used_at: datetime | None = None
    token_count: int


class RevokeAllRequest(BaseModel):
    """Request to revoke all of a user's tokens ("log out everywhere")."""

    except_token_id: UUID | None = Field(
        None,
        description="Token to keep (the caller's current session)",
    )


class RevocationResponse(BaseModel):
    """Number of tokens newly revoked."""

    revoked: int


class MarkForCleanupRequest(BaseModel):
    """Tokens to force into the next retention sweep."""

    token_ids: list[UUID] = Field(..., min_length=1, max_length=1000)


class MarkForCleanupResponse(BaseModel):
    marked: int


class SweepRequest(BaseModel):
    """Manual sweep parameters."""

    batch_size: int = Field(1000, ge=1, le=10000)


class SweepResponse(BaseModel):
    deleted: int


class MessageResponse(BaseModel):
    message: str
