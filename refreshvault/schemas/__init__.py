# refreshvault Pydantic Schemas
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

__all__ = [
    "DeviceResponse",
    "MarkForCleanupRequest",
    "MarkForCleanupResponse",
    "MessageResponse",
    "RevocationResponse",
    "RevokeAllRequest",
    "SessionResponse",
    "SweepRequest",
    "SweepResponse",
]
