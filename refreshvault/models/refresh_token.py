"""Refresh token model - encrypted long-lived session credential."""

from datetime import UTC, datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, Integer, LargeBinary, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from refreshvault.models.base import BaseModel, UTCDateTime

if TYPE_CHECKING:
    from refreshvault.models.user import User

DEVICE_ID_MAX_LENGTH = 100
DEVICE_NAME_MAX_LENGTH = 100
DEVICE_TYPE_MAX_LENGTH = 50
IP_ADDRESS_MAX_LENGTH = 45
USER_AGENT_MAX_LENGTH = 500


def device_display_name(device_name: str | None, device_type: str | None) -> str:
    """Device name, else "<Type> Device", else "Unknown Device"."""
    if device_name and device_name.strip():
        return device_name
    if device_type and device_type.strip():
        return f"{device_type[:1].upper()}{device_type[1:]} Device"
    return "Unknown Device"


class RefreshToken(BaseModel):
    """One issued refresh credential.

    The plaintext value is never stored. ``token_hash`` (SHA-256 of the
    plaintext) locates the row for a presented value and ``encrypted_value``
    holds the AES-256-GCM ciphertext produced under ``key_id``.

    There is no status column: usability is always derived from the fields
    below at read time (see services.validity.classify).

    ``version`` is the optimistic-locking counter. Every state-changing
    UPDATE bumps it so concurrent writers can detect each other.
    """

    __tablename__ = "refresh_tokens"

    __table_args__ = (
        Index("ix_refresh_tokens_owner_device", "owner_user_id", "device_id"),
    )

    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    encrypted_value: Mapped[bytes] = mapped_column(LargeBinary, nullable=False, unique=True)
    key_id: Mapped[str] = mapped_column(String(32), nullable=False)

    owner_user_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    issued_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)

    revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    blocked_until: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True, index=True
    )
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Device descriptors, fixed at issuance
    device_id: Mapped[str | None] = mapped_column(String(DEVICE_ID_MAX_LENGTH), nullable=True)
    device_name: Mapped[str | None] = mapped_column(String(DEVICE_NAME_MAX_LENGTH), nullable=True)
    device_type: Mapped[str | None] = mapped_column(String(DEVICE_TYPE_MAX_LENGTH), nullable=True)

    # Provenance for security auditing only
    ip_address: Mapped[str | None] = mapped_column(String(IP_ADDRESS_MAX_LENGTH), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(USER_AGENT_MAX_LENGTH), nullable=True)

    marked_for_cleanup: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    owner: Mapped["User"] = relationship("User", lazy="raise")

    __mapper_args__ = {"version_id_col": version}

    def __init__(self, **kwargs):
        # Column defaults only apply at flush; set them up front so a
        # freshly built record classifies correctly before it is persisted.
        kwargs.setdefault("revoked", False)
        kwargs.setdefault("failed_attempts", 0)
        kwargs.setdefault("usage_count", 0)
        kwargs.setdefault("marked_for_cleanup", False)
        kwargs.setdefault("deleted", False)
        super().__init__(**kwargs)

    @property
    def is_active(self) -> bool:
        return not self.deleted

    def mark_deleted(self) -> None:
        if not self.deleted:
            self.deleted = True
            self.deleted_at = datetime.now(UTC)

    def restore(self) -> None:
        self.deleted = False
        self.deleted_at = None

    def belongs_to(self, user_id: UUID) -> bool:
        return self.owner_user_id == user_id

    @property
    def device_display_name(self) -> str:
        return device_display_name(self.device_name, self.device_type)

    def __repr__(self) -> str:
        # Never include token material
        return (
            f"<RefreshToken {self.id} (user={self.owner_user_id}, device={self.device_id}, "
            f"revoked={self.revoked}, expires_at={self.expires_at})>"
        )
