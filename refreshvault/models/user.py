"""Token owner model."""

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from refreshvault.models.base import BaseModel


class User(BaseModel):
    """Owner of refresh tokens.

    Only the fields the token engine needs: an identity to reference and an
    active flag that gates issuance. Account management lives elsewhere.
    """

    __tablename__ = "users"

    username: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<User {self.username}>"
