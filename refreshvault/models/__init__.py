# refreshvault Models
from refreshvault.models.base import BaseModel
from refreshvault.models.refresh_token import RefreshToken
from refreshvault.models.soft_delete import SoftDeletable, active_only
from refreshvault.models.user import User

__all__ = [
    "BaseModel",
    "RefreshToken",
    "SoftDeletable",
    "User",
    "active_only",
]
