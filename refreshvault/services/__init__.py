# refreshvault Services
from refreshvault.services.abuse_counter import AbuseCounter
from refreshvault.services.crypto import TokenCodec, get_token_codec
from refreshvault.services.refresh_tokens import Invalid, RefreshTokenService, Valid
from refreshvault.services.retention import TokenRetentionService
from refreshvault.services.session_registry import SessionRegistry
from refreshvault.services.validity import AbusePolicy, TokenState, classify, is_usable

__all__ = [
    "AbusePolicy",
    "AbuseCounter",
    "Invalid",
    "RefreshTokenService",
    "SessionRegistry",
    "TokenCodec",
    "TokenRetentionService",
    "TokenState",
    "Valid",
    "classify",
    "get_token_codec",
    "is_usable",
]
