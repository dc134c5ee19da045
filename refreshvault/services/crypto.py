"""Token identity and encryption codec.

Refresh token values are random UUIDv4 strings. At rest they are kept as
AES-256-GCM ciphertext (IV || ciphertext || tag) bound to the
``refresh_token`` context via AAD, plus a SHA-256 lookup hash so a presented
value can be found without decrypting every row.

Keys come from configuration only. Each ciphertext is stored next to the id
of the key that produced it, so a rotated-out key can still be used to read
old rows until scripts/rotate_encryption_key.py has re-encrypted them.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from uuid import uuid4

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from refreshvault.core.config import Settings

logger = logging.getLogger(__name__)

# 12 bytes IV + 16 bytes auth tag
MIN_ENCRYPTED_LENGTH = 28
IV_LENGTH = 12
TOKEN_AAD = b"refresh_token"


class CryptoError(Exception):
    """Base exception for cryptographic operations."""


class EncryptionError(CryptoError):
    """Raised when a value cannot be encrypted, usually missing key material."""


class InvalidKeyError(EncryptionError):
    """Raised when a configured key has the wrong length or is not hex."""


class DecryptionError(CryptoError):
    """Raised when ciphertext is corrupt, truncated or from an unknown key."""


def parse_key(key_hex: str, name: str = "encryption key") -> bytes:
    """Convert a 64-char hex key into 32 raw bytes."""
    if len(key_hex) != 64:
        raise InvalidKeyError(
            f"{name} must be exactly 64 hex characters (32 bytes). Got {len(key_hex)} characters."
        )
    try:
        return bytes.fromhex(key_hex)
    except ValueError as e:
        raise InvalidKeyError(f"{name} must be valid hexadecimal: {e}") from e


@dataclass(frozen=True)
class TokenCodec:
    """Generates, encrypts, decrypts and matches refresh token values.

    Holds only the key material it was built with; no per-call state.
    """

    current_key_id: str
    keys: dict[str, bytes] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCodec":
        keys: dict[str, bytes] = {}
        if settings.refreshvault_encryption_key:
            keys[settings.refreshvault_encryption_key_id] = parse_key(
                settings.refreshvault_encryption_key, "REFRESHVAULT_ENCRYPTION_KEY"
            )
        if settings.refreshvault_encryption_key_old:
            # Settings guarantees an id distinct from the current one
            keys[settings.refreshvault_encryption_key_old_id] = parse_key(
                settings.refreshvault_encryption_key_old, "REFRESHVAULT_ENCRYPTION_KEY_OLD"
            )
        return cls(current_key_id=settings.refreshvault_encryption_key_id, keys=keys)

    def generate(self) -> str:
        """New opaque token value with 122 random bits."""
        return str(uuid4())

    @staticmethod
    def lookup_hash(plaintext: str) -> str:
        """Deterministic SHA-256 digest used for indexed lookup."""
        return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()

    def encrypt_for_storage(self, plaintext: str) -> tuple[bytes, str]:
        """Encrypt with the current key.

        Returns:
            (IV || ciphertext || tag, key id)
        """
        key = self.keys.get(self.current_key_id)
        if key is None:
            raise EncryptionError(
                f"No encryption key configured for key id '{self.current_key_id}'. "
                "Set REFRESHVAULT_ENCRYPTION_KEY."
            )
        iv = secrets.token_bytes(IV_LENGTH)
        ciphertext = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), TOKEN_AAD)
        return iv + ciphertext, self.current_key_id

    def decrypt_for_use(self, encrypted: bytes, key_id: str | None = None) -> str:
        """Decrypt a stored value.

        With a ``key_id`` only that key is tried. Without one the current key
        is tried first, then any older key.
        """
        if len(encrypted) < MIN_ENCRYPTED_LENGTH:
            raise DecryptionError(
                f"Encrypted data too short: {len(encrypted)} bytes, "
                f"minimum {MIN_ENCRYPTED_LENGTH} bytes required"
            )

        if key_id is not None:
            if key_id not in self.keys:
                # Row written under a key that is no longer configured
                logger.error(f"Decryption failed: unknown key id '{key_id}' (key rotation issue)")
                raise DecryptionError(f"Unknown encryption key id '{key_id}'")
            candidates = [key_id]
        else:
            candidates = [self.current_key_id] + [
                kid for kid in self.keys if kid != self.current_key_id
            ]

        iv, ciphertext = encrypted[:IV_LENGTH], encrypted[IV_LENGTH:]
        for kid in candidates:
            key = self.keys.get(kid)
            if key is None:
                continue
            try:
                plaintext = AESGCM(key).decrypt(iv, ciphertext, TOKEN_AAD)
            except InvalidTag:
                continue
            if kid != self.current_key_id:
                logger.info(f"Decrypted with key '{kid}' - run key rotation script to re-encrypt")
            return plaintext.decode("utf-8")

        # Known key, bad tag: corruption or tampering
        logger.warning(
            f"Decryption failed: authentication tag mismatch (key ids tried: {candidates})"
        )
        raise DecryptionError("Decryption failed: ciphertext does not authenticate")

    def matches(self, candidate: str, encrypted: bytes, key_id: str | None = None) -> bool:
        """Constant-time check that ``candidate`` is the value in ``encrypted``."""
        stored = self.decrypt_for_use(encrypted, key_id)
        return secrets.compare_digest(candidate.encode("utf-8"), stored.encode("utf-8"))


_codec: TokenCodec | None = None


def get_token_codec() -> TokenCodec:
    """Process-wide codec built from settings."""
    global _codec
    if _codec is None:
        from refreshvault.core.config import settings

        _codec = TokenCodec.from_settings(settings)
    return _codec
