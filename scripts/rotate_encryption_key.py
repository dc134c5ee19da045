#!/usr/bin/env python3
"""Encryption key rotation utility for refreshvault.

Re-encrypts every stored refresh token from an old key to a new key and
stamps the new key id on each row. Run this script, then update
REFRESHVAULT_ENCRYPTION_KEY / REFRESHVAULT_ENCRYPTION_KEY_ID in your
environment. Until the script has run, keep the previous key configured as
REFRESHVAULT_ENCRYPTION_KEY_OLD, with REFRESHVAULT_ENCRYPTION_KEY_OLD_ID set to
the id its rows were written under (the previous
REFRESHVAULT_ENCRYPTION_KEY_ID), so existing rows stay readable.

Usage:
    python scripts/rotate_encryption_key.py --old-key <hex> --new-key <hex> --new-key-id k2
    python scripts/rotate_encryption_key.py --old-key <hex> --generate-new --new-key-id k2

Tables with encrypted data:
    - refresh_tokens: encrypted_value (key recorded in key_id)
"""

import argparse
import os
import secrets
import sys

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

# Must match refreshvault.services.crypto
TOKEN_AAD = b"refresh_token"
IV_LENGTH = 12


def _validate_key(key_hex: str, name: str) -> bytes:
    """Validate and convert a hex key string to bytes."""
    if len(key_hex) != 64:
        print(f"ERROR: {name} must be 64 hex characters (32 bytes). Got {len(key_hex)}.")
        sys.exit(1)
    try:
        return bytes.fromhex(key_hex)
    except ValueError:
        print(f"ERROR: {name} is not valid hexadecimal.")
        sys.exit(1)


def _decrypt(encrypted: bytes, key: bytes) -> str:
    """Decrypt AES-256-GCM: IV (12) || ciphertext || tag (16)."""
    aesgcm = AESGCM(key)
    return aesgcm.decrypt(encrypted[:IV_LENGTH], encrypted[IV_LENGTH:], TOKEN_AAD).decode(
        "utf-8"
    )


def _encrypt(plaintext: str, key: bytes) -> bytes:
    """Encrypt with AES-256-GCM, returns IV || ciphertext || tag."""
    aesgcm = AESGCM(key)
    iv = secrets.token_bytes(IV_LENGTH)
    return iv + aesgcm.encrypt(iv, plaintext.encode("utf-8"), TOKEN_AAD)


def rotate_value(value: bytes, old_key: bytes, new_key: bytes) -> bytes:
    """Decrypt with old key, re-encrypt with new key."""
    return _encrypt(_decrypt(value, old_key), new_key)


def main():
    parser = argparse.ArgumentParser(description="Rotate refreshvault encryption key")
    parser.add_argument("--old-key", required=True, help="Current 64-char hex key")
    parser.add_argument("--new-key", help="New 64-char hex key")
    parser.add_argument(
        "--generate-new",
        action="store_true",
        help="Generate a new key instead of providing one",
    )
    parser.add_argument("--new-key-id", required=True, help="Key id to record for the new key")
    parser.add_argument(
        "--database-url",
        help="Database URL (default: from DATABASE_URL env var)",
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Show what would change without writing"
    )
    args = parser.parse_args()

    old_key = _validate_key(args.old_key, "--old-key")

    if args.generate_new:
        new_key_hex = secrets.token_hex(32)
        new_key = bytes.fromhex(new_key_hex)
        print(f"Generated new key: {new_key_hex}")
    elif args.new_key:
        new_key_hex = args.new_key
        new_key = _validate_key(args.new_key, "--new-key")
    else:
        print("ERROR: Provide --new-key or --generate-new")
        sys.exit(1)

    if old_key == new_key:
        print("ERROR: Old and new keys are identical.")
        sys.exit(1)

    db_url = args.database_url or os.environ.get("DATABASE_URL")
    if not db_url:
        print("ERROR: Provide --database-url or set DATABASE_URL env var")
        sys.exit(1)

    # Convert async URL to sync for this script
    sync_url = db_url.replace("postgresql+asyncpg://", "postgresql://").replace(
        "sqlite+aiosqlite://", "sqlite://"
    )

    from sqlalchemy import create_engine, text

    engine = create_engine(sync_url)
    rotated = 0
    errors = 0

    with engine.begin() as conn:
        rows = conn.execute(
            text("SELECT id, encrypted_value FROM refresh_tokens WHERE key_id != :kid"),
            {"kid": args.new_key_id},
        ).fetchall()
        for row_id, value in rows:
            try:
                new_value = rotate_value(bytes(value), old_key, new_key)
                if not args.dry_run:
                    conn.execute(
                        text(
                            "UPDATE refresh_tokens SET encrypted_value = :val, key_id = :kid, "
                            "version = version + 1 WHERE id = :id"
                        ),
                        {"val": new_value, "kid": args.new_key_id, "id": row_id},
                    )
                rotated += 1
            except Exception as e:
                errors += 1
                # Never print token material, only the row id
                print(
                    f"  refresh_tokens.encrypted_value (id={row_id}): FAILED - {type(e).__name__}"
                )

    if args.dry_run:
        print(f"\nDry run complete: {rotated} tokens would be rotated, {errors} errors")
    else:
        print(f"\nRotation complete: {rotated} tokens rotated, {errors} errors")

    if errors > 0:
        print("\nWARNING: Some tokens failed to rotate. Do NOT remove the old key.")
        print("Investigate the errors above and re-run.")
        sys.exit(1)
    elif rotated > 0:
        print(
            f"\nUpdate your environment: REFRESHVAULT_ENCRYPTION_KEY={new_key_hex} "
            f"REFRESHVAULT_ENCRYPTION_KEY_ID={args.new_key_id}"
        )
        print("Then restart all refreshvault services.")
    else:
        print("\nNo encrypted tokens found. Key rotation not needed.")


if __name__ == "__main__":
    main()
