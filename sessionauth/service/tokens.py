from __future__ import annotations

import hashlib
import hmac
import secrets

SESSION_TOKEN_BYTES = 64
RESET_TOKEN_BYTES = 32
VERIFICATION_TOKEN_BYTES = 64


def generate_token(num_bytes: int = SESSION_TOKEN_BYTES) -> str:
    """Return ``num_bytes`` of CSPRNG output, hex encoded (2 chars per byte)."""

    if num_bytes <= 0:
        raise ValueError("token length must be positive")
    return secrets.token_hex(num_bytes)


def hash_token(token: str) -> str:
    """SHA-256 hex digest used for at-rest storage and lookups."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def tokens_match(candidate_hash: str, stored_hash: str) -> bool:
    return hmac.compare_digest(candidate_hash.encode("ascii"), stored_hash.encode("ascii"))
