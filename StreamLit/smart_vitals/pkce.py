"""PKCE verifier/challenge and anti-CSRF state generation (RFC 7636, S256)."""
from __future__ import annotations

import base64
import hashlib
import secrets

UNRESERVED_CHARACTERS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"

CODE_VERIFIER_LENGTH = 128
STATE_LENGTH = 32


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_random_string(length: int) -> str:
    if length <= 0:
        raise ValueError("length must be positive")
    return "".join(secrets.choice(UNRESERVED_CHARACTERS) for _ in range(length))


def generate_code_verifier() -> str:
    return generate_random_string(CODE_VERIFIER_LENGTH)


def generate_state() -> str:
    return generate_random_string(STATE_LENGTH)


def code_challenge(code_verifier: str) -> str:
    """Return base64url(SHA-256(verifier)) without padding."""
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())
