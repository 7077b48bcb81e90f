"""PKCE parameter generation (:rfc:`7636`, ``S256`` method).

None of these values are ever persisted or logged; they live for the
duration of a single login attempt.
"""

from __future__ import annotations

import base64
import hashlib
import secrets


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    """Return a fresh code verifier.

    32 random bytes encoded as unpadded base64url, giving 43 characters from
    the unreserved set ``[A-Za-z0-9_-]``.
    """
    return _b64url(secrets.token_bytes(32))


def generate_code_challenge(code_verifier: str) -> str:
    """Derive the ``S256`` code challenge for *code_verifier*.

    Args:
        code_verifier: Value returned by :func:`generate_code_verifier`.

    Returns:
        Unpadded base64url encoding of ``SHA-256(code_verifier)``.
    """
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return _b64url(digest)


def generate_state() -> str:
    """Return an opaque CSRF ``state`` value (32 lowercase hex characters)."""
    return secrets.token_hex(16)
