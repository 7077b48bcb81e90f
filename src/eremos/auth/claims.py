"""Unverified JWT payload decoding for display purposes.

The CLI never makes trust decisions from these claims; it only shows the
user id (and, on request, the email) of the stored access token.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any


def decode_jwt_payload(token: str) -> dict[str, Any]:
    """Return the payload of *token* without verifying its signature.

    Returns:
        The decoded claims, or an empty dict when *token* is not a JWT or
        its payload is not a JSON object.
    """
    parts = token.split(".")
    if len(parts) < 2:
        return {}
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return {}
    return payload if isinstance(payload, dict) else {}
