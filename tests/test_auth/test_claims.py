"""Tests for unverified JWT payload decoding."""

from __future__ import annotations

import base64
import json

from eremos.auth.claims import decode_jwt_payload


def make_jwt(payload: object) -> str:
    """Build an unsigned JWT carrying *payload*."""

    def segment(data: object) -> str:
        raw = json.dumps(data).encode("utf-8")
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    return f"{segment({'alg': 'none'})}.{segment(payload)}.sig"


class TestDecodeJwtPayload:
    def test_decodes_claims(self) -> None:
        token = make_jwt({"sub": "user-1", "email": "a@example.com"})
        assert decode_jwt_payload(token) == {"sub": "user-1", "email": "a@example.com"}

    def test_handles_missing_padding(self) -> None:
        token = make_jwt({"sub": "x"})
        assert decode_jwt_payload(token)["sub"] == "x"

    def test_opaque_token_returns_empty(self) -> None:
        assert decode_jwt_payload("opaque-access-token") == {}

    def test_garbage_payload_returns_empty(self) -> None:
        # "bm90IGpzb24" is base64url for b"not json"
        assert decode_jwt_payload("a.bm90IGpzb24.c") == {}

    def test_non_object_payload_returns_empty(self) -> None:
        assert decode_jwt_payload(make_jwt(["sub"])) == {}
