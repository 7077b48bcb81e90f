"""Response parsing for the API's JSON envelope.

Successful responses look like ``{"data": ..., "meta": {...}}``; failures
carry ``{"error": {"code": ..., "message": ..., "details": ...}}``.
"""

from __future__ import annotations

from typing import Any

import httpx

from eremos.exceptions import ApiError

_SNIPPET_LENGTH = 200


def parse_api_response(response: httpx.Response) -> dict[str, Any]:
    """Decode *response* and raise on an error envelope.

    Args:
        response: The raw :class:`httpx.Response`.

    Returns:
        The decoded envelope.

    Raises:
        ApiError: ``PARSE_ERROR`` when the body is not JSON, or the code and
            message from the error envelope for a non-2xx status (falling
            back to ``HTTP_<status>``).
    """
    text = response.text
    try:
        body = response.json()
    except ValueError as exc:
        raise ApiError(
            response.status_code,
            "PARSE_ERROR",
            f"Failed to parse response: {text[:_SNIPPET_LENGTH]}",
        ) from exc

    if not response.is_success:
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            error = {}
        raise ApiError(
            response.status_code,
            str(error.get("code") or f"HTTP_{response.status_code}"),
            str(error.get("message") or f"HTTP {response.status_code}"),
            error.get("details"),
        )

    if not isinstance(body, dict):
        raise ApiError(
            response.status_code,
            "PARSE_ERROR",
            "Failed to parse response: expected a JSON object",
        )
    return body
