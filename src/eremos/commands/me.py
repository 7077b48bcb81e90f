"""``eremos me`` -- show the authenticated user's profile.

``GET /api/users/me`` is tried first. Some OAuth clients are not allowed to
call it (``OAUTH_NOT_ALLOWED``); in that case the user id is read from the
access token's ``sub`` claim and ``GET /api/users/{id}`` is used instead.
"""

from __future__ import annotations

from typing import Any, Optional

import typer

from eremos.auth.claims import decode_jwt_payload
from eremos.client import ApiClient
from eremos.commands.common import exit_with_error, get_config, get_transport
from eremos.exceptions import ApiError, EremosError
from eremos.output import get_output, print_json, print_key_value, warning
from eremos.sanitize import safe_path_segment

OAUTH_NOT_ALLOWED = "OAUTH_NOT_ALLOWED"

_PROFILE_FIELDS = [
    ("id", "ID"),
    ("handle", "Handle"),
    ("name", "Name"),
    ("bio", "Bio"),
    ("avatar_url", "Avatar"),
    ("website", "Website"),
    ("role", "Role"),
    ("is_admin", "Admin"),
    ("onboarded_at", "Onboarded"),
    ("created_at", "Created"),
    ("updated_at", "Updated"),
]


def _as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def normalize_profile(raw: dict[str, Any]) -> dict[str, Any]:
    """Map an API user record onto the fields shown by ``eremos me``.

    ``display_name`` and ``website_url`` are accepted as aliases, and
    ``is_admin`` is derived from ``role`` when absent.
    """
    role = _as_str(raw.get("role"))
    is_admin = raw.get("is_admin")
    if not isinstance(is_admin, bool):
        is_admin = True if role == "admin" else None
    return {
        "id": _as_str(raw.get("id")),
        "handle": _as_str(raw.get("handle")),
        "name": _as_str(raw.get("name")) or _as_str(raw.get("display_name")),
        "bio": _as_str(raw.get("bio")),
        "avatar_url": _as_str(raw.get("avatar_url")),
        "website": _as_str(raw.get("website")) or _as_str(raw.get("website_url")),
        "role": role,
        "is_admin": is_admin,
        "onboarded_at": _as_str(raw.get("onboarded_at")),
        "created_at": _as_str(raw.get("created_at")),
        "updated_at": _as_str(raw.get("updated_at")),
    }


def resolve_me(client: ApiClient, access_token: str) -> dict[str, Any]:
    """Fetch the current user's profile, falling back when ``/me`` is refused.

    Returns:
        ``{"profile": ..., "email": ..., "source": ..., "warnings": [...]}``
        where ``source`` is ``"users_me"`` or ``"users_get_fallback"``.

    Raises:
        ApiError: For API failures other than ``OAUTH_NOT_ALLOWED``.
        EremosError: If the fallback is needed but the token has no ``sub``.
    """
    claims = decode_jwt_payload(access_token)

    try:
        data = client.call("GET", "/api/users/me").get("data")
    except ApiError as exc:
        if exc.code == OAUTH_NOT_ALLOWED:
            return _resolve_fallback(client, claims, _as_str(claims.get("email")), exc.code)
        raise

    if not isinstance(data, dict):
        raise EremosError("Invalid /api/users/me response: profile object is missing.")
    email = _as_str(data.get("email")) or _as_str(claims.get("email"))
    profile = data["profile"] if isinstance(data.get("profile"), dict) else data

    embedded_error = _as_str(profile.get("error"))
    if embedded_error == OAUTH_NOT_ALLOWED:
        return _resolve_fallback(client, claims, email, embedded_error)
    if embedded_error:
        raise EremosError(f"/api/users/me returned profile error: {embedded_error}")

    return {
        "profile": normalize_profile(profile),
        "email": email,
        "source": "users_me",
        "warnings": [],
    }


def _resolve_fallback(
    client: ApiClient,
    claims: dict[str, Any],
    email: Optional[str],
    reason: str,
) -> dict[str, Any]:
    user_id = _as_str(claims.get("sub"))
    if not user_id:
        raise EremosError(
            "Unable to resolve current user ID from access token for `me` fallback."
        )
    path = f"/api/users/{safe_path_segment(user_id, 'User ID')}"
    data = client.call("GET", path).get("data")
    if not isinstance(data, dict):
        raise EremosError(f"Invalid {path} response: profile object is missing.")
    return {
        "profile": normalize_profile(data),
        "email": email,
        "source": "users_get_fallback",
        "warnings": [
            f"/api/users/me was unavailable ({reason}); fell back to /api/users/{{id}}."
        ],
    }


def me_command(
    ctx: typer.Context,
    show_email: bool = typer.Option(
        False, "--show-email", help="Show email (may be sensitive)."
    ),
) -> None:
    """Show the current user's profile."""
    config = get_config(ctx)
    try:
        with ApiClient(config, transport=get_transport(ctx)) as client:
            token = client.require_auth()
            me = resolve_me(client, token)
    except EremosError as exc:
        exit_with_error(exc)

    if not show_email:
        me.pop("email")

    if get_output().is_json:
        print_json({"data": me})
        return

    for message in me["warnings"]:
        warning(message)

    profile = me["profile"]
    pairs: list[tuple[str, Any]] = []
    for key, label in _PROFILE_FIELDS:
        value = profile.get(key)
        if key == "handle" and value:
            value = f"@{value}"
        elif key == "is_admin" and value is not None:
            value = "Yes" if value else "No"
        pairs.append((label, value))
    if show_email:
        pairs.append(("Email", me.get("email")))
    pairs.append(("Source", me["source"]))
    print_key_value(pairs)
