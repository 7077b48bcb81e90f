"""Authentication commands: ``login``, ``logout`` and ``status``.

Typical workflow::

    eremos login            # browser + loopback redirect
    eremos login --manual   # paste the callback URL instead
    eremos status           # inspect the stored token
    eremos logout           # revoke server-side (best effort) and delete
"""

from __future__ import annotations

import logging
from datetime import datetime

import httpx
import typer

from eremos.auth.claims import decode_jwt_payload
from eremos.auth.login import LoginFlow
from eremos.auth.token_refresh import TokenManager
from eremos.auth.token_store import TokenStore, is_token_expired
from eremos.commands.common import exit_with_error, get_config, get_transport
from eremos.config import join_url
from eremos.exceptions import ConfigError, EremosError
from eremos.output import get_output, info, print_json, print_key_value, success, suggest

logger = logging.getLogger(__name__)

LOGOUT_PATH = "/auth/v1/logout"
LOGOUT_TIMEOUT_SECONDS = 10.0


def login_command(
    ctx: typer.Context,
    manual: bool = typer.Option(
        False,
        "--manual",
        help="Do not start a local server; paste the callback URL manually.",
    ),
) -> None:
    """Authenticate with the Eremos platform via OAuth 2.1 PKCE.

    Opens the authorization page in a browser and waits for the redirect
    on ``http://127.0.0.1:<port>/callback``. With ``--manual`` no local
    server is started; paste the full callback URL from the browser
    address bar instead.

    Example::

        eremos login
        eremos login --manual
    """
    config = get_config(ctx)
    flow = LoginFlow(
        config,
        transport=get_transport(ctx),
        open_browser=ctx.obj.get("open_browser"),
    )
    try:
        flow.run(manual=manual)
    except EremosError as exc:
        exit_with_error(exc)

    success("Login successful!")
    info(f"Tokens saved to {config.credentials_path}")


def logout_command(ctx: typer.Context) -> None:
    """Sign out and remove stored tokens.

    The session is revoked server-side on a best-effort basis; the local
    credentials file is deleted even if that request fails.
    """
    config = get_config(ctx)
    store = TokenStore(config.credentials_path)
    try:
        tokens = store.load()
        if tokens is None:
            info("Not currently logged in.")
            return

        _revoke_session(ctx, tokens.access_token)
        store.delete()
    except EremosError as exc:
        exit_with_error(exc)

    success("Logged out successfully. Tokens removed.")


def _revoke_session(ctx: typer.Context, access_token: str) -> None:
    """POST to the authority's logout endpoint, ignoring every failure."""
    try:
        endpoint = join_url(get_config(ctx).authority_base(), LOGOUT_PATH)
    except ConfigError as exc:
        logger.debug("Skipping server-side logout: %s", exc)
        return
    try:
        with httpx.Client(
            timeout=LOGOUT_TIMEOUT_SECONDS,
            follow_redirects=False,
            transport=get_transport(ctx),
        ) as client:
            response = client.post(
                endpoint,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
            )
        logger.debug("Server-side logout returned HTTP %d", response.status_code)
    except httpx.HTTPError as exc:
        logger.debug("Server-side logout failed: %s", exc)


def status_command(
    ctx: typer.Context,
    show_email: bool = typer.Option(
        False,
        "--show-email",
        help="Show the email claim if present (may be sensitive).",
    ),
) -> None:
    """Show current authentication status.

    An expired token is refreshed before the status is reported, so
    ``Status: Active`` means an authenticated request would succeed.
    """
    config = get_config(ctx)
    manager = TokenManager(config, transport=get_transport(ctx))
    try:
        tokens = manager.store.load()
        if tokens is None:
            if get_output().is_json:
                print_json({"data": {"logged_in": False}})
            else:
                info("Not logged in.")
                suggest("Run `eremos login` to authenticate.")
            return

        expired = is_token_expired(tokens)
        valid = manager.get_valid_token()
    except EremosError as exc:
        exit_with_error(exc)

    claims = decode_jwt_payload(valid) if valid else {}
    user_id = claims.get("sub")
    email = claims.get("email") if show_email else None

    if get_output().is_json:
        data = {
            "logged_in": True,
            "client_id": tokens.client_id,
            "expires_at": tokens.expires_at,
            "expired": expired,
            "valid": valid is not None,
            "user_id": str(user_id) if user_id else None,
        }
        if show_email:
            data["email"] = str(email) if email else None
        print_json({"data": data})
        return

    pairs = [
        ("Client ID", tokens.client_id),
        ("Token expires", _format_timestamp(tokens.expires_at)),
        ("Expired", "Yes" if expired else "No"),
        ("Status", "Active" if valid else "Invalid (please re-login)"),
    ]
    if user_id:
        pairs.append(("User ID", str(user_id)))
    if email:
        pairs.append(("Email", str(email)))
    print_key_value(pairs, title="Authentication Status")


def _format_timestamp(value: int) -> str:
    try:
        return datetime.fromtimestamp(value).astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")
    except (OverflowError, OSError, ValueError):
        return str(value)
