"""Interactive OAuth 2.1 Authorization Code + PKCE login.

:class:`LoginFlow` ties the pieces together:

1. Generates the PKCE verifier/challenge and a ``state`` value.
2. Starts the :class:`~eremos.auth.loopback.LoopbackServer` *before* the
   authorization URL is shown, so a fast redirect cannot arrive at a closed
   port. In manual mode no listener is started and the user pastes the
   callback URL instead.
3. Opens the authorization URL in the browser (best effort) and always
   prints it.
4. Exchanges the code for tokens and persists them through the
   :class:`~eremos.auth.token_store.TokenStore`.

There are no retries: any failure surfaces as an
:class:`~eremos.exceptions.EremosError`.
"""

from __future__ import annotations

import logging
import time
import webbrowser
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx
import typer

from eremos.auth.loopback import (
    LOGIN_TIMEOUT_SECONDS,
    LoopbackServer,
    get_loopback_redirect_uri,
)
from eremos.auth.pkce import (
    generate_code_challenge,
    generate_code_verifier,
    generate_state,
)
from eremos.auth.token_refresh import TOKEN_PATH, expires_in_seconds
from eremos.auth.token_store import TokenStore
from eremos.config import join_url
from eremos.exceptions import AuthError, ConfigError, ConnectionError_, OAuthCallbackError
from eremos.models import EremosConfig, StoredTokens
from eremos.output import info

logger = logging.getLogger(__name__)

AUTHORIZE_PATH = "/auth/v1/oauth/authorize"
DEFAULT_SCOPES = "openid"


def parse_callback_url(url: str, expected_state: str) -> str:
    """Extract the authorization code from a pasted callback URL.

    The ``state`` is checked before anything else in the URL is trusted.

    Args:
        url: The full redirect URL copied from the browser address bar.
        expected_state: The ``state`` sent in the authorization request.

    Returns:
        The authorization code.

    Raises:
        OAuthCallbackError: On a state mismatch, an ``error`` parameter, or
            a missing code.
    """
    params = parse_qs(urlsplit(url.strip()).query)

    def first(name: str) -> Optional[str]:
        values = params.get(name)
        return values[0] if values else None

    if first("state") != expected_state:
        raise OAuthCallbackError("State mismatch")
    error = first("error")
    if error:
        raise OAuthCallbackError(first("error_description") or error)
    code = first("code")
    if not code:
        raise OAuthCallbackError("No authorization code found in the callback URL")
    return code


def _prompt_callback_url() -> str:
    return typer.prompt("Callback URL")


class LoginFlow:
    """Run one login attempt.

    Args:
        config: Effective configuration (authority URL, client id, loopback
            port, request timeout).
        store: Token store that receives the new tokens. Defaults to one at
            ``config.credentials_path``.
        transport: Optional httpx transport for the token endpoint (tests).
        open_browser: Callable used to launch the browser; returns a falsy
            value or raises when no browser could be opened. Defaults to
            :func:`webbrowser.open`.
        prompt: Callable returning the pasted callback URL in manual mode.
            Defaults to a :func:`typer.prompt`.
        loopback_timeout: Seconds the loopback listener waits for the
            redirect.
    """

    def __init__(
        self,
        config: EremosConfig,
        store: Optional[TokenStore] = None,
        transport: Optional[httpx.BaseTransport] = None,
        open_browser: Optional[Callable[[str], Any]] = None,
        prompt: Optional[Callable[[], str]] = None,
        loopback_timeout: float = LOGIN_TIMEOUT_SECONDS,
    ) -> None:
        self._config = config
        self._store = store or TokenStore(config.credentials_path)
        self._transport = transport
        self._open_browser = open_browser or webbrowser.open
        self._prompt = prompt or _prompt_callback_url
        self._loopback_timeout = loopback_timeout

    def build_authorize_url(
        self, redirect_uri: str, code_challenge: str, state: str
    ) -> str:
        """Return the authorization endpoint URL for this attempt.

        Raises:
            ConfigError: If the authority URL is invalid.
        """
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self._config.client_id,
                "redirect_uri": redirect_uri,
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
                "state": state,
                "scope": DEFAULT_SCOPES,
            }
        )
        return f"{join_url(self._config.authority_base(), AUTHORIZE_PATH)}?{query}"

    def run(self, manual: bool = False) -> StoredTokens:
        """Perform the login and persist the resulting tokens.

        Args:
            manual: Skip the loopback listener and ask the user to paste
                the callback URL.

        Returns:
            The saved :class:`~eremos.models.StoredTokens`.

        Raises:
            ConfigError: If the authority URL, client id or loopback port is
                invalid.
            LoopbackPortInUseError: If the loopback port is taken.
            OAuthCallbackError: If consent was denied or the callback was
                malformed.
            LoginTimeoutError: If no callback arrived in time.
            AuthError: If the token exchange was rejected.
            ConnectionError_: If the token endpoint could not be reached.
        """
        self._config.authority_base()
        if not self._config.client_id:
            raise ConfigError("OAuth client id is required")
        port = self._config.loopback_port()

        code_verifier = generate_code_verifier()
        code_challenge = generate_code_challenge(code_verifier)
        state = generate_state()

        loopback: Optional[LoopbackServer] = None
        if not manual:
            loopback = LoopbackServer(state, port, timeout=self._loopback_timeout)
            loopback.start()

        try:
            if loopback is not None:
                redirect_uri = loopback.redirect_uri
            else:
                redirect_uri = get_loopback_redirect_uri(port)
            authorize_url = self.build_authorize_url(redirect_uri, code_challenge, state)

            info("Opening browser for authorization...")
            self._launch_browser(authorize_url)
            info("If the browser did not open, visit this URL:")
            info(authorize_url)

            if loopback is None:
                info(
                    "After approving, copy the full callback URL from your browser "
                    "address bar and paste it here."
                )
                code = parse_callback_url(self._prompt(), state)
            else:
                info("Waiting for authorization...")
                code = loopback.wait().code
        finally:
            if loopback is not None:
                loopback.close()

        info("Exchanging code for tokens...")
        tokens = self.exchange_code(code, code_verifier, redirect_uri)
        return self._store.save(tokens)

    def _launch_browser(self, url: str) -> None:
        try:
            opened = self._open_browser(url)
        except (webbrowser.Error, OSError) as exc:
            logger.debug("Browser launch failed: %s", exc)
            opened = False
        if not opened:
            info("Could not open browser automatically.")

    def exchange_code(
        self, code: str, code_verifier: str, redirect_uri: str
    ) -> StoredTokens:
        """Exchange an authorization code for a token pair.

        Args:
            code: Authorization code from the callback.
            code_verifier: The PKCE verifier matching the challenge that was
                sent in the authorization request.
            redirect_uri: The redirect URI used in the authorization request.

        Returns:
            The new token record (not yet persisted).

        Raises:
            AuthError: On a non-2xx response or a response missing either
                token.
            ConnectionError_: On timeout or network failure.
        """
        endpoint = join_url(self._config.authority_base(), TOKEN_PATH)
        timeout = self._config.request_timeout
        try:
            with httpx.Client(
                timeout=timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = client.post(
                    endpoint,
                    data={
                        "grant_type": "authorization_code",
                        "code": code,
                        "code_verifier": code_verifier,
                        "redirect_uri": redirect_uri,
                        "client_id": self._config.client_id,
                    },
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as exc:
            raise ConnectionError_(
                f"Token exchange timed out after {timeout:g}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise ConnectionError_(f"Token exchange failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if not response.is_success:
            reason = data.get("error_description") or data.get("error") or "Unknown error"
            raise AuthError(f"Token exchange failed: {reason}")

        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        if (
            not isinstance(access_token, str)
            or not access_token
            or not isinstance(refresh_token, str)
            or not refresh_token
        ):
            raise AuthError("Token exchange failed: missing tokens in response")

        logger.debug("Token exchange succeeded")
        return StoredTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=int(time.time()) + expires_in_seconds(data.get("expires_in")),
            client_id=self._config.client_id,
        )
