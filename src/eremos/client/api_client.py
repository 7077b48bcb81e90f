"""Synchronous API client with bearer auth and explicit timeouts.

This module provides :class:`ApiClient`, the blocking HTTP client used by
eremos commands. It wraps :class:`httpx.Client` and layers on:

- **Auth injection** -- a valid access token from
  :class:`~eremos.auth.token_refresh.TokenManager` is sent as
  ``Authorization: Bearer``. Without one the request goes out
  unauthenticated; commands that need auth call :meth:`ApiClient.require_auth`
  first.
- **Idempotency keys** -- a fresh ``Idempotency-Key`` for mutating calls
  that ask for one.
- **Timeouts** -- 20 s by default, 120 s for uploads. There is no retry.
- **Error mapping** -- :meth:`ApiClient.call` decodes the response envelope
  through :func:`~eremos.client.response.parse_api_response`.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Optional

import httpx

from eremos import __version__
from eremos.auth.token_refresh import TokenManager
from eremos.client.response import parse_api_response
from eremos.config import join_url
from eremos.exceptions import AuthError, ConnectionError_
from eremos.models import EremosConfig

logger = logging.getLogger(__name__)

USER_AGENT = f"eremos-cli/{__version__}"


class ApiClient:
    """Synchronous HTTP client for the Eremos API.

    Must be used as a context manager so that the underlying transport is
    opened and closed properly.

    Args:
        config: Effective configuration (API URL, timeouts).
        token_manager: Source of access tokens. Defaults to a
            :class:`~eremos.auth.token_refresh.TokenManager` over
            ``config.credentials_path`` sharing *transport*.
        transport: Optional httpx transport (tests).

    Example::

        with ApiClient(config) as client:
            envelope = client.call("GET", "/api/users/me")
    """

    def __init__(
        self,
        config: EremosConfig,
        token_manager: Optional[TokenManager] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._config = config
        self._tokens = token_manager or TokenManager(config, transport=transport)
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    # ------------------------------------------------------------------ #
    # Context manager
    # ------------------------------------------------------------------ #

    def __enter__(self) -> ApiClient:
        self._client = httpx.Client(
            timeout=self._config.request_timeout,
            follow_redirects=False,
            transport=self._transport,
        )
        return self

    def __exit__(self, *args: object) -> None:
        if self._client:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def require_auth(self) -> str:
        """Return a valid access token.

        Raises:
            AuthError: If there are no stored tokens or they could not be
                refreshed.
        """
        token = self._tokens.get_valid_token()
        if not token:
            raise AuthError("Not authenticated. Please run `eremos login` first.")
        return token

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[Any] = None,
        content: Optional[bytes] = None,
        headers: Optional[dict[str, str]] = None,
        auth: bool = True,
        idempotent: bool = False,
        upload: bool = False,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """Send a request to ``<api_url><path>``.

        Args:
            method: HTTP method.
            path: API path such as ``/api/users/me``.
            params: Query parameters.
            json_body: JSON-serialisable body.
            content: Raw body bytes (uploads).
            headers: Extra headers; they override the defaults.
            auth: Attach the bearer token when one is available.
            idempotent: Add a fresh ``Idempotency-Key`` unless one is given.
            upload: Use the longer upload timeout.
            timeout: Explicit timeout in seconds, overriding both defaults.

        Returns:
            The :class:`httpx.Response`, whatever its status.

        Raises:
            ConfigError: If the API URL is invalid.
            ConnectionError_: On timeout or network failure.
        """
        assert self._client is not None, "Client not initialised -- use as context manager"

        merged_headers: dict[str, str] = {
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
        }
        if auth:
            token = self._tokens.get_valid_token()
            if token:
                merged_headers["Authorization"] = f"Bearer {token}"
        merged_headers.update(headers or {})
        if idempotent and "Idempotency-Key" not in merged_headers:
            merged_headers["Idempotency-Key"] = str(uuid.uuid4())

        if timeout is None:
            timeout = self._config.upload_timeout if upload else self._config.request_timeout

        url = join_url(self._config.api_base(), path)
        kwargs: dict[str, Any] = {
            "headers": merged_headers,
            "params": params,
            "timeout": timeout,
        }
        if json_body is not None:
            kwargs["json"] = json_body
        elif content is not None:
            kwargs["content"] = content

        logger.debug("> %s %s", method.upper(), url)
        started = time.monotonic()
        try:
            response = self._client.request(method.upper(), url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ConnectionError_(f"Request timed out after {timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise ConnectionError_(f"Request failed: {exc}") from exc
        logger.debug(
            "< %d %s (%dms)",
            response.status_code,
            response.reason_phrase,
            (time.monotonic() - started) * 1000,
        )
        return response

    def call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Send a request and decode the response envelope.

        Accepts the same keyword arguments as :meth:`request`.

        Returns:
            The decoded envelope (``{"data": ..., ...}``).

        Raises:
            ApiError: On a non-2xx status or an unparseable body.
            ConnectionError_: On timeout or network failure.
        """
        return parse_api_response(self.request(method, path, **kwargs))
