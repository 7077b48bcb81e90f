"""Access-token lifecycle: return a valid token, refreshing it when expired.

:class:`TokenManager` is the only component that rotates stored tokens.
Refresh failures are soft: callers receive ``None`` and decide whether to
proceed unauthenticated or tell the user to run ``eremos login``.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Optional

import httpx

from eremos.auth.token_store import TokenStore, is_token_expired
from eremos.config import join_url
from eremos.exceptions import ConfigError, TokenValidationError
from eremos.models import EremosConfig, StoredTokens

logger = logging.getLogger(__name__)

TOKEN_PATH = "/auth/v1/oauth/token"
DEFAULT_EXPIRES_IN = 3600


def expires_in_seconds(value: Any) -> int:
    """Coerce the ``expires_in`` response field, falling back to one hour."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_EXPIRES_IN
    if isinstance(value, float) and not math.isfinite(value):
        return DEFAULT_EXPIRES_IN
    return int(value)


class TokenManager:
    """Hand out valid access tokens from the token store.

    Args:
        config: Effective configuration (authority URL, request timeout).
        store: Token store to read and update. Defaults to one at
            ``config.credentials_path``.
        transport: Optional httpx transport, used by tests to stub the
            token endpoint.
    """

    def __init__(
        self,
        config: EremosConfig,
        store: Optional[TokenStore] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._config = config
        self._store = store or TokenStore(config.credentials_path)
        self._transport = transport

    @property
    def store(self) -> TokenStore:
        """The underlying token store."""
        return self._store

    def get_valid_token(self) -> Optional[str]:
        """Return a currently valid access token, or ``None``.

        Tokens within 60 seconds of expiry are refreshed first. ``None``
        means there are no stored tokens or the refresh did not succeed.

        Raises:
            SymlinkRefusedError: If the credentials file is a symbolic link.
        """
        tokens = self._store.load()
        if tokens is None:
            return None
        if not is_token_expired(tokens):
            return tokens.access_token
        logger.debug("Access token expired or expiring; refreshing")
        refreshed = self.refresh(tokens)
        return refreshed.access_token if refreshed is not None else None

    def refresh(self, tokens: StoredTokens) -> Optional[StoredTokens]:
        """Exchange the refresh token for a new token pair and persist it.

        Args:
            tokens: The currently stored record.

        Returns:
            The new record, or ``None`` if the authority URL is invalid, the
            request fails, or the response is unusable.

        Raises:
            SymlinkRefusedError: If the credentials path turned into a
                symbolic link before the new record was written.
        """
        try:
            endpoint = join_url(self._config.authority_base(), TOKEN_PATH)
        except ConfigError as exc:
            logger.warning("Cannot refresh access token, authority URL is invalid: %s", exc)
            return None

        try:
            with httpx.Client(
                timeout=self._config.request_timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = client.post(
                    endpoint,
                    data={
                        "grant_type": "refresh_token",
                        "refresh_token": tokens.refresh_token,
                        "client_id": tokens.client_id,
                    },
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            logger.debug("Token refresh request failed: %s", exc)
            return None

        if not response.is_success:
            logger.debug("Token refresh rejected with HTTP %d", response.status_code)
            return None

        try:
            data = response.json()
        except ValueError:
            logger.debug("Token refresh response is not JSON")
            return None
        if not isinstance(data, dict):
            logger.debug("Token refresh response is not a JSON object")
            return None

        access_token = data.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            logger.debug("Token refresh response has no access_token")
            return None

        refresh_token = data.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token:
            refresh_token = tokens.refresh_token

        try:
            return self._store.save(
                {
                    "access_token": access_token,
                    "refresh_token": refresh_token,
                    "expires_at": int(time.time()) + expires_in_seconds(data.get("expires_in")),
                    "client_id": tokens.client_id,
                }
            )
        except TokenValidationError as exc:
            logger.debug("Refreshed tokens rejected by store: %s", exc)
            return None
