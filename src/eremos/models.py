"""Canonical Pydantic models shared across eremos modules.

**Persisted** -- :class:`StoredTokens`, the credential record written to
``~/.eremos/credentials.json`` by :class:`~eremos.auth.token_store.TokenStore`.

**Ephemeral** -- :class:`CallbackResult`, the outcome of a single OAuth
redirect captured by :class:`~eremos.auth.loopback.LoopbackServer`.

**Configuration** -- :class:`EremosConfig`, built once at process start by
:func:`~eremos.config.load_config` and passed to the components that need
it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Union

from pydantic import BaseModel, ConfigDict, Field


class StoredTokens(BaseModel):
    """Access/refresh token pair persisted by the token store.

    Validation is strict: a string where an integer is expected (or vice
    versa) is rejected rather than coerced, so a tampered or truncated file
    is never partially trusted.

    Attributes:
        access_token: Opaque bearer token.
        refresh_token: Opaque token used to mint new access tokens.
        expires_at: Absolute expiry of ``access_token`` in Unix seconds.
        client_id: OAuth client identifier the tokens were issued to.
    """

    model_config = ConfigDict(strict=True, frozen=True)

    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    expires_at: int
    client_id: str = Field(min_length=1)


class CallbackResult(BaseModel):
    """Authorization code and state delivered to the loopback redirect URI."""

    model_config = ConfigDict(frozen=True)

    code: str
    state: str


class EremosConfig(BaseModel):
    """Effective configuration for one CLI invocation.

    URLs and the loopback port are kept as raw values and validated on
    access through :meth:`authority_base`, :meth:`api_base` and
    :meth:`loopback_port`, so a malformed setting only fails the operation
    that actually needs it.

    Example::

        config = EremosConfig(
            authority_url="https://auth.eremos.jp",
            api_url="https://eremos.jp",
            client_id="my-client",
            loopback_port_raw=17654,
            credentials_path=Path.home() / ".eremos" / "credentials.json",
        )
    """

    model_config = ConfigDict(frozen=True)

    authority_url: str = Field(description="Base URL of the OAuth authority")
    api_url: str = Field(description="Base URL of the REST API")
    client_id: str = Field(description="OAuth client identifier")
    loopback_port_raw: Union[int, str] = Field(
        description="Fixed port of the loopback redirect listener, unvalidated"
    )
    request_timeout: float = Field(
        default=20.0, description="Timeout in seconds for ordinary requests"
    )
    upload_timeout: float = Field(
        default=120.0, description="Timeout in seconds for large uploads"
    )
    credentials_path: Path = Field(description="Location of credentials.json")

    def authority_base(self) -> str:
        """Return the validated authority base URL.

        Raises:
            ConfigError: If ``authority_url`` is malformed.
        """
        from eremos.config import parse_base_url

        return parse_base_url("EREMOS_AUTH_URL", self.authority_url)

    def api_base(self) -> str:
        """Return the validated API base URL.

        Raises:
            ConfigError: If ``api_url`` is malformed.
        """
        from eremos.config import parse_base_url

        return parse_base_url("EREMOS_API_URL", self.api_url)

    def loopback_port(self) -> int:
        """Return the validated loopback listener port.

        Raises:
            ConfigError: If ``loopback_port_raw`` is not a port in 1-65535.
        """
        from eremos.config import parse_loopback_port

        return parse_loopback_port(self.loopback_port_raw)
