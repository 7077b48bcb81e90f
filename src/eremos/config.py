"""Configuration resolution and URL validation.

This module builds the single :class:`~eremos.models.EremosConfig` used by a
CLI invocation:

* **Directory layout** -- everything lives under ``~/.eremos/`` (override
  with ``EREMOS_HOME``). See :func:`get_eremos_dir`,
  :func:`get_credentials_path`, :func:`get_logs_dir`.
* **Precedence resolution** -- :func:`load_config` merges explicit overrides
  (CLI flags), environment variables, the optional ``config.json`` file and
  built-in defaults.
* **URL helpers** -- :func:`parse_base_url`, :func:`join_url` and
  :func:`is_loopback_url` enforce https everywhere except loopback hosts.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional, Union
from urllib.parse import urljoin, urlsplit, urlunsplit

from eremos.exceptions import ConfigError
from eremos.models import EremosConfig

DEFAULT_AUTHORITY_URL = "https://auth.eremos.jp"
DEFAULT_API_URL = "https://eremos.jp"
DEFAULT_CLIENT_ID = "28127dd8-2f0b-4809-80ab-08c6b919ef9b"
DEFAULT_LOOPBACK_PORT = 17654

_CONFIG_FILENAME = "config.json"
_CREDENTIALS_FILENAME = "credentials.json"
_LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})

# Environment variable for each overridable field.
_ENV_VARS = {
    "authority_url": "EREMOS_AUTH_URL",
    "api_url": "EREMOS_API_URL",
    "client_id": "EREMOS_OAUTH_CLIENT_ID",
    "loopback_port": "EREMOS_LOOPBACK_PORT",
}


# --- Paths ---


def get_eremos_dir() -> Path:
    """Return the eremos home directory (``$EREMOS_HOME`` or ``~/.eremos``).

    The directory is not created here; the token store creates it with
    owner-only permissions on first save.
    """
    env_value = os.environ.get("EREMOS_HOME", "")
    if env_value:
        return Path(env_value)
    return Path.home() / ".eremos"


def get_credentials_path() -> Path:
    """Return the path of ``credentials.json`` inside :func:`get_eremos_dir`."""
    return get_eremos_dir() / _CREDENTIALS_FILENAME


def get_logs_dir() -> Path:
    """Return the crash-log directory, creating it if necessary."""
    path = get_eremos_dir() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- URL helpers ---


def parse_base_url(name: str, raw: str, allow_http_loopback: bool = True) -> str:
    """Validate and normalise a base URL.

    Args:
        name: Setting name used in error messages (e.g. ``"EREMOS_AUTH_URL"``).
        raw: The candidate URL.
        allow_http_loopback: Accept plain ``http`` for ``localhost``,
            ``127.0.0.1`` and ``::1``.

    Returns:
        The URL with trailing slashes removed from its path.

    Raises:
        ConfigError: If the URL is empty, not absolute, carries userinfo, or
            uses a scheme other than https for a non-loopback host.
    """
    value = (raw or "").strip()
    if not value:
        raise ConfigError(f"{name} is required")

    try:
        parts = urlsplit(value)
        _ = parts.port  # malformed port raises ValueError
    except ValueError as exc:
        raise ConfigError(f"{name} must be a valid absolute URL") from exc
    if not parts.scheme or not parts.netloc or not parts.hostname:
        raise ConfigError(f"{name} must be a valid absolute URL")

    if parts.username or parts.password:
        raise ConfigError(f"{name} must not include userinfo")

    scheme = parts.scheme.lower()
    if scheme != "https":
        loopback_http = (
            allow_http_loopback
            and scheme == "http"
            and is_loopback_url(value)
        )
        if not loopback_http:
            raise ConfigError(
                f"{name} must use https (http is only allowed for loopback URLs)"
            )

    return urlunsplit(
        (scheme, parts.netloc, parts.path.rstrip("/"), parts.query, parts.fragment)
    )


def join_url(base: str, path: str) -> str:
    """Resolve *path* against the origin of *base*.

    ``path`` is always treated as absolute, so any path component of
    ``base`` is replaced::

        >>> join_url("https://auth.example.com/base", "auth/v1/oauth/token")
        'https://auth.example.com/auth/v1/oauth/token'
    """
    return urljoin(base + "/", "/" + path.lstrip("/"))


def is_loopback_url(url: str) -> bool:
    """Return True if *url* is an http(s) URL pointing at a loopback host."""
    parts = urlsplit(url)
    return parts.scheme in ("http", "https") and parts.hostname in _LOOPBACK_HOSTS


def parse_loopback_port(raw: Any) -> int:
    """Parse a loopback port number.

    Raises:
        ConfigError: If *raw* is not an integer in 1-65535.
    """
    if isinstance(raw, bool):
        port: Optional[int] = None
    elif isinstance(raw, int):
        port = raw
    else:
        try:
            port = int(str(raw).strip())
        except ValueError:
            port = None
    if port is None or not 1 <= port <= 65535:
        raise ConfigError(
            f"EREMOS_LOOPBACK_PORT must be a valid port number (1-65535), got: {raw}"
        )
    return port


# --- Precedence resolution ---


def _raw_port(value: Any) -> Union[int, str]:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return str(value)


def load_file_config() -> dict[str, Any]:
    """Load ``config.json`` from the eremos directory.

    Returns:
        The parsed JSON object, or an empty dict if the file does not exist.

    Raises:
        ConfigError: If the file exists but is not a JSON object.
    """
    path = get_eremos_dir() / _CONFIG_FILENAME
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid config at {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config at {path}: expected a JSON object")
    return data


def load_config(**overrides: Any) -> EremosConfig:
    """Resolve the effective configuration.

    Precedence (high to low):
        1. Keyword overrides (``authority_url``, ``api_url``, ``client_id``,
           ``loopback_port``); ``None`` values are ignored
        2. Environment variables (``EREMOS_AUTH_URL``, ``EREMOS_API_URL``,
           ``EREMOS_OAUTH_CLIENT_ID``, ``EREMOS_LOOPBACK_PORT``)
        3. ``~/.eremos/config.json``
        4. Defaults

    URLs and the loopback port are not validated here; see
    :meth:`EremosConfig.authority_base` and :meth:`EremosConfig.loopback_port`.

    Raises:
        ConfigError: For an unreadable config file or an empty client id.
    """
    resolved: dict[str, Any] = {
        "authority_url": DEFAULT_AUTHORITY_URL,
        "api_url": DEFAULT_API_URL,
        "client_id": DEFAULT_CLIENT_ID,
        "loopback_port": DEFAULT_LOOPBACK_PORT,
    }

    file_cfg = load_file_config()
    for key in resolved:
        if file_cfg.get(key) is not None:
            resolved[key] = file_cfg[key]

    for key, env_var in _ENV_VARS.items():
        env_value = os.environ.get(env_var)
        if env_value is not None:
            resolved[key] = env_value

    for key, value in overrides.items():
        if key not in resolved:
            raise ConfigError(f"Unknown configuration key: {key}")
        if value is not None:
            resolved[key] = value

    client_id = str(resolved["client_id"]).strip()
    if not client_id:
        raise ConfigError("OAuth client id is required")

    return EremosConfig(
        authority_url=str(resolved["authority_url"]),
        api_url=str(resolved["api_url"]),
        client_id=client_id,
        loopback_port_raw=_raw_port(resolved["loopback_port"]),
        credentials_path=get_credentials_path(),
    )
