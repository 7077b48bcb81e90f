"""Shared test fixtures for eremos.

Provides fixtures for isolating ``~/.eremos`` to a temporary directory,
building configurations and token stores, managing output state, and
running CLI commands. These fixtures are automatically discovered by pytest
and available to all test modules without explicit imports.
"""

from __future__ import annotations

import socket
import time
from pathlib import Path
from typing import Any

import pytest

from eremos.auth.token_store import TokenStore
from eremos.models import EremosConfig
from eremos.output import OutputManager, reset_output, set_output


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time. When Typer's CliRunner redirects those streams during a
    test and the test finishes, the cached references become stale.
    """
    yield
    reset_output()


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def eremos_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point ``EREMOS_HOME`` at a temporary directory for every test.

    Clears all EREMOS_* overrides so that a developer's environment never
    leaks into tests. The directory itself is not created, matching a
    fresh machine.

    Returns:
        The (not yet existing) eremos home directory.
    """
    home = tmp_path / "eremos-home"
    for var in [
        "EREMOS_AUTH_URL",
        "EREMOS_API_URL",
        "EREMOS_OAUTH_CLIENT_ID",
        "EREMOS_LOOPBACK_PORT",
        "NO_COLOR",
        "FORCE_COLOR",
    ]:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("EREMOS_HOME", str(home))
    return home


def free_port() -> int:
    """Return a TCP port on 127.0.0.1 that nothing is listening on right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def config(eremos_home: Path) -> EremosConfig:
    """A configuration pointing at test hosts, with a currently free loopback port."""
    return EremosConfig(
        authority_url="https://auth.example.test",
        api_url="https://api.example.test",
        client_id="test-client",
        loopback_port_raw=free_port(),
        credentials_path=eremos_home / "credentials.json",
    )


@pytest.fixture
def store(config: EremosConfig) -> TokenStore:
    """A token store at the isolated credentials path."""
    return TokenStore(config.credentials_path)


def make_tokens(**overrides: Any) -> dict[str, Any]:
    """Return a valid token record as a plain dict, with *overrides* applied."""
    data: dict[str, Any] = {
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "expires_at": int(time.time()) + 3600,
        "client_id": "test-client",
    }
    data.update(overrides)
    return data


@pytest.fixture
def valid_tokens() -> dict[str, Any]:
    """A token record that is not close to expiry."""
    return make_tokens()


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def plain_output() -> OutputManager:
    """Install a colourless OutputManager for tests that inspect captured text."""
    output = OutputManager(no_color=True)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()
