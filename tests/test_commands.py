"""End-to-end tests for the CLI commands through Typer's CliRunner.

HTTP is served by an :class:`httpx.MockTransport` placed in ``ctx.obj``;
the token store lives under the per-test ``EREMOS_HOME``.
"""

from __future__ import annotations

import base64
import http.client
import json
import socket
import time
from pathlib import Path
from typing import Any, Callable, Optional
from unittest.mock import patch
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from eremos import __version__
from eremos.app import app, main
from eremos.auth.token_store import TokenStore
from eremos.exceptions import AuthError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_jwt(claims: dict[str, Any]) -> str:
    def segment(data: dict[str, Any]) -> str:
        raw = json.dumps(data).encode("utf-8")
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    return f"{segment({'alg': 'none'})}.{segment(claims)}.sig"


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class _Server:
    """MockTransport handler keyed by ``"METHOD /path"``."""

    def __init__(self, routes: Optional[dict[str, Callable[[httpx.Request], httpx.Response]]] = None) -> None:
        self.routes = routes or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(f"{request.method} {request.url.path}")
        if handler is None:
            return httpx.Response(404, json={"error": {"code": "NOT_FOUND", "message": "Not found"}})
        return handler(request)

    def paths(self) -> list[str]:
        return [f"{r.method} {r.url.path}" for r in self.requests]


TOKEN_RESPONSE = {"access_token": "login-access", "refresh_token": "login-refresh", "expires_in": 3600}


@pytest.fixture(autouse=True)
def _test_hosts(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EREMOS_AUTH_URL", "https://auth.example.test")
    monkeypatch.setenv("EREMOS_API_URL", "https://api.example.test")
    monkeypatch.setenv("EREMOS_OAUTH_CLIENT_ID", "test-client")


@pytest.fixture
def cli_store(eremos_home: Path) -> TokenStore:
    return TokenStore(eremos_home / "credentials.json")


def _invoke(cli_runner, args: list[str], server: Optional[_Server] = None, **kwargs: Any):
    obj: dict[str, Any] = {"transport": httpx.MockTransport(server or _Server())}
    obj.update(kwargs.pop("obj", {}))
    return cli_runner.invoke(app, args, obj=obj, **kwargs)


def _save_tokens(store: TokenStore, **overrides: Any) -> None:
    data: dict[str, Any] = {
        "access_token": make_jwt({"sub": "user-1", "email": "me@example.com"}),
        "refresh_token": "refresh-1",
        "expires_at": int(time.time()) + 3600,
        "client_id": "test-client",
    }
    data.update(overrides)
    store.save(data)


# ---------------------------------------------------------------------------
# Root callback
# ---------------------------------------------------------------------------


class TestRoot:
    def test_version(self, cli_runner) -> None:
        result = cli_runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert result.output.strip() == f"eremos {__version__}"

    def test_invalid_config_exits_1(self, cli_runner, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EREMOS_OAUTH_CLIENT_ID", "   ")
        result = _invoke(cli_runner, ["--no-color", "status"])
        assert result.exit_code == 1
        assert "Error: OAuth client id is required" in result.output


class TestInvalidLoopbackPort:
    @pytest.fixture(autouse=True)
    def _bad_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EREMOS_LOOPBACK_PORT", "notaport")

    def test_logout_still_works(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store)
        server = _Server({"POST /auth/v1/logout": lambda r: httpx.Response(204)})
        result = _invoke(cli_runner, ["--no-color", "logout"], server)
        assert result.exit_code == 0
        assert "Logged out successfully. Tokens removed." in result.output
        assert not cli_store.path.exists()

    def test_status_still_works(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store)
        result = _invoke(cli_runner, ["--no-color", "status"])
        assert result.exit_code == 0
        assert "Active" in result.output

    def test_login_fails_on_port(self, cli_runner, cli_store: TokenStore) -> None:
        browser = []
        result = _invoke(cli_runner, ["--no-color", "login"], obj={"open_browser": browser.append})
        assert result.exit_code == 1
        assert "EREMOS_LOOPBACK_PORT must be a valid port number (1-65535), got: notaport" in result.output
        assert browser == []
        assert not cli_store.path.exists()


# ---------------------------------------------------------------------------
# login
# ---------------------------------------------------------------------------


class TestLogin:
    def _follow_redirect(self, query: Callable[[dict[str, str]], str]) -> Callable[[str], bool]:
        def open_browser(url: str) -> bool:
            params = {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}
            redirect = urlsplit(params["redirect_uri"])
            conn = http.client.HTTPConnection("127.0.0.1", redirect.port, timeout=5)
            try:
                conn.request("GET", f"{redirect.path}?{query(params)}")
                conn.getresponse().read()
            finally:
                conn.close()
            return True

        return open_browser

    def test_loopback_login(
        self, cli_runner, cli_store: TokenStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        port = _free_port()
        monkeypatch.setenv("EREMOS_LOOPBACK_PORT", str(port))
        server = _Server({"POST /auth/v1/oauth/token": lambda r: httpx.Response(200, json=TOKEN_RESPONSE)})

        result = _invoke(
            cli_runner,
            ["--no-color", "login"],
            server,
            obj={"open_browser": self._follow_redirect(lambda p: f"code=abc&state={p['state']}")},
        )

        assert result.exit_code == 0, result.output
        assert "Login successful!" in result.output
        assert f"Tokens saved to {cli_store.path}" in result.output
        tokens = cli_store.load()
        assert tokens is not None
        assert tokens.access_token == "login-access"
        form = parse_qs(server.requests[0].content.decode("utf-8"))
        assert form["redirect_uri"] == [f"http://127.0.0.1:{port}/callback"]
        assert form["code"] == ["abc"]

    def test_denied_consent_exits_4(
        self, cli_runner, cli_store: TokenStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("EREMOS_LOOPBACK_PORT", str(_free_port()))
        result = _invoke(
            cli_runner,
            ["--no-color", "login"],
            obj={
                "open_browser": self._follow_redirect(
                    lambda p: f"error=access_denied&error_description=User+denied&state={p['state']}"
                )
            },
        )
        assert result.exit_code == 4
        assert "Error: User denied" in result.output
        assert cli_store.load() is None

    def test_port_in_use_exits_4(
        self, cli_runner, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen(1)
            monkeypatch.setenv("EREMOS_LOOPBACK_PORT", str(blocker.getsockname()[1]))
            result = _invoke(
                cli_runner, ["--no-color", "login"], obj={"open_browser": lambda url: True}
            )
        assert result.exit_code == 4
        assert "is already in use" in result.output

    def test_manual_login(self, cli_runner, cli_store: TokenStore) -> None:
        server = _Server({"POST /auth/v1/oauth/token": lambda r: httpx.Response(200, json=TOKEN_RESPONSE)})
        with patch("eremos.auth.login.generate_state", return_value="fixed"):
            result = _invoke(
                cli_runner,
                ["--no-color", "login", "--manual"],
                server,
                obj={"open_browser": lambda url: True},
                input="http://127.0.0.1:17654/callback?code=pasted&state=fixed\n",
            )
        assert result.exit_code == 0, result.output
        assert "copy the full callback URL" in result.output
        assert cli_store.load() is not None
        assert parse_qs(server.requests[0].content.decode("utf-8"))["code"] == ["pasted"]

    def test_manual_login_token_exchange_rejected(self, cli_runner, cli_store: TokenStore) -> None:
        server = _Server(
            {
                "POST /auth/v1/oauth/token": lambda r: httpx.Response(
                    400, json={"error": "invalid_grant", "error_description": "Code expired"}
                )
            }
        )
        with patch("eremos.auth.login.generate_state", return_value="fixed"):
            result = _invoke(
                cli_runner,
                ["--no-color", "login", "--manual"],
                server,
                obj={"open_browser": lambda url: True},
                input="http://127.0.0.1:17654/callback?code=pasted&state=fixed\n",
            )
        assert result.exit_code == 4
        assert "Error: Token exchange failed: Code expired" in result.output
        assert cli_store.load() is None


# ---------------------------------------------------------------------------
# logout
# ---------------------------------------------------------------------------


class TestLogout:
    def test_not_logged_in(self, cli_runner) -> None:
        server = _Server()
        result = _invoke(cli_runner, ["--no-color", "logout"], server)
        assert result.exit_code == 0
        assert "Not currently logged in." in result.output
        assert server.requests == []

    def test_revokes_and_deletes(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store, access_token="plain-access")
        server = _Server({"POST /auth/v1/logout": lambda r: httpx.Response(204)})
        result = _invoke(cli_runner, ["--no-color", "logout"], server)

        assert result.exit_code == 0
        assert "Logged out successfully. Tokens removed." in result.output
        assert not cli_store.path.exists()
        assert server.paths() == ["POST /auth/v1/logout"]
        assert server.requests[0].headers["Authorization"] == "Bearer plain-access"

    def test_revocation_failure_still_deletes(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store)

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        result = _invoke(cli_runner, ["--no-color", "logout"], _Server({"POST /auth/v1/logout": refuse}))
        assert result.exit_code == 0
        assert not cli_store.path.exists()

    def test_revocation_skipped_for_invalid_authority(
        self, cli_runner, cli_store: TokenStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _save_tokens(cli_store)
        monkeypatch.setenv("EREMOS_AUTH_URL", "http://auth.example.test")
        server = _Server()
        result = _invoke(cli_runner, ["--no-color", "logout"], server)
        assert result.exit_code == 0
        assert server.requests == []
        assert not cli_store.path.exists()


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


class TestStatus:
    def test_not_logged_in(self, cli_runner) -> None:
        result = _invoke(cli_runner, ["--no-color", "status"])
        assert result.exit_code == 0
        assert "Not logged in." in result.output
        assert "→ Run `eremos login` to authenticate." in result.output

    def test_not_logged_in_json(self, cli_runner) -> None:
        result = _invoke(cli_runner, ["--json", "status"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"data": {"logged_in": False}}

    def test_active(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store)
        result = _invoke(cli_runner, ["--no-color", "status"])
        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert "Client ID: test-client" in lines
        assert "Expired: No" in lines
        assert "Status: Active" in lines
        assert "User ID: user-1" in lines
        assert "me@example.com" not in result.output

    def test_show_email(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store)
        result = _invoke(cli_runner, ["--no-color", "status", "--show-email"])
        assert "Email: me@example.com" in result.output.splitlines()

    def test_json(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store)
        stored = cli_store.load()
        assert stored is not None
        result = _invoke(cli_runner, ["--json", "status"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == {
            "data": {
                "logged_in": True,
                "client_id": "test-client",
                "expires_at": stored.expires_at,
                "expired": False,
                "valid": True,
                "user_id": "user-1",
            }
        }

    def test_json_show_email(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store)
        result = _invoke(cli_runner, ["--json", "status", "--show-email"])
        assert json.loads(result.stdout)["data"]["email"] == "me@example.com"

    def test_expired_and_refresh_fails(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store, expires_at=int(time.time()) - 100)
        server = _Server(
            {"POST /auth/v1/oauth/token": lambda r: httpx.Response(400, json={"error": "invalid_grant"})}
        )
        result = _invoke(cli_runner, ["--no-color", "status"], server)
        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert "Expired: Yes" in lines
        assert "Status: Invalid (please re-login)" in lines

    def test_expired_and_refreshed(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store, expires_at=int(time.time()) - 100)
        fresh = make_jwt({"sub": "user-2"})
        server = _Server(
            {
                "POST /auth/v1/oauth/token": lambda r: httpx.Response(
                    200, json={"access_token": fresh, "expires_in": 600}
                )
            }
        )
        result = _invoke(cli_runner, ["--json", "status"], server)
        data = json.loads(result.stdout)["data"]
        assert data["expired"] is True
        assert data["valid"] is True
        assert data["user_id"] == "user-2"
        stored = cli_store.load()
        assert stored is not None
        assert stored.access_token == fresh

    def test_client_id_is_sanitised(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store, client_id="evil\x1b]0;pwned\x07-client")
        result = _invoke(cli_runner, ["--no-color", "status"])
        assert "Client ID: evil-client" in result.output.splitlines()
        assert "\x1b" not in result.output

    def test_rich_table(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store)
        result = _invoke(cli_runner, ["status"])
        assert result.exit_code == 0
        assert "Authentication Status" in result.output
        assert "Active" in result.output


# ---------------------------------------------------------------------------
# me
# ---------------------------------------------------------------------------


PROFILE = {
    "id": "user-1",
    "handle": "kai",
    "display_name": "Kai",
    "role": "admin",
    "website_url": "https://kai.example",
    "created_at": "2024-01-01T00:00:00Z",
}


class TestMe:
    def test_requires_login(self, cli_runner) -> None:
        server = _Server()
        result = _invoke(cli_runner, ["--no-color", "me"], server)
        assert result.exit_code == 4
        assert "Error: Not authenticated. Please run `eremos login` first." in result.output
        assert server.requests == []

    def test_requires_login_json(self, cli_runner) -> None:
        result = _invoke(cli_runner, ["--json", "me"])
        assert result.exit_code == 4
        assert json.loads(result.stdout) == {
            "error": {
                "code": "AUTH_REQUIRED",
                "message": "Not authenticated. Please run `eremos login` first.",
            }
        }

    def test_users_me(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store)
        server = _Server(
            {"GET /api/users/me": lambda r: httpx.Response(200, json={"data": {**PROFILE, "email": "api@example.com"}})}
        )
        result = _invoke(cli_runner, ["--no-color", "me"], server)

        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert "ID: user-1" in lines
        assert "Handle: @kai" in lines
        assert "Name: Kai" in lines
        assert "Website: https://kai.example" in lines
        assert "Admin: Yes" in lines
        assert "Bio: -" in lines
        assert "Source: users_me" in lines
        assert "api@example.com" not in result.output
        assert server.requests[0].headers["Authorization"].startswith("Bearer ")

    def test_users_me_json_with_email(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store)
        server = _Server(
            {
                "GET /api/users/me": lambda r: httpx.Response(
                    200, json={"data": {"profile": PROFILE, "email": "api@example.com"}}
                )
            }
        )
        result = _invoke(cli_runner, ["--json", "me", "--show-email"], server)
        data = json.loads(result.stdout)["data"]
        assert data["source"] == "users_me"
        assert data["email"] == "api@example.com"
        assert data["warnings"] == []
        assert data["profile"]["name"] == "Kai"
        assert data["profile"]["is_admin"] is True

    def test_json_hides_email_by_default(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store)
        server = _Server({"GET /api/users/me": lambda r: httpx.Response(200, json={"data": PROFILE})})
        result = _invoke(cli_runner, ["--json", "me"], server)
        assert "email" not in json.loads(result.stdout)["data"]

    def test_fallback_on_oauth_not_allowed(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store)
        server = _Server(
            {
                "GET /api/users/me": lambda r: httpx.Response(
                    403, json={"error": {"code": "OAUTH_NOT_ALLOWED", "message": "Not for OAuth"}}
                ),
                "GET /api/users/user-1": lambda r: httpx.Response(200, json={"data": PROFILE}),
            }
        )
        result = _invoke(cli_runner, ["--no-color", "me", "--show-email"], server)

        assert result.exit_code == 0, result.output
        assert server.paths() == ["GET /api/users/me", "GET /api/users/user-1"]
        assert "Warning: /api/users/me was unavailable (OAUTH_NOT_ALLOWED)" in result.output
        lines = result.output.splitlines()
        assert "Source: users_get_fallback" in lines
        assert "Email: me@example.com" in lines

    def test_fallback_on_embedded_profile_error(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store)
        server = _Server(
            {
                "GET /api/users/me": lambda r: httpx.Response(
                    200, json={"data": {"profile": {"error": "OAUTH_NOT_ALLOWED"}}}
                ),
                "GET /api/users/user-1": lambda r: httpx.Response(200, json={"data": PROFILE}),
            }
        )
        result = _invoke(cli_runner, ["--json", "me"], server)
        assert result.exit_code == 0
        assert json.loads(result.stdout)["data"]["source"] == "users_get_fallback"

    def test_fallback_without_sub(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store, access_token="opaque-token")
        server = _Server(
            {
                "GET /api/users/me": lambda r: httpx.Response(
                    403, json={"error": {"code": "OAUTH_NOT_ALLOWED", "message": "no"}}
                )
            }
        )
        result = _invoke(cli_runner, ["--no-color", "me"], server)
        assert result.exit_code == 1
        assert "Unable to resolve current user ID" in result.output

    def test_fallback_rejects_unsafe_sub(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store, access_token=make_jwt({"sub": "../admin"}))
        server = _Server(
            {
                "GET /api/users/me": lambda r: httpx.Response(
                    403, json={"error": {"code": "OAUTH_NOT_ALLOWED", "message": "no"}}
                )
            }
        )
        result = _invoke(cli_runner, ["--no-color", "me"], server)
        assert result.exit_code == 2
        assert server.paths() == ["GET /api/users/me"]

    def test_other_api_error(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store)
        server = _Server(
            {
                "GET /api/users/me": lambda r: httpx.Response(
                    422,
                    json={
                        "error": {
                            "code": "VALIDATION_ERROR",
                            "message": "Bad request",
                            "details": [{"field": "id", "message": "invalid"}],
                        }
                    },
                )
            }
        )
        result = _invoke(cli_runner, ["--no-color", "me"], server)
        assert result.exit_code == 1
        assert "Error: Bad request" in result.output
        assert "Error:   id: invalid" in result.output

    def test_other_api_error_json(self, cli_runner, cli_store: TokenStore) -> None:
        _save_tokens(cli_store)
        server = _Server(
            {
                "GET /api/users/me": lambda r: httpx.Response(
                    401, json={"error": {"code": "UNAUTHORIZED", "message": "Token revoked"}}
                )
            }
        )
        result = _invoke(cli_runner, ["--json", "me"], server)
        assert result.exit_code == 4
        assert json.loads(result.stdout) == {
            "error": {"code": "UNAUTHORIZED", "message": "Token revoked"}
        }


# ---------------------------------------------------------------------------
# main() entry point
# ---------------------------------------------------------------------------


class TestMain:
    def test_eremos_error_exit_code(self, capsys) -> None:
        with patch("eremos.app._setup_signal_handlers"), patch(
            "eremos.app.app", side_effect=AuthError("nope")
        ):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 4
        assert "nope" in capsys.readouterr().err

    def test_crash_log(self, capsys, eremos_home: Path) -> None:
        with patch("eremos.app._setup_signal_handlers"), patch(
            "eremos.app.app", side_effect=RuntimeError("boom")
        ):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 1
        logs = list((eremos_home / "logs").glob("crash-*.log"))
        assert len(logs) == 1
        assert "RuntimeError: boom" in logs[0].read_text(encoding="utf-8")
        assert "Unexpected error. Debug log:" in capsys.readouterr().err

    def test_keyboard_interrupt(self, capsys) -> None:
        with patch("eremos.app._setup_signal_handlers"), patch(
            "eremos.app.app", side_effect=KeyboardInterrupt
        ):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 130
        assert "Cancelled." in capsys.readouterr().err
