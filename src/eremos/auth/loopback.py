"""Single-use loopback HTTP listener for the OAuth redirect.

:class:`LoopbackServer` binds ``127.0.0.1:<port>``, serves on a daemon
thread and completes one pending :class:`concurrent.futures.Future` with
the authorization code delivered to ``/callback``.

Unrelated or forged requests (wrong path, wrong method, missing or
mismatched ``state``) are answered and otherwise ignored: the listener
keeps waiting for the genuine redirect. Only a matching ``state`` with a
``code`` or an ``error``, the 5-minute timeout, or :meth:`LoopbackServer.close`
ends the wait, and whichever happens first wins. The winner is decided
before the browser gets its page, so a late duplicate callback is answered
with 409 instead of a second "Success".
"""

from __future__ import annotations

import errno
import hmac
import html
import logging
import threading
from concurrent.futures import CancelledError, Future
from concurrent.futures import TimeoutError as FuturesTimeoutError
from enum import Enum
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlsplit

from eremos.exceptions import (
    AuthError,
    LoginTimeoutError,
    LoopbackPortInUseError,
    OAuthCallbackError,
)
from eremos.models import CallbackResult

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"
CALLBACK_PATH = "/callback"
LOGIN_TIMEOUT_SECONDS = 5 * 60

_WINDOWS_EADDRINUSE = 10048


def get_loopback_redirect_uri(port: int) -> str:
    """Return the redirect URI registered for the loopback listener on *port*."""
    return f"http://{LOOPBACK_HOST}:{port}{CALLBACK_PATH}"


class LoopbackState(str, Enum):
    """Lifecycle of a :class:`LoopbackServer`.

    ``LISTENING`` is the only state that accepts a completion; leaving it is
    what makes the result one-shot.
    """

    STARTING = "starting"
    LISTENING = "listening"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    CLOSED = "closed"


def _html_page(title: str, message: str) -> bytes:
    title = html.escape(title)
    message = html.escape(message)
    page = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{title} - Eremos CLI</title>
<style>
  body {{ font-family: -apple-system, system-ui, sans-serif; display: flex;
         justify-content: center; align-items: center; min-height: 100vh;
         margin: 0; background: #111; color: #eee; }}
  .card {{ text-align: center; padding: 2rem; max-width: 36rem; }}
  p {{ color: #bbb; line-height: 1.4; }}
</style>
</head>
<body><div class="card"><h1>{title}</h1><p>{message}</p></div></body>
</html>
"""
    return page.encode("utf-8")


class _CallbackServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], owner: "LoopbackServer") -> None:
        self.owner = owner
        super().__init__(address, _CallbackHandler)


class _CallbackHandler(BaseHTTPRequestHandler):
    server: _CallbackServer
    # Idle peers must not hold a handler thread open past close().
    timeout = 10

    def parse_request(self) -> bool:
        if not super().parse_request():
            return False
        if self.command != "GET":
            self._send_text(405, "Method Not Allowed")
            return False
        return True

    def do_GET(self) -> None:
        try:
            self._handle_callback()
        except Exception:
            logger.debug("Loopback handler failed", exc_info=True)
            self._send_text(500, "Internal Server Error")

    def _handle_callback(self) -> None:
        parsed = urlsplit(self.path)
        if parsed.path != CALLBACK_PATH:
            self._send_text(404, "Not Found")
            return

        params = parse_qs(parsed.query, keep_blank_values=True)

        def first(name: str) -> Optional[str]:
            values = params.get(name)
            return values[0] if values else None

        owner = self.server.owner
        state = first("state")
        if not state or not hmac.compare_digest(
            state.encode("utf-8"), owner.expected_state.encode("utf-8")
        ):
            self._send_html(400, "Error", "State mismatch or missing state.")
            return

        error = first("error")
        if error:
            if not owner._claim(LoopbackState.REJECTED):
                self._send_inactive()
                return
            self._send_html(200, "Authorization Denied", "You can close this window.")
            owner._finish(
                lambda: owner._future.set_exception(
                    OAuthCallbackError(first("error_description") or error)
                )
            )
            return

        code = first("code")
        if not code:
            self._send_html(400, "Error", "Missing code parameter.")
            return

        if not owner._claim(LoopbackState.RESOLVED):
            self._send_inactive()
            return
        self._send_html(
            200,
            "Success",
            "Authorization complete! You can close this window and return to the terminal.",
        )
        result = CallbackResult(code=code, state=state)
        owner._finish(lambda: owner._future.set_result(result))

    def _send_inactive(self) -> None:
        self._send_html(
            409,
            "Login No Longer Active",
            "This login attempt has already finished. Return to the terminal for the result.",
        )

    def _send_text(self, status: int, body: str) -> None:
        self._send(status, "text/plain; charset=utf-8", body.encode("utf-8"))

    def _send_html(self, status: int, title: str, message: str) -> None:
        self._send(status, "text/html; charset=utf-8", _html_page(title, message))

    def _send(self, status: int, content_type: str, body: bytes) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def log_request(self, code: Any = "-", size: Any = "-") -> None:
        # The query string carries the authorization code; log the path only.
        logger.debug(
            "Loopback %s %s -> %s", self.command, urlsplit(self.path).path, code
        )

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("Loopback: " + format, *args)


class LoopbackServer:
    """Receive one OAuth redirect on ``http://127.0.0.1:<port>/callback``.

    Args:
        expected_state: The ``state`` value sent in the authorization
            request. A callback is accepted only when it echoes this value.
        port: Port to bind. ``0`` picks a free port (useful in tests);
            :attr:`port` reports the bound port after :meth:`start`.
        timeout: Seconds to wait for the redirect before rejecting with
            :class:`~eremos.exceptions.LoginTimeoutError`.

    Example::

        server = LoopbackServer(state, port=17654)
        server.start()
        try:
            webbrowser.open(authorize_url)
            result = server.wait()
        finally:
            server.close()
    """

    def __init__(
        self,
        expected_state: str,
        port: int,
        timeout: float = LOGIN_TIMEOUT_SECONDS,
    ) -> None:
        self.expected_state = expected_state
        self._port = port
        self._timeout = timeout
        self._state = LoopbackState.STARTING
        self._lock = threading.Lock()
        self._future: Future[CallbackResult] = Future()
        self._server: Optional[_CallbackServer] = None
        self._thread: Optional[threading.Thread] = None
        self._timer: Optional[threading.Timer] = None

    @property
    def state(self) -> LoopbackState:
        """Current lifecycle state."""
        return self._state

    @property
    def port(self) -> int:
        """The bound port (the requested port until :meth:`start` succeeds)."""
        return self._port

    @property
    def redirect_uri(self) -> str:
        """The redirect URI served by this listener."""
        return get_loopback_redirect_uri(self._port)

    def start(self) -> None:
        """Bind the listener and begin serving on a background thread.

        Raises:
            LoopbackPortInUseError: If the port is already bound.
            AuthError: If the listener cannot be started for another reason.
        """
        if self._state is not LoopbackState.STARTING:
            raise AuthError("Loopback server has already been started")
        try:
            server = _CallbackServer((LOOPBACK_HOST, self._port), self)
        except OSError as exc:
            in_use = exc.errno == errno.EADDRINUSE or (
                getattr(exc, "winerror", None) == _WINDOWS_EADDRINUSE
            )
            if in_use:
                raise LoopbackPortInUseError(
                    f"Loopback port {self._port} is already in use. "
                    "Close the process using it or set EREMOS_LOOPBACK_PORT to an "
                    "available port and register the matching redirect URI."
                ) from exc
            raise AuthError(
                f"Could not start loopback server on port {self._port}: {exc}"
            ) from exc

        self._server = server
        self._port = server.server_address[1]
        self._thread = threading.Thread(
            target=server.serve_forever,
            kwargs={"poll_interval": 0.1},
            name="eremos-loopback",
            daemon=True,
        )
        self._timer = threading.Timer(self._timeout, self._on_timeout)
        self._timer.daemon = True

        with self._lock:
            self._state = LoopbackState.LISTENING
        self._thread.start()
        self._timer.start()
        logger.debug("Loopback server listening on %s", self.redirect_uri)

    def wait(self, timeout: Optional[float] = None) -> CallbackResult:
        """Block until the redirect arrives or the listener is finished.

        Args:
            timeout: Optional extra bound in seconds on this call alone. The
                listener's own timeout still applies.

        Returns:
            The captured :class:`~eremos.models.CallbackResult`.

        Raises:
            OAuthCallbackError: If the authority redirected with an ``error``.
            LoginTimeoutError: If no redirect arrived in time.
            AuthError: If the listener was closed before completion.
        """
        try:
            return self._future.result(timeout=timeout)
        except CancelledError as exc:
            raise AuthError("Authorization was cancelled") from exc
        except FuturesTimeoutError as exc:
            raise LoginTimeoutError("Timed out waiting for the authorization callback") from exc

    def close(self) -> None:
        """Stop listening. Idempotent; a still-pending result is cancelled."""
        if self._claim(LoopbackState.CLOSED):
            self._finish(self._future.cancel)
        else:
            self._shutdown()

    # ------------------------------------------------------------------ #
    # Completion
    # ------------------------------------------------------------------ #

    def _on_timeout(self) -> None:
        if self._claim(LoopbackState.TIMED_OUT):
            self._finish(
                lambda: self._future.set_exception(
                    LoginTimeoutError("Authorization timed out after 5 minutes")
                )
            )

    def _claim(self, new_state: LoopbackState) -> bool:
        """Take the one-shot completion token by leaving ``LISTENING``.

        The caller that gets ``True`` owns the outcome and must call
        :meth:`_finish`; everyone else leaves the result alone.
        """
        with self._lock:
            if self._state is not LoopbackState.LISTENING:
                if new_state is LoopbackState.CLOSED and self._state is LoopbackState.STARTING:
                    self._state = LoopbackState.CLOSED
                return False
            self._state = new_state
        logger.debug("Loopback server %s", new_state.value)
        return True

    def _finish(self, outcome: Callable[[], Any]) -> None:
        # Stop accepting connections before any waiter is woken.
        self._shutdown()
        outcome()

    def _shutdown(self) -> None:
        with self._lock:
            server, self._server = self._server, None
        if self._timer is not None:
            self._timer.cancel()
        if server is None:
            return
        server.shutdown()
        server.server_close()
