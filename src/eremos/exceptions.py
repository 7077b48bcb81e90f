"""Exception hierarchy for eremos.

All exceptions inherit from :class:`EremosError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`eremos.exit_codes`.
The top-level error handler in :func:`eremos.app.main` catches
``EremosError`` and exits with the appropriate code, while unexpected
exceptions produce a crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

Subclass hierarchy::

    EremosError (exit 1)
    +-- InvalidUsageError       (exit 2)
    +-- ConfigError             (exit 1)
    +-- TokenValidationError    (exit 1)
    +-- SymlinkRefusedError     (exit 1)
    +-- ConnectionError_        (exit 1)
    +-- ApiError                (exit 1, or 4 for HTTP 401)
    +-- AuthError               (exit 4)
        +-- OAuthCallbackError
        +-- LoginTimeoutError
        +-- LoopbackPortInUseError
"""

from __future__ import annotations

from typing import Any, Optional

from eremos.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
)


class EremosError(Exception):
    """Base exception for all eremos errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`eremos.exit_codes`. The entry point catches
    this exception type and calls ``sys.exit(exc.exit_code)``.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidUsageError(EremosError):
    """Raised for invalid CLI arguments."""

    exit_code = EXIT_INVALID_USAGE


class ConfigError(EremosError):
    """Raised for configuration problems (bad authority URL, empty client id, invalid port)."""


class TokenValidationError(EremosError):
    """Raised when a token record is rejected before being written to disk.

    The message names the offending field so the caller can tell which part
    of the record was malformed.
    """

    def __init__(self, field: str, message: str | None = None):
        super().__init__(message or f"Invalid {field}")
        self.field = field


class SymlinkRefusedError(EremosError):
    """Raised when the credentials directory or file is a symbolic link.

    This is a security refusal, not a transient fault: following the link
    could redirect reads or writes of secrets outside ``~/.eremos/``.
    """


class ConnectionError_(EremosError):
    """Raised on network-level failures (timeout, DNS resolution, connection refused).

    Named with a trailing underscore to avoid shadowing the built-in
    ``ConnectionError``.
    """


class ApiError(EremosError):
    """Raised when the API answers with an error envelope or an unparseable body.

    Args:
        status: HTTP status code of the response.
        code: Machine-readable error code from the envelope
            (e.g. ``"NOT_FOUND"``, ``"PARSE_ERROR"``).
        message: Human-readable error message.
        details: Optional structured details (e.g. per-field validation
            errors).
    """

    def __init__(
        self,
        status: int,
        code: str,
        message: str,
        details: Optional[Any] = None,
    ):
        super().__init__(
            message,
            exit_code=EXIT_AUTH_FAILURE if status == 401 else None,
        )
        self.status = status
        self.code = code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Return the error envelope as it would be printed in ``--json`` mode."""
        data: dict[str, Any] = {"code": self.code, "message": str(self)}
        if self.details is not None:
            data["details"] = self.details
        return data


class AuthError(EremosError):
    """Raised when authentication is required or fails."""

    exit_code = EXIT_AUTH_FAILURE


class OAuthCallbackError(AuthError):
    """Raised for OAuth protocol errors: denied consent, state mismatch, missing code."""


class LoginTimeoutError(AuthError):
    """Raised when no authorization callback arrives before the loopback timeout."""


class LoopbackPortInUseError(AuthError):
    """Raised when the loopback callback port is already bound by another process."""
