"""On-disk storage for the OAuth token pair.

Tokens live in ``~/.eremos/credentials.json`` (see
:func:`~eremos.config.get_credentials_path`). Writes are atomic: content is
written to a temporary file in the same directory, fsynced, then renamed
into place with ``os.replace``, so a crash never leaves a truncated file.

A symlinked credentials directory or file is refused outright. Following
the link would let another local user redirect reads or writes of the
tokens outside ``~/.eremos/``.

See Also:
    :class:`~eremos.auth.token_refresh.TokenManager` -- reads and refreshes
    the stored pair.
    :class:`~eremos.auth.login.LoginFlow` -- writes the initial pair.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import tempfile
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError

from eremos.exceptions import SymlinkRefusedError, TokenValidationError
from eremos.models import StoredTokens

logger = logging.getLogger(__name__)

EXPIRY_BUFFER_SECONDS = 60
_DIR_MODE = 0o700
_FILE_MODE = 0o600


def _best_effort_chmod(path: Union[str, Path], mode: int) -> None:
    """Apply *mode* to *path*, ignoring failures. No-op on Windows."""
    if sys.platform == "win32":
        return
    try:
        os.chmod(path, mode)
    except OSError as exc:
        logger.debug("chmod %o on %s failed: %s", mode, path, exc)


def _validate(tokens: Union[StoredTokens, Mapping[str, Any]]) -> StoredTokens:
    data = tokens.model_dump() if isinstance(tokens, StoredTokens) else dict(tokens)
    try:
        return StoredTokens.model_validate(data)
    except ValidationError as exc:
        loc = exc.errors()[0]["loc"]
        raise TokenValidationError(str(loc[0]) if loc else "tokens") from exc


def is_token_expired(tokens: StoredTokens, now: Optional[float] = None) -> bool:
    """Return True if *tokens* expire within :data:`EXPIRY_BUFFER_SECONDS`.

    Args:
        tokens: The stored token record.
        now: Current Unix time in seconds. Defaults to ``time.time()``.
    """
    if now is None:
        now = int(time.time())
    return now >= tokens.expires_at - EXPIRY_BUFFER_SECONDS


class TokenStore:
    """Read/write the credentials file.

    Args:
        path: Location of ``credentials.json``. Its parent directory is the
            credentials directory.

    Example::

        store = TokenStore(get_credentials_path())
        store.save({"access_token": "a", "refresh_token": "r",
                    "expires_at": 1700000000, "client_id": "cli"})
        tokens = store.load()
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        """The filesystem path to the credentials file."""
        return self._path

    def save(self, tokens: Union[StoredTokens, Mapping[str, Any]]) -> StoredTokens:
        """Validate and persist *tokens* atomically with ``0o600`` permissions.

        Args:
            tokens: A :class:`~eremos.models.StoredTokens` or a mapping with
                the same four fields.

        Returns:
            The validated record that was written.

        Raises:
            TokenValidationError: If a field is missing, empty or mistyped.
            SymlinkRefusedError: If the credentials directory or file is a
                symbolic link.
            OSError: If the file cannot be written.
        """
        record = _validate(tokens)
        directory = self._path.parent

        if directory.is_symlink():
            raise SymlinkRefusedError(
                f"Refusing to use symlinked credentials directory: {directory}"
            )
        if not directory.exists():
            directory.mkdir(parents=True, mode=_DIR_MODE)
        # The umask may have widened the mode; chmod failures are tolerated.
        _best_effort_chmod(directory, _DIR_MODE)

        if self._path.is_symlink():
            raise SymlinkRefusedError(
                f"Refusing to write to symlinked credentials file: {self._path}"
            )

        text = json.dumps(record.model_dump(), indent=2) + "\n"

        fd = None
        tmp_path: Optional[str] = None
        try:
            fd = tempfile.NamedTemporaryFile(
                mode="w",
                dir=directory,
                prefix=f".{self._path.name}.",
                suffix=".tmp",
                delete=False,
                encoding="utf-8",
            )
            tmp_path = fd.name
            # Restrict before any secret is written
            _best_effort_chmod(tmp_path, _FILE_MODE)
            fd.write(text)
            fd.flush()
            os.fsync(fd.fileno())
            fd.close()
            fd = None
            self._replace(tmp_path)
        except BaseException:
            if fd is not None:
                fd.close()
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            raise

        _best_effort_chmod(self._path, _FILE_MODE)
        logger.debug("Saved credentials to %s", self._path)
        return record

    def _replace(self, tmp_path: str) -> None:
        try:
            os.replace(tmp_path, self._path)
        except OSError:
            # Windows can refuse to replace an open or read-only destination.
            try:
                os.unlink(self._path)
            except FileNotFoundError:
                pass
            os.replace(tmp_path, self._path)

    def load(self) -> Optional[StoredTokens]:
        """Load the stored token record.

        Returns:
            The :class:`~eremos.models.StoredTokens`, or ``None`` if the file
            does not exist, is not JSON, or lacks a correctly typed field.

        Raises:
            SymlinkRefusedError: If the credentials file is a symbolic link.
        """
        if self._path.is_symlink():
            raise SymlinkRefusedError(
                f"Refusing to read symlinked credentials file: {self._path}"
            )
        if not self._path.is_file():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return StoredTokens.model_validate(data)
        except (OSError, ValueError) as exc:
            # json.JSONDecodeError and pydantic.ValidationError are ValueErrors
            logger.debug("Ignoring unreadable credentials at %s: %s", self._path, exc)
            return None

    def delete(self) -> None:
        """Delete the credentials file. No-op if it does not exist.

        Raises:
            SymlinkRefusedError: If the credentials file is a symbolic link.
        """
        if self._path.is_symlink():
            raise SymlinkRefusedError(
                f"Refusing to delete symlinked credentials file: {self._path}"
            )
        self._path.unlink(missing_ok=True)
        logger.debug("Deleted credentials at %s", self._path)
