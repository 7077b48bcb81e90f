"""Sanitisation helpers for untrusted text.

Remote content (API error messages, HTTP status text), locally stored values
(the client id in ``credentials.json``) and decoded JWT claims can all carry
terminal control sequences. Everything in this module is applied before such
text reaches a terminal-attached stream.
"""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import quote

from eremos.exceptions import InvalidUsageError

# CSI sequences, 7-bit and 8-bit forms.
_CSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
_CSI8_RE = re.compile(r"\x9b[0-?]*[ -/]*[@-~]")
# OSC sequences (window title, hyperlinks), terminated by BEL or ST.
_OSC_RE = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)?")
_OSC8_RE = re.compile(r"\x9d[^\x07\x1b\x9c]*(?:\x07|\x1b\\|\x9c)?")
_ESC_RE = re.compile(r"\x1b[@-_]")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def strip_terminal_escapes(text: str) -> str:
    """Strip ANSI escape sequences and C0/C1/DEL control characters.

    Args:
        text: Untrusted text.

    Returns:
        The text with every escape sequence and control character removed.
    """
    text = _CSI_RE.sub("", text)
    text = _CSI8_RE.sub("", text)
    text = _OSC_RE.sub("", text)
    text = _OSC8_RE.sub("", text)
    text = _ESC_RE.sub("", text)
    return _CONTROL_RE.sub("", text)


def sanitize_value(value: Any) -> Any:
    """Recursively apply :func:`strip_terminal_escapes` to every string in *value*.

    Dict keys are sanitised as well. Self-referencing containers are
    replaced by ``"[Circular]"``.
    """
    return _sanitize(value, set())


def _sanitize(value: Any, seen: set[int]) -> Any:
    if isinstance(value, str):
        return strip_terminal_escapes(value)
    if not isinstance(value, (dict, list, tuple)):
        return value
    if id(value) in seen:
        return "[Circular]"
    seen = seen | {id(value)}
    if isinstance(value, dict):
        return {
            _sanitize(k, seen): _sanitize(v, seen) for k, v in value.items()
        }
    return [_sanitize(v, seen) for v in value]


def safe_path_segment(value: str, name: str = "ID") -> str:
    """Validate and percent-encode a user-supplied value for a URL path segment.

    Raises:
        InvalidUsageError: If *value* is empty or contains ``/``, ``\\`` or ``..``.
    """
    if not value or "/" in value or "\\" in value or ".." in value:
        raise InvalidUsageError(f'Invalid {name}: must not contain path separators or ".."')
    return quote(value, safe="")
