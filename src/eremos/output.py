"""Output formatting with strict stdout/stderr discipline.

* **stdout** -- primary data only (``me`` records, ``status`` fields, JSON
  envelopes in ``--json`` mode).
* **stderr** -- all diagnostics (progress, warnings, errors, suggestions,
  the authorization URL during login).
* **Colour control** -- respects ``NO_COLOR``, ``TERM=dumb`` and the
  ``--no-color`` flag.

Every string that reaches a stream is first passed through
:func:`~eremos.sanitize.strip_terminal_escapes`; in Rich mode it is also
markup-escaped so remote text such as ``[bold]`` is printed literally.

The module exposes two layers:

1. :class:`OutputManager` -- holds preferences and the two Rich consoles.
   Created once in :func:`~eremos.app.main_callback` and installed via
   :func:`set_output`.
2. Module-level convenience functions (:func:`info`, :func:`error`, ...)
   that delegate to the global instance.
"""

from __future__ import annotations

import json
import os
import sys
from typing import Any, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from eremos.sanitize import sanitize_value, strip_terminal_escapes


class OutputManager:
    """Central manager for all CLI output.

    Args:
        json_mode: Emit machine-readable JSON on stdout instead of tables.
        no_color: Disable all colour and Rich markup.
        verbose: Show :meth:`debug` messages on stderr.
    """

    def __init__(
        self,
        json_mode: bool = False,
        no_color: bool = False,
        verbose: bool = False,
    ) -> None:
        self._json = json_mode
        self._no_color = no_color or _should_disable_color()
        self._verbose = verbose

        self._stdout = Console(
            file=sys.stdout,
            no_color=self._no_color,
            highlight=False,
            soft_wrap=True,
        )
        self._stderr = Console(
            file=sys.stderr,
            no_color=self._no_color,
            stderr=True,
            highlight=False,
            soft_wrap=True,
        )

    @property
    def is_json(self) -> bool:
        """Whether ``--json`` mode is active."""
        return self._json

    @property
    def is_verbose(self) -> bool:
        """Whether verbose mode is enabled."""
        return self._verbose

    # ------------------------------------------------------------------ #
    # Data output (stdout)
    # ------------------------------------------------------------------ #

    def print_data(self, text: str) -> None:
        """Print raw text to stdout. Each line is sanitised separately."""
        print(_clean(text), file=sys.stdout, flush=True)

    def print_json(self, data: Any) -> None:
        """Print *data* as pretty JSON to stdout, sanitising every string inside it."""
        self.print_data(
            json.dumps(sanitize_value(data), indent=2, ensure_ascii=False, default=str)
        )

    def print_key_value(
        self,
        pairs: list[tuple[str, Any]],
        title: Optional[str] = None,
    ) -> None:
        """Print label/value pairs to stdout.

        * **JSON mode** -- a single object keyed by label.
        * **Plain mode** (``--no-color``) -- ``label: value`` lines.
        * **Rich mode** -- a two-column :class:`~rich.table.Table`.

        ``None`` values are shown as ``-``.
        """
        if self._json:
            self.print_json({label: value for label, value in pairs})
            return

        rows = [
            (label, "-" if value is None else strip_terminal_escapes(str(value)))
            for label, value in pairs
        ]
        if self._no_color:
            for label, value in rows:
                self.print_data(f"{label}: {value}")
            return

        table = Table(title=title, show_header=False, box=None, pad_edge=False)
        table.add_column(style="bold cyan", no_wrap=True)
        table.add_column()
        for label, value in rows:
            table.add_row(escape(label), escape(value))
        self._stdout.print(table)

    # ------------------------------------------------------------------ #
    # Diagnostics (stderr)
    # ------------------------------------------------------------------ #

    def info(self, message: str) -> None:
        """Print an informational message to stderr."""
        self._emit(message)

    def success(self, message: str) -> None:
        """Print a green success message to stderr."""
        self._emit(message, "[green]{}[/green]")

    def warning(self, message: str) -> None:
        """Print a yellow warning to stderr."""
        self._emit(message, "[yellow]Warning:[/yellow] {}", plain="Warning: {}")

    def error(self, message: str) -> None:
        """Print a bold-red error to stderr. Never suppressed.

        Args:
            message: The error text. May contain remote content; it is
                sanitised before printing.
        """
        self._emit(message, "[bold red]Error:[/bold red] {}", plain="Error: {}")

    def suggest(self, message: str) -> None:
        """Print a dimmed next-step suggestion to stderr."""
        formatted = f"→ {message}"
        self._emit(formatted, "[dim]{}[/dim]")

    def debug(self, message: str) -> None:
        """Print a debug message to stderr. Only shown with ``--verbose``."""
        if self._verbose:
            self._emit(message, "[dim]\\[debug] {}[/dim]", plain="[debug] {}")

    def _emit(
        self,
        message: str,
        markup: str = "{}",
        plain: str = "{}",
    ) -> None:
        clean = _clean(message)
        if self._no_color:
            print(plain.format(clean), file=sys.stderr, flush=True)
        else:
            self._stderr.print(markup.format(escape(clean)))


# ------------------------------------------------------------------ #
# Module-level helpers
# ------------------------------------------------------------------ #


def _clean(text: str) -> str:
    """Strip escapes from each line of *text*, keeping the line breaks."""
    return "\n".join(strip_terminal_escapes(line) for line in text.split("\n"))


def _should_disable_color() -> bool:
    """Return True when ``NO_COLOR`` is set (any value) or ``TERM=dumb``."""
    if os.environ.get("NO_COLOR") is not None:
        return True
    return os.environ.get("TERM") == "dumb"


# ------------------------------------------------------------------ #
# Global output instance (set during app startup)
# ------------------------------------------------------------------ #

_output: Optional[OutputManager] = None


def get_output() -> OutputManager:
    """Return the global :class:`OutputManager`, creating a default one lazily."""
    global _output
    if _output is None:
        _output = OutputManager()
    return _output


def set_output(output: OutputManager) -> None:
    """Install *output* as the global :class:`OutputManager` instance."""
    global _output
    _output = output


def reset_output() -> None:
    """Reset the global :class:`OutputManager` to ``None``.

    Primarily useful in test suites to ensure a clean state between tests.
    """
    global _output
    _output = None


# ------------------------------------------------------------------ #
# Convenience functions that use the global instance
# ------------------------------------------------------------------ #


def print_data(text: str) -> None:
    """Print raw data to stdout via the global OutputManager."""
    get_output().print_data(text)


def print_json(data: Any) -> None:
    """Print JSON to stdout via the global OutputManager."""
    get_output().print_json(data)


def print_key_value(pairs: list[tuple[str, Any]], title: Optional[str] = None) -> None:
    """Print label/value pairs to stdout via the global OutputManager."""
    get_output().print_key_value(pairs, title)


def info(message: str) -> None:
    """Print info message to stderr via the global OutputManager."""
    get_output().info(message)


def error(message: str) -> None:
    """Print error to stderr via the global OutputManager."""
    get_output().error(message)


def success(message: str) -> None:
    """Print success message to stderr via the global OutputManager."""
    get_output().success(message)


def warning(message: str) -> None:
    """Print warning to stderr via the global OutputManager."""
    get_output().warning(message)


def suggest(message: str) -> None:
    """Print next-step suggestion to stderr via the global OutputManager."""
    get_output().suggest(message)


def debug(message: str) -> None:
    """Print debug message to stderr via the global OutputManager."""
    get_output().debug(message)
