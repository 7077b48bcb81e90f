"""Typer application and CLI entry point for eremos.

This module builds the top-level Typer application and registers the
built-in commands (``login``, ``logout``, ``status``, ``me``).

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. It installs a SIGINT handler and invokes the Typer app.
:class:`~eremos.exceptions.EremosError` instances that escape a command
exit with their ``exit_code``; any other exception is written to a crash
log under ``~/.eremos/logs/``.

See Also:
    :mod:`eremos.config`: Configuration resolved in :func:`main_callback`.
    :mod:`eremos.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import logging
import signal
import sys
import traceback
from datetime import datetime
from typing import Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from eremos import __version__
from eremos.exit_codes import EXIT_GENERIC_FAILURE, EXIT_INTERRUPTED

app = typer.Typer(
    name="eremos",
    help="Eremos CLI - interact with the Eremos platform.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"eremos {__version__}")
        raise typer.Exit()


def _configure_logging(verbose: bool, no_color: bool) -> None:
    """Route library and module loggers to stderr through Rich."""
    handler = RichHandler(
        console=Console(stderr=True, no_color=no_color),
        show_path=False,
        show_time=verbose,
        markup=False,
    )
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[handler],
        force=True,
    )
    if not verbose:
        return
    # httpx/httpcore debug logs include request headers; keep them at INFO.
    logging.getLogger("httpcore").setLevel(logging.INFO)
    logging.getLogger("httpx").setLevel(logging.INFO)


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON."
    ),
    no_color: bool = typer.Option(
        False, "--no-color", help="Disable color output."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show HTTP request details and debug logs."
    ),
) -> None:
    """Root callback executed before every command.

    Initialises the global :class:`~eremos.output.OutputManager` and
    logging from CLI flags, then resolves the
    :class:`~eremos.models.EremosConfig` once and stores it in
    ``ctx.obj["config"]`` for the commands.

    Args:
        ctx: Typer invocation context.
        version: If ``True``, print the version string and exit.
        json_output: Emit JSON on stdout.
        no_color: Disable all colour and Rich markup.
        verbose: Enable debug-level diagnostics.
    """
    from eremos.config import load_config
    from eremos.exceptions import ConfigError
    from eremos.output import OutputManager, error, set_output

    output = OutputManager(json_mode=json_output, no_color=no_color, verbose=verbose)
    set_output(output)
    _configure_logging(verbose, no_color)

    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config()
    except ConfigError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    ctx.obj["verbose"] = verbose


def _register_commands() -> None:
    """Attach the built-in commands to :data:`app`."""
    from eremos.commands.auth import login_command, logout_command, status_command
    from eremos.commands.me import me_command

    app.command("login")(login_command)
    app.command("logout")(logout_command)
    app.command("status")(status_command)
    app.command("me")(me_command)


_register_commands()


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(EXIT_INTERRUPTED)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write a crash traceback to disk and return the log file path.

    Args:
        exc: The unhandled exception to log.

    Returns:
        Absolute path to the written crash log file.
    """
    from eremos.config import get_logs_dir

    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = get_logs_dir() / f"crash-{timestamp}.log"
    log_path.write_text(
        "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        encoding="utf-8",
    )
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``eremos`` console script.

    Unhandled :class:`~eremos.exceptions.EremosError` instances cause a
    clean exit with the error's ``exit_code``. All other exceptions produce
    a crash log and a generic failure exit. Usage errors exit with code 2
    (Click's default).

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as exc:
        from eremos.exceptions import EremosError
        from eremos.output import error

        if isinstance(exc, EremosError):
            error(str(exc))
            sys.exit(exc.exit_code)
        else:
            log_path = _write_crash_log(exc)
            error(f"Unexpected error. Debug log: {log_path}")
            sys.exit(EXIT_GENERIC_FAILURE)
