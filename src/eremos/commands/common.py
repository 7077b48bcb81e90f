"""Helpers shared by command callbacks."""

from __future__ import annotations

from typing import Any, NoReturn, Optional

import httpx
import typer

from eremos.exceptions import ApiError, AuthError, EremosError
from eremos.models import EremosConfig
from eremos.output import error, get_output, print_json


def get_config(ctx: typer.Context) -> EremosConfig:
    """Return the :class:`~eremos.models.EremosConfig` built by the root callback."""
    return ctx.obj["config"]


def get_transport(ctx: typer.Context) -> Optional[httpx.BaseTransport]:
    """Return the httpx transport override placed in ``ctx.obj``, if any."""
    return ctx.obj.get("transport")


def exit_with_error(exc: EremosError) -> NoReturn:
    """Report *exc* on the right stream and exit with its ``exit_code``.

    In ``--json`` mode the error envelope goes to stdout so scripts can
    parse it; otherwise a sanitised message goes to stderr, followed by any
    per-field validation details from the API.
    """
    if get_output().is_json:
        print_json({"error": _error_envelope(exc)})
    else:
        error(str(exc))
        if isinstance(exc, ApiError) and isinstance(exc.details, list):
            for detail in exc.details:
                if isinstance(detail, dict) and "field" in detail and "message" in detail:
                    error(f"  {detail['field']}: {detail['message']}")
    raise typer.Exit(code=exc.exit_code)


def _error_envelope(exc: EremosError) -> dict[str, Any]:
    if isinstance(exc, ApiError):
        return exc.to_dict()
    if isinstance(exc, AuthError):
        return {"code": "AUTH_REQUIRED", "message": str(exc)}
    return {"code": "UNKNOWN", "message": str(exc)}
