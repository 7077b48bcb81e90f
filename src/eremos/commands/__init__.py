"""Built-in CLI commands for eremos.

* :mod:`~eremos.commands.auth` -- ``login``, ``logout`` and ``status``.
* :mod:`~eremos.commands.me` -- show the authenticated user's profile.

Each command is a plain callback registered directly on the root app in
:func:`eremos.app.main`. Shared helpers live in
:mod:`~eremos.commands.common`.
"""
