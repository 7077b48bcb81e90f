"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~eremos.exceptions.EremosError` subclass.
Shell wrappers can inspect the exit code to tell an authentication problem
apart from a network failure without parsing stderr.

Example::

    $ eremos me
    $ echo $?
    4   # EXIT_AUTH_FAILURE -- not logged in or the token was rejected
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An API, network, or unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments."""

EXIT_AUTH_FAILURE = 4
"""Authentication failed or is required."""

EXIT_INTERRUPTED = 130
"""The command was cancelled with Ctrl-C."""
