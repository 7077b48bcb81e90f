"""eremos -- command-line client for the Eremos platform.

The package authenticates against the platform's OAuth 2.1 authority using
the Authorization Code grant with PKCE, persists the resulting tokens under
``~/.eremos/``, and refreshes them transparently for every authenticated API
call.

Typical workflow::

    eremos login      # browser-based OAuth login
    eremos status     # inspect the stored token
    eremos me         # call the API with the stored token
    eremos logout     # revoke and remove the stored token

Modules:
    app: Typer application and CLI entry point.
    auth: PKCE, token store, loopback callback server, refresh and login.
    client: Authenticated HTTP request helper.
    config: Explicit configuration and URL validation.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric process exit codes.
    output: stdout/stderr formatting system with Rich support.
    sanitize: Terminal escape stripping for untrusted text.
"""

__version__ = "0.1.0"
