"""OAuth 2.1 Authorization Code + PKCE authentication for eremos.

The main entry points are:

- :class:`LoginFlow` -- interactive login (browser + loopback, or manual
  paste) that persists a fresh token pair.
- :class:`TokenManager` -- returns a valid access token, refreshing it
  silently when it is about to expire.
- :class:`TokenStore` -- the ``credentials.json`` file itself.
- :class:`LoopbackServer` -- one-shot listener for the OAuth redirect.

Typical usage::

    from eremos.auth import TokenManager

    token = TokenManager(config).get_valid_token()
    if token is None:
        ...  # ask the user to run `eremos login`
"""

from eremos.auth.login import LoginFlow, parse_callback_url
from eremos.auth.loopback import LoopbackServer, LoopbackState, get_loopback_redirect_uri
from eremos.auth.token_refresh import TokenManager
from eremos.auth.token_store import TokenStore, is_token_expired

__all__ = [
    "LoginFlow",
    "LoopbackServer",
    "LoopbackState",
    "TokenManager",
    "TokenStore",
    "get_loopback_redirect_uri",
    "is_token_expired",
    "parse_callback_url",
]
