"""HTTP client for the Eremos REST API.

:class:`ApiClient` wraps :class:`httpx.Client` with bearer-token injection
through :class:`~eremos.auth.token_refresh.TokenManager`, explicit
timeouts and no automatic redirects or retries. :func:`parse_api_response`
turns the API's JSON envelope into data or an
:class:`~eremos.exceptions.ApiError`.

Example::

    from eremos.client import ApiClient

    with ApiClient(config) as client:
        client.require_auth()
        envelope = client.call("GET", "/api/users/me")
"""

from eremos.client.api_client import ApiClient
from eremos.client.response import parse_api_response

__all__ = ["ApiClient", "parse_api_response"]
