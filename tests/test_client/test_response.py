"""Tests for API envelope parsing."""

from __future__ import annotations

import httpx
import pytest

from eremos.client.response import parse_api_response
from eremos.exceptions import ApiError


def _response(status: int, **kwargs) -> httpx.Response:
    return httpx.Response(
        status, request=httpx.Request("GET", "https://api.example.test/x"), **kwargs
    )


class TestParseApiResponse:
    def test_success_envelope(self) -> None:
        body = {"data": {"id": "u1"}, "meta": {"request_id": "r"}}
        assert parse_api_response(_response(200, json=body)) == body

    def test_error_envelope(self) -> None:
        body = {
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Invalid input",
                "details": [{"field": "name", "message": "too long"}],
            }
        }
        with pytest.raises(ApiError) as exc_info:
            parse_api_response(_response(422, json=body))
        exc = exc_info.value
        assert exc.status == 422
        assert exc.code == "VALIDATION_ERROR"
        assert str(exc) == "Invalid input"
        assert exc.details == [{"field": "name", "message": "too long"}]
        assert exc.exit_code == 1

    def test_error_without_envelope(self) -> None:
        with pytest.raises(ApiError) as exc_info:
            parse_api_response(_response(503, json={"unexpected": True}))
        assert exc_info.value.code == "HTTP_503"
        assert str(exc_info.value) == "HTTP 503"

    def test_unauthorized_maps_to_auth_exit_code(self) -> None:
        body = {"error": {"code": "UNAUTHORIZED", "message": "Token expired"}}
        with pytest.raises(ApiError) as exc_info:
            parse_api_response(_response(401, json=body))
        assert exc_info.value.exit_code == 4

    def test_non_json_body(self) -> None:
        with pytest.raises(ApiError) as exc_info:
            parse_api_response(_response(502, text="<html>Bad Gateway</html>"))
        assert exc_info.value.code == "PARSE_ERROR"
        assert str(exc_info.value) == "Failed to parse response: <html>Bad Gateway</html>"

    def test_non_json_snippet_truncated(self) -> None:
        with pytest.raises(ApiError) as exc_info:
            parse_api_response(_response(200, text="x" * 500))
        assert str(exc_info.value) == "Failed to parse response: " + "x" * 200

    def test_success_with_non_object_body(self) -> None:
        with pytest.raises(ApiError, match="expected a JSON object") as exc_info:
            parse_api_response(_response(200, json=[1, 2]))
        assert exc_info.value.code == "PARSE_ERROR"


class TestApiErrorToDict:
    def test_without_details(self) -> None:
        assert ApiError(404, "NOT_FOUND", "User not found").to_dict() == {
            "code": "NOT_FOUND",
            "message": "User not found",
        }

    def test_with_details(self) -> None:
        error = ApiError(400, "BAD", "Bad", details={"hint": "x"})
        assert error.to_dict()["details"] == {"hint": "x"}
