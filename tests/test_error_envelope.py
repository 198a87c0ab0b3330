"""Tests for the response envelope and error handling.

Every response, success or failure, has the same shape:
{
    "success": <bool>,
    "message": <str|null>,
    "data": <any>,
    "error": {"code": "<stable_code>", "details": <object|array|null>} | null,
    "request_id": "<uuid>"
}
"""

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from studybuddy import app as app_module
from studybuddy.api.error_handling import _STATUS_TO_CODE, error_response
from studybuddy.api.schemas import Envelope, ErrorBody
from studybuddy.service.errors import (
    UNAUTHORIZED_MESSAGE,
    ConflictError,
    RateLimitedError,
    ServiceError,
)


@pytest.fixture
def client():
    return TestClient(app_module.app, raise_server_exceptions=False)


class TestErrorBody:
    def test_known_code_accepted(self):
        assert ErrorBody(code="unauthorized").details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot")

    def test_every_mapped_status_has_a_valid_code(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code)


class TestEnvelope:
    def test_request_id_generated(self):
        first = Envelope(success=True)
        second = Envelope(success=True)
        assert first.request_id and first.request_id != second.request_id

    def test_error_response_shape(self):
        response = error_response(409, "Email already registered", {"field": "email"})
        body = response.body.decode()

        assert response.status_code == 409
        assert '"success":false' in body
        assert '"code":"conflict"' in body
        assert '"field":"email"' in body


class TestServiceErrors:
    def test_defaults(self):
        err = ConflictError()
        assert err.status_code == 409
        assert err.error_code == "conflict"
        assert err.detail == {}

    def test_overrides(self):
        err = ServiceError("nope", status_code=418, error_code="server_error", detail={"a": 1})
        assert (err.message, err.status_code, err.error_code, err.detail) == (
            "nope",
            418,
            "server_error",
            {"a": 1},
        )

    def test_rate_limited_message(self):
        assert RateLimitedError().message == "Too many attempts. Please try again later."


class TestHandlers:
    def test_validation_errors_are_400_without_echoing_input(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "bad-email", "password": "SuperSecretInput!"},
        )
        body = response.json()

        assert response.status_code == 400
        assert body["success"] is False
        assert body["error"]["code"] == "validation_error"
        assert body["message"] == "invalid email address"
        assert "SuperSecretInput" not in response.text
        assert any(d["field"] == "password" for d in body["error"]["details"])

    def test_unauthorized_has_generic_message(self, client):
        response = client.get("/v1/auth/me", headers={"Authorization": "Bearer forged"})
        body = response.json()

        assert response.status_code == 401
        assert body["message"] == UNAUTHORIZED_MESSAGE
        assert body["error"]["code"] == "unauthorized"

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/v1/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_request_id_echoed(self, client):
        response = client.get("/v1/auth/me", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_unexpected_errors_hide_details(self, client, monkeypatch):
        from studybuddy.service.runtime import get_runtime

        def explode(*args, **kwargs):
            raise RuntimeError("database password is hunter2")

        monkeypatch.setattr(get_runtime().auth, "request_password_reset", explode)
        response = client.post("/v1/auth/forgot-password", json={"email": "a@x.com"})
        body = response.json()

        assert response.status_code == 500
        assert body["message"] == "Server Error"
        assert body["error"]["code"] == "server_error"
        assert "hunter2" not in response.text

    def test_security_headers_present(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in response.headers["Cache-Control"]
        assert response.json()["checks"]["database"]["type"] == "memory"
