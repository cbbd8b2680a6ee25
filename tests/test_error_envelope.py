"""Error responses share one envelope shape.

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": ...},
    "request_id": "<id>"
}
"""

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from claimgate import app as app_module
from claimgate.api.error_handling import _STATUS_TO_CODE, _error_code_for_status
from claimgate.api.schemas import Envelope, ErrorBody


@pytest.fixture
def client():
    return TestClient(app_module.app)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")

        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
        assert Envelope(status="ok").request_id


class TestStatusMapping:
    @pytest.mark.parametrize("status_code", sorted(_STATUS_TO_CODE))
    def test_known_statuses(self, status_code):
        assert _error_code_for_status(status_code) == _STATUS_TO_CODE[status_code]

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"


class TestResponses:
    def test_validation_errors_do_not_echo_input(self, client):
        response = client.post(
            "/v1/auth/login", json={"email": "not-an-email", "password": "hunter2-secret"}
        )

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["field"] == "email"
        assert "hunter2-secret" not in response.text

    def test_request_id_echoed(self, client):
        response = client.get("/v1/me", headers={"X-Request-ID": "req-12345"})

        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "req-12345"
        assert response.json()["request_id"] == "req-12345"

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/v1/no-such-route")

        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"

    def test_security_headers(self, client):
        response = client.get("/v1/auth/session")

        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]

    def test_unhandled_errors_are_generic(self, client, monkeypatch):
        from claimgate.service.runtime import get_runtime

        def explode(*args, **kwargs):
            raise RuntimeError("database password is hunter2")

        monkeypatch.setattr(get_runtime().resolver, "resolve", explode)
        response = TestClient(app_module.app, raise_server_exceptions=False).get(
            "/v1/auth/session"
        )

        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
        assert "hunter2" not in response.text


def test_healthz_reports_memory_store(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"
