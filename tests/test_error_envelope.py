"""Error envelope format and request validation.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": ...},
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from estatevault import app as app_module
from estatevault.api.error_handling import _error_code_for_status, _error_response, _retry_after
from estatevault.api.schemas import (
    Envelope,
    ErrorBody,
    RegisterRequest,
    TwoFactorSetupRequest,
    _normalize_unicode,
)
from estatevault.service.errors import AuthErrorKind, LockedError, NotFoundError, failure


@pytest.fixture
def client():
    return TestClient(app_module.app)


class TestErrorBody:
    def test_known_codes_are_accepted(self):
        error = ErrorBody(code="locked", message="Account is locked", details={"retry_after_minutes": 30})
        assert error.details["retry_after_minutes"] == 30

    def test_unknown_code_is_rejected(self):
        with pytest.raises(ValidationError, match="Invalid error code"):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
        assert Envelope(status="ok").request_id


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status_code,expected",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (423, "locked"),
            (429, "rate_limited"),
            (500, "server_error"),
            (418, "server_error"),
        ],
    )
    def test_error_code_for_status(self, status_code, expected):
        assert _error_code_for_status(status_code) == expected

    def test_error_response_body(self):
        response = _error_response(404, "Account not found", {"kind": "not_found"})
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "not_found",
            "message": "Account not found",
            "details": {"kind": "not_found"},
        }

    @pytest.mark.parametrize(
        "detail,expected",
        [
            ({"retry_after_minutes": 30}, {"Retry-After": "1800"}),
            ({"retry_after_seconds": 12}, {"Retry-After": "12"}),
            ({"kind": "invalid_credentials"}, None),
            (None, None),
        ],
    )
    def test_retry_after_header(self, detail, expected):
        assert _retry_after(detail) == expected


class TestAuthFailureMapping:
    def test_locked_failure_becomes_423(self):
        error = failure(AuthErrorKind.ACCOUNT_LOCKED, "locked", retry_after_minutes=12).to_error()
        assert isinstance(error, LockedError)
        assert error.status_code == 423
        assert error.detail == {"kind": "account_locked", "retry_after_minutes": 12}

    def test_every_kind_maps_to_an_error(self):
        for kind in AuthErrorKind:
            error = failure(kind, "x").to_error()
            assert 400 <= error.status_code < 500
            assert error.detail["kind"] == kind.value

    def test_not_found_kind(self):
        assert isinstance(failure(AuthErrorKind.NOT_FOUND, "gone").to_error(), NotFoundError)


class TestRequestSchemas:
    def test_email_is_normalized(self):
        request = RegisterRequest(email="  Buyer@Example.COM ", password="x")
        assert request.email == "buyer@example.com"

    @pytest.mark.parametrize(
        "email", ["no-at-sign", "a@b", "a@-bad-.com", "spaces in@example.com", "a@" + "x" * 64 + ".com"]
    )
    def test_invalid_emails(self, email):
        with pytest.raises(ValidationError):
            RegisterRequest(email=email, password="x")

    def test_zero_width_characters_are_stripped(self):
        assert _normalize_unicode("ad\u200bmin\u202e") == "admin"
        assert _normalize_unicode("\uff21") == "A"

    def test_phone_is_compacted(self):
        request = TwoFactorSetupRequest(method="sms", phone_number="+351 (912) 345-678")
        assert request.phone_number == "+351912345678"

    def test_bad_phone_is_rejected(self):
        with pytest.raises(ValidationError):
            TwoFactorSetupRequest(method="sms", phone_number="call me")


class TestHttpEnvelope:
    def test_validation_error_is_400(self, client):
        response = client.post("/v1/auth/login", json={"email": "a@example.com"})
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert any("password" in err["loc"] for err in body["error"]["details"])

    def test_request_id_is_echoed(self, client):
        response = client.get("/v1/me", headers={"X-Request-ID": "req-abc-123"})
        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "req-abc-123"
        assert response.json()["request_id"] == "req-abc-123"

    def test_request_id_is_minted(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Request-ID"]

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/v1/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_security_headers(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in response.headers["Cache-Control"]

    def test_health_reports_memory_store(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["type"] == "MemoryStore"

    def test_signup_rate_limit(self, client):
        for idx in range(5):
            client.post(
                "/v1/auth/register",
                json={"email": f"user{idx}@example.com", "password": "Str0ng-Pass!"},
            )
        response = client.post(
            "/v1/auth/register", json={"email": "user9@example.com", "password": "Str0ng-Pass!"}
        )
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert "Retry-After" in response.headers
