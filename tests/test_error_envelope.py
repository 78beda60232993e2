"""Tests for the error envelope returned by every failing request.

Every error body has the shape:
{
    "error": "<STABLE_CODE>",
    "message": "<human readable>",
    "timestamp": "<ISO-8601>",
    "path": "<request path>",
    "details": <object|array>   (omitted when empty)
}
"""

from datetime import datetime

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
from pydantic import BaseModel

from medauth import app as app_module
from medauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    register_exception_handlers,
)
from medauth.api.schemas import ErrorEnvelope
from medauth.config import reset_settings_cache
from medauth.service.errors import (
    ConflictError,
    ForbiddenError,
    RateLimitedError,
    ServerError,
    SessionExpiredError,
)
from medauth.service.rate_limit import RateLimitResult
from medauth.storage.errors import ConstraintViolation


class Payload(BaseModel):
    count: int


def build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("User with this email already exists")

    @app.get("/forbidden")
    async def forbidden():
        raise ForbiddenError("Insufficient permissions", detail={"required_roles": ["ADMIN"]})

    @app.get("/limited")
    async def limited():
        raise RateLimitedError(
            "Too many requests", detail={"retryAfter": 30}, headers={"Retry-After": "30"}
        )

    @app.get("/session")
    async def session():
        raise SessionExpiredError("Session expired or invalid")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/server")
    async def server():
        raise ServerError("store unavailable")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("connection string postgresql://user:pw@db")

    @app.get("/counted")
    async def counted(request: Request):
        request.state.rate_limit = RateLimitResult(True, 5, 3, 600)
        raise SessionExpiredError("Session expired or invalid")

    @app.get("/counted-limited")
    async def counted_limited(request: Request):
        request.state.rate_limit = RateLimitResult(True, 100, 40, 60)
        rejected = RateLimitResult(False, 5, 0, 1800, retry_after=1800)
        raise RateLimitedError("Too many requests", headers=rejected.headers())

    @app.post("/payload")
    async def payload(body: Payload):
        return {"count": body.count}

    return app


@pytest.fixture
def client():
    return TestClient(build_app(), raise_server_exceptions=False)


class TestEnvelopeShape:
    def test_service_error_envelope(self, client):
        response = client.get("/conflict")

        assert response.status_code == 409
        body = response.json()
        assert set(body) == {"error", "message", "timestamp", "path"}
        assert body["error"] == "CONFLICT"
        assert body["message"] == "User with this email already exists"
        assert body["path"] == "/conflict"
        datetime.fromisoformat(body["timestamp"])

    def test_details_are_carried(self, client):
        body = client.get("/forbidden").json()
        assert body["error"] == "FORBIDDEN"
        assert body["details"] == {"required_roles": ["ADMIN"]}

    def test_headers_are_forwarded(self, client):
        response = client.get("/limited")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"
        assert response.json()["details"] == {"retryAfter": 30}

    def test_specific_auth_code(self, client):
        response = client.get("/session")
        assert response.status_code == 401
        assert response.json()["error"] == "SESSION_EXPIRED"

    def test_constraint_violation_maps_to_conflict(self, client):
        response = client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["details"] == {"field": "email"}

    def test_server_error(self, client):
        response = client.get("/server")
        assert response.status_code == 500
        assert response.json()["error"] == "INTERNAL_ERROR"


class TestFrameworkErrors:
    def test_body_validation_is_itemized(self, client):
        response = client.post("/payload", json={"count": "many"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "VALIDATION_ERROR"
        assert body["message"] == "Validation failed"
        assert body["details"][0]["field"] == "count"
        assert body["details"][0]["message"]

    def test_unknown_route_uses_envelope(self):
        response = TestClient(app_module.app).get("/v1/does-not-exist")

        assert response.status_code == 404
        body = response.json()
        assert body["error"] == "NOT_FOUND"
        assert body["path"] == "/v1/does-not-exist"

    def test_unhandled_exception_hides_message(self, client):
        response = client.get("/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "INTERNAL_ERROR"
        assert body["message"] == "Internal server error"
        assert "postgresql" not in response.text

    def test_unhandled_exception_message_shown_in_development(self, client, monkeypatch):
        monkeypatch.setenv("APP_ENV", "development")
        reset_settings_cache()

        response = client.get("/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "INTERNAL_ERROR"
        assert body["message"] == "connection string postgresql://user:pw@db"


class TestRateLimitHeaders:
    def test_counted_limit_is_replayed_on_errors(self, client):
        response = client.get("/counted")

        assert response.status_code == 401
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "3"
        assert response.headers["X-RateLimit-Reset"] == "600"

    def test_rejection_headers_take_priority(self, client):
        response = client.get("/counted-limited")

        assert response.status_code == 429
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["Retry-After"] == "1800"

    def test_uncounted_requests_have_no_limit_headers(self, client):
        response = client.get("/conflict")
        assert "X-RateLimit-Limit" not in response.headers


class TestStatusCodes:
    @pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 429])
    def test_known_status_codes(self, status):
        assert _error_code_for_status(status) == _STATUS_TO_CODE[status]

    def test_server_errors_collapse(self):
        assert _error_code_for_status(502) == "INTERNAL_ERROR"
        assert _error_code_for_status(418) == "HTTP_ERROR"

    def test_envelope_model_defaults(self):
        envelope = ErrorEnvelope(error="NOT_FOUND", message="User not found", path="/v1/x")
        assert envelope.details is None
        assert envelope.timestamp
