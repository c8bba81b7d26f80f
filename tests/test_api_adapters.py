"""Tests for the FastAPI error envelope, middleware, rate-limit dependency and lifespan."""

import uuid
from datetime import datetime, timezone

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from conftest import STRONG_PASSWORD
from authcore.api.error_handling import register_exception_handlers
from authcore.api.lifespan import runtime_lifespan
from authcore.api.middleware import REQUEST_ID_HEADER, register_correlation_middleware
from authcore.api.rate_limit import rate_limit_dependency
from authcore.logging import get_correlation_id, set_correlation_id
from authcore.service.errors import (
    AccountLockedError,
    InvalidCredentialsError,
    ServerError,
    WeakPasswordError,
)
from authcore.service.rate_limit import RateLimiter, RateLimitRule
from authcore.service.runtime import Runtime
from authcore.storage.errors import ConstraintViolation
from authcore.storage.rate_limit import MemoryRateLimitStore


@pytest.fixture
def limiter():
    rule = RateLimitRule(namespace="auth", max_requests=2, window_seconds=60, message="slow down")
    return RateLimiter(MemoryRateLimitStore(), rule)


@pytest.fixture
def client(limiter):
    app = FastAPI()
    register_exception_handlers(app)

    @app.post("/limited", dependencies=[Depends(rate_limit_dependency(limiter))])
    async def limited():
        return {"ok": True}

    @app.get("/locked")
    async def locked():
        raise AccountLockedError(datetime(2024, 1, 1, 12, 15, tzinfo=timezone.utc))

    @app.get("/credentials")
    async def credentials():
        raise InvalidCredentialsError()

    @app.get("/weak")
    async def weak():
        raise WeakPasswordError(["password must be at least 8 characters"], score=2)

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/server")
    async def server():
        raise ServerError("backend unavailable")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("password=hunter2 at /var/lib/app")

    @app.get("/traced")
    async def traced():
        set_correlation_id("req-123")
        raise InvalidCredentialsError()

    return TestClient(app, raise_server_exceptions=False)


class TestErrorEnvelope:
    def test_locked(self, client):
        resp = client.get("/locked")

        assert resp.status_code == 423
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "account_locked"
        assert body["error"]["details"]["locked_until"] == "2024-01-01T12:15:00+00:00"
        assert body["request_id"]

    def test_invalid_credentials(self, client):
        resp = client.get("/credentials")

        assert resp.status_code == 401
        assert resp.json()["error"] == {
            "code": "invalid_credentials",
            "message": "invalid email or password",
            "details": None,
        }

    def test_weak_password_lists_errors(self, client):
        resp = client.get("/weak")

        assert resp.status_code == 400
        details = resp.json()["error"]["details"]
        assert details["errors"] == ["password must be at least 8 characters"]
        assert details["score"] == 2

    def test_constraint_violation_is_conflict(self, client):
        resp = client.get("/conflict")

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_server_error(self, client):
        resp = client.get("/server")

        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "server_error"

    def test_uncaught_error_hides_detail(self, client):
        resp = client.get("/boom")

        assert resp.status_code == 500
        assert resp.json()["error"]["message"] == "internal server error"
        assert "hunter2" not in resp.text

    def test_correlation_id_becomes_request_id(self, client):
        resp = client.get("/traced")

        assert resp.json()["request_id"] == "req-123"


class TestRateLimitDependency:
    def test_headers_then_429(self, client):
        first = client.post("/limited")
        second = client.post("/limited")
        third = client.post("/limited")

        assert first.status_code == 200
        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert second.headers["X-RateLimit-Remaining"] == "0"

        assert third.status_code == 429
        assert third.json()["error"]["code"] == "rate_limited"
        assert third.json()["error"]["message"] == "slow down"
        assert third.headers["X-RateLimit-Remaining"] == "0"
        assert 0 < int(third.headers["Retry-After"]) <= 60
        assert third.json()["error"]["details"]["retry_after"] == int(third.headers["Retry-After"])

    def test_forwarded_clients_are_counted_separately(self, client):
        for _ in range(2):
            client.post("/limited", headers={"X-Forwarded-For": "203.0.113.1"})

        blocked = client.post("/limited", headers={"X-Forwarded-For": "203.0.113.1"})
        other = client.post("/limited", headers={"X-Forwarded-For": "203.0.113.2"})

        assert blocked.status_code == 429
        assert other.status_code == 200


class TestLifespan:
    def test_runtime_starts_and_stops_sweep(self):
        app = FastAPI(lifespan=runtime_lifespan)

        with TestClient(app):
            runtime = app.state.runtime
            assert isinstance(runtime, Runtime)
            assert isinstance(runtime.rate_limit_store, MemoryRateLimitStore)
            assert runtime.rate_limit_store.sweeping is True

        assert runtime.rate_limit_store.sweeping is False

    def test_end_to_end_login(self):
        app = FastAPI(lifespan=runtime_lifespan)
        register_exception_handlers(app)

        @app.post("/register")
        async def register(payload: dict):
            profile = await app.state.runtime.auth.register(payload["email"], payload["password"])
            return {"id": profile.id}

        @app.post("/login")
        async def login(payload: dict):
            result = await app.state.runtime.auth.login(payload["email"], payload["password"])
            return {"access_token": result.access_token, "refresh_token": result.refresh_token}

        with TestClient(app) as client:
            created = client.post(
                "/register", json={"email": "ada@example.com", "password": STRONG_PASSWORD}
            )
            assert created.status_code == 200

            bad = client.post("/login", json={"email": "ada@example.com", "password": "nope"})
            assert bad.status_code == 401

            good = client.post(
                "/login", json={"email": "ada@example.com", "password": STRONG_PASSWORD}
            )
            assert good.status_code == 200
            claims = app.state.runtime.auth.authenticate(f"Bearer {good.json()['access_token']}")
            assert claims.user_id == created.json()["id"]


class TestCorrelationMiddleware:
    @pytest.fixture
    def traced_client(self):
        app = FastAPI()
        register_exception_handlers(app)
        register_correlation_middleware(app)

        @app.get("/ok")
        async def ok():
            return {"correlation_id": get_correlation_id()}

        @app.get("/credentials")
        async def credentials():
            raise InvalidCredentialsError()

        return TestClient(app, raise_server_exceptions=False)

    def test_valid_request_id_is_echoed(self, traced_client):
        resp = traced_client.get("/ok", headers={REQUEST_ID_HEADER: "req-abc.123"})

        assert resp.headers[REQUEST_ID_HEADER] == "req-abc.123"
        assert resp.json()["correlation_id"] == "req-abc.123"

    @pytest.mark.parametrize("request_id", ["bad id with spaces", "x" * 65, "<script>"])
    def test_unsafe_request_id_is_replaced(self, traced_client, request_id):
        resp = traced_client.get("/ok", headers={REQUEST_ID_HEADER: request_id})

        echoed = resp.headers[REQUEST_ID_HEADER]
        assert echoed != request_id
        assert str(uuid.UUID(echoed)) == echoed

    def test_missing_request_id_is_generated(self, traced_client):
        resp = traced_client.get("/ok")

        assert uuid.UUID(resp.headers[REQUEST_ID_HEADER])
        assert resp.json()["correlation_id"] == resp.headers[REQUEST_ID_HEADER]

    def test_error_envelope_carries_request_id(self, traced_client):
        resp = traced_client.get("/credentials", headers={REQUEST_ID_HEADER: "req-err-1"})

        assert resp.status_code == 401
        assert resp.json()["request_id"] == "req-err-1"
        assert resp.headers[REQUEST_ID_HEADER] == "req-err-1"
