"""Tests for the rate limit middleware and per-route limiter dependency."""

from types import SimpleNamespace
from unittest.mock import patch

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient
from starlette.middleware.base import BaseHTTPMiddleware

from dashguard.app.core.config import settings
from dashguard.app.core.security import hash_identifier
from dashguard.app.exceptions import RateLimitConfigError
from dashguard.app.main import create_app
from dashguard.app.middleware.rate_limit import (
    InMemoryCounterStore,
    RateLimitConfig,
    RateLimiter,
    RateLimitMiddleware,
    client_key,
    endpoint_rate_limit,
)
from dashguard.app.middleware.request_id import RequestIdMiddleware
from dashguard.app.services.audit import RATE_LIMIT_EXCEEDED

from tests.conftest import FakeAuditLog

TIGHT = RateLimitConfig(window_seconds=60, max=2, burst_max=3, name="test")
TOKENS = {"token-a": "user-a", "token-b": "user-b"}


class BearerIdentityMiddleware(BaseHTTPMiddleware):
    """Resolves known bearer tokens to request.state.user_id."""

    async def dispatch(self, request: Request, call_next):
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token in TOKENS:
            request.state.user_id = TOKENS[token]
        return await call_next(request)


def build_app(audit=None, enabled=True, authenticate=False) -> FastAPI:
    app = FastAPI()
    app.add_middleware(
        RateLimitMiddleware,
        limiter=RateLimiter(store=InMemoryCounterStore()),
        audit=audit,
        enabled=enabled,
    )
    if authenticate:
        app.add_middleware(BearerIdentityMiddleware)
    app.add_middleware(RequestIdMiddleware)

    @app.get("/api/search")
    async def search():
        return {"results": []}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


@pytest.fixture
def tight_preset():
    with patch("dashguard.app.middleware.rate_limit.preset_for_path", return_value=TIGHT):
        yield


class TestRateLimitMiddleware:
    def test_success_adds_rate_limit_headers(self):
        client = TestClient(build_app())

        response = client.get("/api/search")

        assert response.status_code == 200
        assert response.headers["RateLimit-Limit"] == "30"
        assert response.headers["RateLimit-Remaining"] == "29"
        assert "RateLimit-Reset" in response.headers
        assert "Retry-After" not in response.headers

    def test_burst_then_rejection(self, tight_preset):
        audit = FakeAuditLog()
        client = TestClient(build_app(audit=audit))

        statuses = [client.get("/api/search").status_code for _ in range(5)]
        assert statuses == [200, 200, 200, 200, 200]

        response = client.get("/api/search", headers={"User-Agent": "curl/8.0"})
        assert response.status_code == 429
        body = response.json()
        assert body["error"] == "rate_limit_exceeded"
        assert body["retry_after"] > 0
        assert response.headers["Retry-After"] == str(body["retry_after"])
        assert response.headers["RateLimit-Remaining"] == "0"

        assert audit.actions() == [RATE_LIMIT_EXCEEDED]
        event = audit.events[0]
        assert event.resource == "/api/search"
        assert event.ip_address == "testclient"
        assert event.user_agent == "curl/8.0"
        assert event.details["method"] == "GET"

    def test_repeat_offender_is_locked_out(self, tight_preset, monkeypatch):
        monkeypatch.setattr(settings, "abuse_violation_threshold", 1)
        client = TestClient(build_app(audit=FakeAuditLog()))

        for _ in range(5):
            client.get("/api/search")

        first = client.get("/api/search")
        assert first.status_code == 429
        assert first.headers["Retry-After"] != str(settings.abuse_lockout_seconds)

        second = client.get("/api/search")
        assert second.status_code == 429
        assert second.headers["Retry-After"] == str(settings.abuse_lockout_seconds)
        assert second.json()["retry_after"] == settings.abuse_lockout_seconds

    def test_rejection_without_audit_log(self, tight_preset):
        client = TestClient(build_app(audit=None))

        for _ in range(5):
            client.get("/api/search")

        assert client.get("/api/search").status_code == 429

    def test_health_is_exempt(self, tight_preset):
        client = TestClient(build_app())

        for _ in range(10):
            response = client.get("/health")
            assert response.status_code == 200
            assert "RateLimit-Limit" not in response.headers

    def test_disabled_middleware_passes_through(self, tight_preset):
        client = TestClient(build_app(enabled=False))

        for _ in range(10):
            assert client.get("/api/search").status_code == 200

    def test_authenticated_users_are_limited_separately(self, tight_preset):
        client = TestClient(build_app(authenticate=True))
        user_a = {"Authorization": "Bearer token-a"}
        user_b = {"Authorization": "Bearer token-b"}

        for _ in range(5):
            client.get("/api/search", headers=user_a)

        assert client.get("/api/search", headers=user_a).status_code == 429
        assert client.get("/api/search", headers=user_b).status_code == 200

    def test_rotating_user_id_header_does_not_evade_limit(self, tight_preset):
        client = TestClient(build_app())

        statuses = [
            client.get("/api/search", headers={"X-User-ID": f"user-{i}"}).status_code
            for i in range(8)
        ]

        assert statuses[:5] == [200] * 5
        assert statuses[5:] == [429] * 3

    def test_unknown_token_falls_back_to_address(self, tight_preset):
        client = TestClient(build_app(authenticate=True))

        for i in range(5):
            client.get("/api/search", headers={"Authorization": f"Bearer forged-{i}"})

        assert client.get("/api/search", headers={"Authorization": "Bearer forged-9"}).status_code == 429

    def test_forwarded_addresses_are_limited_separately(self, tight_preset):
        client = TestClient(build_app())

        for _ in range(5):
            client.get("/api/search", headers={"X-Forwarded-For": "198.51.100.1, 10.0.0.1"})

        blocked = client.get("/api/search", headers={"X-Forwarded-For": "198.51.100.1"})
        other = client.get("/api/search", headers={"X-Forwarded-For": "198.51.100.2"})
        assert blocked.status_code == 429
        assert other.status_code == 200

    def test_request_id_is_echoed(self):
        client = TestClient(build_app())

        response = client.get("/api/search", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

        generated = client.get("/api/search").headers["X-Request-ID"]
        assert len(generated) == 36


class TestClientKey:
    def test_user_id_is_hashed(self):
        request = SimpleNamespace(
            headers={},
            client=SimpleNamespace(host="127.0.0.1"),
            state=SimpleNamespace(user_id="user-42"),
        )
        key = client_key(request)
        assert key == f"user:{hash_identifier('user-42')}"
        assert "user-42" not in key

    def test_user_id_header_is_ignored(self):
        request = SimpleNamespace(
            headers={"X-User-ID": "spoofed"},
            client=SimpleNamespace(host="127.0.0.1"),
            state=SimpleNamespace(),
        )
        assert client_key(request) == f"ip:{hash_identifier('127.0.0.1')}"

    def test_first_forwarded_hop_is_hashed(self):
        request = SimpleNamespace(
            headers={"X-Forwarded-For": "10.0.0.1, 192.168.1.1"},
            client=SimpleNamespace(host="127.0.0.1"),
            state=SimpleNamespace(),
        )
        key = client_key(request)
        assert key == f"ip:{hash_identifier('10.0.0.1')}"
        assert "10.0.0.1" not in key

    def test_socket_peer_when_no_headers(self):
        request = SimpleNamespace(headers={}, client=SimpleNamespace(host="192.168.1.1"), state=SimpleNamespace())
        assert client_key(request) == f"ip:{hash_identifier('192.168.1.1')}"


class TestEndpointRateLimit:
    def test_route_limit_raises_429(self):
        app = create_app(
            limiter=RateLimiter(store=InMemoryCounterStore()),
            audit_log=FakeAuditLog(),
        )

        async def export():
            return {"status": "queued"}

        app.add_api_route(
            "/api/export",
            export,
            methods=["POST"],
            dependencies=[Depends(endpoint_rate_limit(60, 1, name="export"))],
        )
        client = TestClient(app)

        assert client.post("/api/export").status_code == 200

        response = client.post("/api/export")
        assert response.status_code == 429
        assert response.json()["error"] == "rate_limit_exceeded"
        assert int(response.headers["Retry-After"]) > 0

    def test_invalid_limit_fails_at_definition(self):
        with pytest.raises(RateLimitConfigError):
            endpoint_rate_limit(0, 1)

    def test_app_uses_injected_collaborators(self):
        limiter = RateLimiter()
        audit = FakeAuditLog()
        app = create_app(limiter=limiter, audit_log=audit)

        assert app.state.rate_limiter is limiter
        assert app.state.audit_log is audit
        assert TestClient(app).get("/health").json() == {"status": "ok"}
