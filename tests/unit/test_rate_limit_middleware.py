"""Unit tests for per-IP rate limiting middleware"""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from inseam.api.middleware.rate_limit import RateLimitMiddleware


@pytest.fixture
def app():
    test_app = FastAPI()
    test_app.add_middleware(RateLimitMiddleware, requests_per_minute=5, requests_per_hour=8)

    @test_app.get("/api/test")
    async def test_endpoint():
        return {"status": "ok"}

    @test_app.get("/health")
    async def health():
        return {"status": "healthy"}

    return test_app


def test_requests_under_limit_allowed(app):
    client = TestClient(app)

    for remaining in (4, 3, 2):
        response = client.get("/api/test")
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit-Minute"] == "5"
        assert response.headers["X-RateLimit-Remaining-Minute"] == str(remaining)


def test_minute_limit_enforced(app):
    client = TestClient(app)
    for _ in range(5):
        assert client.get("/api/test").status_code == 200

    response = client.get("/api/test")
    assert response.status_code == 429
    assert "per minute" in response.json()["detail"]
    assert response.json()["retry_after"] == 60
    assert response.headers["Retry-After"] == "60"


def test_health_endpoint_not_limited(app):
    client = TestClient(app)
    for _ in range(10):
        assert client.get("/health").status_code == 200


def test_limits_are_per_ip(app):
    client = TestClient(app)
    for _ in range(5):
        client.get("/api/test", headers={"X-Forwarded-For": "10.0.0.1"})

    assert client.get("/api/test", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 429
    assert client.get("/api/test", headers={"X-Forwarded-For": "10.0.0.2"}).status_code == 200


def test_malformed_forwarded_for_falls_back_to_socket_ip(app):
    client = TestClient(app)
    for i in range(5):
        client.get("/api/test", headers={"X-Forwarded-For": f"not-an-ip-{i}"})

    # All five were counted against the same (socket) address
    assert client.get("/api/test").status_code == 429
