"""Unit tests for user authentication

Tests cover:
- Missing authorization header
- Invalid authorization schemes
- Token verification against (mocked) Google endpoints
- Audience checks
- Token caching
"""

from __future__ import annotations

import asyncio

import httpx
import pytest
from fastapi import Depends, FastAPI, HTTPException
from fastapi.testclient import TestClient

from inseam.api.middleware.user_auth import (
    AuthenticatedUser,
    clear_token_cache,
    get_current_user,
    verify_google_token,
)

USERINFO = {"id": "google-123", "email": "me@gmail.com", "name": "Me"}


@pytest.fixture(autouse=True)
def fresh_cache(monkeypatch):
    monkeypatch.delenv("GOOGLE_OAUTH_CLIENT_ID", raising=False)
    clear_token_cache()
    yield
    clear_token_cache()


def create_test_app():
    test_app = FastAPI()

    @test_app.get("/protected")
    async def protected(user: AuthenticatedUser = Depends(get_current_user)):
        return {"user": user.id}

    return test_app


def google(tokeninfo_status: int = 200, aud: str = "client-1", calls: list | None = None):
    """Mock transport answering Google's tokeninfo and userinfo endpoints."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request.url.path)
        if "tokeninfo" in request.url.path:
            return httpx.Response(tokeninfo_status, json={"aud": aud})
        return httpx.Response(200, json=USERINFO)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_auth_rejects_missing_header():
    client = TestClient(create_test_app())
    response = client.get("/protected")

    assert response.status_code == 401
    assert "Missing authorization header" in response.json()["detail"]
    assert response.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.parametrize("header", ["Basic abc123", "InvalidFormat", "Bearer a b"])
def test_auth_rejects_malformed_header(header):
    client = TestClient(create_test_app())
    response = client.get("/protected", headers={"Authorization": header})

    assert response.status_code == 401
    assert "Invalid authorization header format" in response.json()["detail"]


def test_valid_token_resolves_user():
    user = asyncio.run(verify_google_token("tok", http_client=google()))

    assert user.id == "google-123"
    assert user.email == "me@gmail.com"
    assert str(user) == "User(google-123)"


def test_invalid_token_is_401():
    with pytest.raises(HTTPException) as exc_info:
        asyncio.run(verify_google_token("tok", http_client=google(tokeninfo_status=400)))

    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "Invalid or expired token"


def test_audience_must_match_configured_client(monkeypatch):
    monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_ID", "client-1")
    assert asyncio.run(verify_google_token("ok", http_client=google(aud="client-1"))).id == "google-123"

    with pytest.raises(HTTPException) as exc_info:
        asyncio.run(verify_google_token("other", http_client=google(aud="someone-else")))
    assert exc_info.value.status_code == 401


def test_google_unreachable_is_503():
    def handler(request):
        raise httpx.ConnectError("down")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    with pytest.raises(HTTPException) as exc_info:
        asyncio.run(verify_google_token("tok", http_client=client))
    assert exc_info.value.status_code == 503


def test_verified_tokens_are_cached():
    calls: list[str] = []
    asyncio.run(verify_google_token("tok", http_client=google(calls=calls)))
    asyncio.run(verify_google_token("tok", http_client=google(calls=calls)))

    assert len(calls) == 2  # tokeninfo + userinfo, once
