"""
Nylas v3 API adapter.

All calls use the application API key as bearer token; the user's mailbox
is addressed by grant id in the URL path. HTTP failures are translated to
AdapterError so the retry executor can classify them.
"""

from __future__ import annotations

import uuid
from typing import Any
from urllib.parse import urlencode

import httpx

from inseam.config import EMAIL_HTTP_TIMEOUT_SECONDS, MAX_EMAIL_FETCH_LIMIT
from inseam.email.models import Email
from inseam.email.parser import parse_messages
from inseam.infrastructure import settings
from inseam.infrastructure.retry import AdapterError
from inseam.observability.logging import get_logger
from inseam.observability.telemetry import counter

logger = get_logger(__name__)

USER_AGENT = "Inseam-Nylas-Integration/1.0.0"


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class NylasClient:
    """
    Thin async wrapper over the Nylas REST API.

    Pass `http_client` to share a connection pool or to inject a mock
    transport; otherwise a client is opened per call.
    """

    def __init__(
        self,
        api_key: str | None = None,
        client_id: str | None = None,
        api_uri: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = EMAIL_HTTP_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key or settings.NYLAS_API_KEY
        self.client_id = client_id or settings.NYLAS_CLIENT_ID
        self.api_uri = (api_uri or settings.NYLAS_API_URI).rstrip("/")
        self.http_client = http_client
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise AdapterError("Server configuration error: email connector API key not set")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-Nylas-Client-Request-Id": str(uuid.uuid4()),
            "User-Agent": USER_AGENT,
        }

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        authenticated: bool = True,
    ) -> httpx.Response:
        """
        Send one request; non-2xx responses raise AdapterError.

        Raw response bodies are never put into error messages since they
        may echo tokens or addresses.
        """
        url = f"{self.api_uri}{path}"
        headers = self._headers() if authenticated else {"Accept": "application/json"}

        try:
            if self.http_client is not None:
                response = await self.http_client.request(
                    method, url, params=params, json=json, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.request(
                        method, url, params=params, json=json, headers=headers, timeout=self.timeout
                    )
        except httpx.TimeoutException as e:
            counter("nylas.timeout")
            raise AdapterError("Email connector request timeout", 504) from e
        except httpx.RequestError as e:
            counter("nylas.network_error")
            logger.warning("Email connector network error: %s", type(e).__name__)
            raise AdapterError("Email connector network error", 503) from e

        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            counter("nylas.rate_limited")
            message = "Rate limit exceeded."
            if retry_after is not None:
                message += f" Retry after {int(retry_after)} seconds."
            raise AdapterError(message, 429, retry_after)

        if response.status_code == 401:
            raise AdapterError("Authentication failed. Please reconnect your email account.", 401)

        if response.status_code >= 400:
            counter(f"nylas.http_{response.status_code}")
            raise AdapterError(
                f"API request failed with status {response.status_code}", response.status_code
            )

        return response

    async def fetch_recent_emails(self, grant_id: str, count: int, offset: int = 0) -> list[Email]:
        """
        Newest-first page of the mailbox.

        Raises:
            AdapterError: HTTP or transport failure
        """
        limit = max(1, min(count, MAX_EMAIL_FETCH_LIMIT))
        response = await self._request(
            "GET",
            f"/grants/{grant_id}/messages",
            params={"limit": limit, "offset": offset},
        )
        payload = response.json()
        messages = payload.get("data") or []
        counter("nylas.messages_fetched", len(messages))
        return parse_messages(messages)

    def build_auth_url(self, redirect_uri: str, state: str, provider: str | None = None) -> str:
        """Hosted OAuth URL the user's browser is sent to."""
        if not self.client_id:
            raise AdapterError("Server configuration error: email connector client id not set")

        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": state,
        }
        if provider:
            params["provider"] = provider
        return f"{self.api_uri}/connect/auth?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> dict[str, str]:
        """
        Trade an authorization code for a grant.

        Returns:
            {"grant_id", "email"}
        """
        if not self.client_id or not self.api_key:
            raise AdapterError("Server configuration error: email connector not configured")

        body = {
            "client_id": self.client_id,
            "client_secret": self.api_key,
            "grant_type": "authorization_code",
            "code": code,
        }
        if redirect_uri:
            body["redirect_uri"] = redirect_uri

        response = await self._request("POST", "/connect/token", json=body, authenticated=False)
        data = response.json()
        return {
            "grant_id": data["grant_id"],
            "email": data.get("email") or data.get("email_address") or "",
        }

    async def get_grant_info(self, grant_id: str) -> dict[str, str]:
        """{"email", "provider"} for a grant."""
        response = await self._request("GET", f"/grants/{grant_id}")
        data = response.json()
        # v3 wraps single objects in "data"
        data = data.get("data", data)
        return {
            "email": data.get("email") or "",
            "provider": data.get("provider") or "unknown",
        }

    async def revoke_grant(self, grant_id: str) -> bool:
        """
        Best-effort revocation; a grant the provider no longer knows counts
        as revoked.
        """
        try:
            await self._request("POST", f"/grants/{grant_id}/revoke")
        except AdapterError as e:
            if e.status_code == 404:
                return True
            logger.warning("Failed to revoke grant (status=%s)", e.status_code)
            return False
        return True
