"""
Email account connection lifecycle (hosted OAuth).

initiate_auth -> user authenticates with their provider -> handle_callback
stores the resulting grant. disconnect revokes it.
"""

from __future__ import annotations

import secrets
from typing import Any

from inseam.email.grants import GrantRepository, OAuthStateRepository
from inseam.email.models import EmailGrant
from inseam.email.nylas_client import NylasClient
from inseam.infrastructure import settings
from inseam.infrastructure.rate_limit import RateLimiter
from inseam.infrastructure.retry import AdapterError
from inseam.observability.logging import get_logger
from inseam.observability.telemetry import counter, log_event
from inseam.utils.validators import is_valid_redirect_uri

logger = get_logger(__name__)

SUPPORTED_PROVIDERS = ("google", "microsoft", "imap")
AUTH_ENDPOINT = "nylas.auth"


class InvalidRedirectUriError(ValueError):
    def __init__(self) -> None:
        super().__init__("Invalid redirect URI")


class InvalidOAuthStateError(ValueError):
    def __init__(self) -> None:
        super().__init__("Invalid or expired OAuth state")


def _infer_provider(email: str) -> str:
    domain = email.rpartition("@")[2].lower()
    if domain in ("gmail.com", "googlemail.com"):
        return "google"
    if domain in ("outlook.com", "hotmail.com"):
        return "microsoft"
    return "unknown"


class EmailConnectionService:
    def __init__(
        self,
        nylas: NylasClient | None = None,
        rate_limiter: RateLimiter | None = None,
        allowed_domains: list[str] | None = None,
    ):
        self.nylas = nylas or NylasClient()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.allowed_domains = allowed_domains or settings.ALLOWED_REDIRECT_DOMAINS

    def initiate_auth(
        self, user_id: str, redirect_uri: str, provider: str | None = None
    ) -> dict[str, str]:
        """
        Start the hosted OAuth flow.

        Raises:
            RateLimitExceededError: Too many auth attempts
            InvalidRedirectUriError: redirect_uri not on the allow-list
            ValueError: Unsupported provider

        Side Effects:
            - Counts one request against nylas.auth
            - Stores a single-use CSRF state that expires in 10 minutes
        """
        self.rate_limiter.check_and_record(user_id, AUTH_ENDPOINT)

        if not is_valid_redirect_uri(redirect_uri, self.allowed_domains):
            counter("email.auth.invalid_redirect")
            raise InvalidRedirectUriError()
        if provider is not None and provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported provider: {provider}")

        state = secrets.token_urlsafe(32)
        OAuthStateRepository.create(state, user_id, redirect_uri)

        log_event("email.auth.initiated", provider=provider or "any")
        return {
            "auth_url": self.nylas.build_auth_url(redirect_uri, state, provider),
            "message": "Redirect user to this URL to connect their email",
        }

    async def handle_callback(self, code: str, state: str) -> dict[str, Any]:
        """
        Finish the OAuth flow and store the grant.

        Raises:
            InvalidOAuthStateError: state unknown, reused or expired
            AdapterError: Code exchange failed

        Side Effects:
            - Consumes the OAuth state
            - Revokes the user's previous grant, if any
            - Stores the new grant
        """
        stored = OAuthStateRepository.consume(state)
        if stored is None:
            counter("email.auth.invalid_state")
            raise InvalidOAuthStateError()

        user_id = stored["user_id"]

        existing = GrantRepository.get(user_id)
        if existing is not None:
            await self.nylas.revoke_grant(existing.grant_id)

        token = await self.nylas.exchange_code(code, stored["redirect_uri"])
        if not token["email"]:
            raise AdapterError("No email address returned from OAuth provider")

        try:
            provider = (await self.nylas.get_grant_info(token["grant_id"]))["provider"]
        except AdapterError as e:
            logger.warning("Failed to fetch grant info (status=%s), inferring provider", e.status_code)
            provider = _infer_provider(token["email"])

        GrantRepository.save(
            EmailGrant(
                user_id=user_id,
                grant_id=token["grant_id"],
                email=token["email"],
                provider=provider,
            )
        )
        OAuthStateRepository.delete_expired()

        log_event("email.auth.connected", provider=provider)
        return {"success": True, "email": token["email"], "provider": provider}

    async def disconnect(self, user_id: str) -> dict[str, Any]:
        """
        Side Effects:
            - Revokes the grant with the provider (failures are logged only)
            - Deletes the local grant
        """
        grant = GrantRepository.get(user_id)
        if grant is not None:
            await self.nylas.revoke_grant(grant.grant_id)
        GrantRepository.delete(user_id)

        log_event("email.auth.disconnected")
        return {"success": True, "message": "Email account disconnected and access revoked"}

    def get_connection_status(self, user_id: str) -> dict[str, Any]:
        grant = GrantRepository.get(user_id)
        if grant is None:
            return {"connected": False, "email": None, "provider": None}
        return {"connected": True, "email": grant.email, "provider": grant.provider}
