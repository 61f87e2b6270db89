"""
Email connection endpoints (hosted OAuth through the email connector).
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from inseam.api.dependencies import get_connection_service
from inseam.api.middleware.user_auth import AuthenticatedUser, get_current_user
from inseam.email.oauth import EmailConnectionService, InvalidOAuthStateError, InvalidRedirectUriError
from inseam.infrastructure.rate_limit import RateLimitExceededError
from inseam.infrastructure.retry import AdapterError
from inseam.observability.logging import get_logger
from inseam.utils.error_sanitizer import get_safe_error_detail, sanitize_error_message

router = APIRouter(prefix="/api/email", tags=["email"])
logger = get_logger(__name__)


class ConnectRequest(BaseModel):
    redirect_uri: str = Field(..., min_length=1, max_length=2048)
    provider: str | None = None


class CallbackRequest(BaseModel):
    code: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)


class ConnectionStatusResponse(BaseModel):
    connected: bool
    email: str | None = None
    provider: str | None = None


@router.post("/connect")
async def connect_email(
    request: ConnectRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    connections: EmailConnectionService = Depends(get_connection_service),
) -> dict[str, str]:
    """Return the hosted auth URL the client should redirect to."""
    try:
        return connections.initiate_auth(user.id, request.redirect_uri, request.provider)
    except RateLimitExceededError as e:
        raise HTTPException(
            status_code=429,
            detail=sanitize_error_message(str(e), 429),
            headers={"Retry-After": str(e.retry_after_seconds)},
        ) from None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=sanitize_error_message(str(e), 400)) from None


@router.post("/callback")
async def email_callback(
    request: CallbackRequest,
    connections: EmailConnectionService = Depends(get_connection_service),
) -> dict[str, Any]:
    """
    Complete the OAuth flow. Unauthenticated: the single-use state
    identifies the user who started it.
    """
    try:
        return await connections.handle_callback(request.code, request.state)
    except (InvalidOAuthStateError, InvalidRedirectUriError) as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    except AdapterError as e:
        raise HTTPException(
            status_code=502, detail=get_safe_error_detail(e, 502, "Failed to connect email account")
        ) from None


@router.get("/status", response_model=ConnectionStatusResponse)
async def connection_status(
    user: AuthenticatedUser = Depends(get_current_user),
    connections: EmailConnectionService = Depends(get_connection_service),
) -> ConnectionStatusResponse:
    return ConnectionStatusResponse(**connections.get_connection_status(user.id))


@router.delete("/connection")
async def disconnect_email(
    user: AuthenticatedUser = Depends(get_current_user),
    connections: EmailConnectionService = Depends(get_connection_service),
) -> dict[str, Any]:
    return await connections.disconnect(user.id)
