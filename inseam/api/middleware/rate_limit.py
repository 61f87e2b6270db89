"""Per-IP request rate limiting for the Inseam API.

Complements the per-user, per-endpoint quotas in
inseam.infrastructure.rate_limit: this layer only caps raw request volume
from one address.
"""

from __future__ import annotations

import ipaddress
import time
from collections.abc import Callable
from typing import Any

from cachetools import TTLCache
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from inseam.config import RATE_LIMIT_MAX_IPS, RATE_LIMIT_RPH, RATE_LIMIT_RPM, is_development
from inseam.observability.telemetry import log_event

EXEMPT_PATHS = {"/", "/health", "/health/db", "/health/metrics"}


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window request limits per client IP (minute and hour).

    Buckets live in TTLCaches so idle addresses are evicted automatically.
    """

    def __init__(
        self,
        app: Any,
        requests_per_minute: int = RATE_LIMIT_RPM,
        requests_per_hour: int = RATE_LIMIT_RPH,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.requests_per_hour = requests_per_hour
        self.clock = clock

        self.minute_buckets: TTLCache[str, list[float]] = TTLCache(maxsize=RATE_LIMIT_MAX_IPS, ttl=120)
        self.hour_buckets: TTLCache[str, list[float]] = TTLCache(maxsize=RATE_LIMIT_MAX_IPS, ttl=7200)

        # Cloud Run sets this header; X-Forwarded-For is only trusted behind it
        self._trusted_proxy_header = "X-Cloud-Trace-Context"

    @staticmethod
    def _is_valid_ip(ip_str: str) -> bool:
        try:
            ipaddress.ip_address(ip_str)
            return True
        except ValueError:
            return False

    def _get_client_ip(self, request: Request) -> str:
        if self._trusted_proxy_header in request.headers or is_development():
            forwarded = request.headers.get("X-Forwarded-For")
            if forwarded:
                ip = forwarded.split(",")[0].strip()
                if self._is_valid_ip(ip):
                    return ip

        return request.client.host if request.client else "unknown"

    def _window(self, bucket: TTLCache[str, list[float]], ip: str, seconds: int) -> list[float]:
        now = self.clock()
        recent = [ts for ts in bucket.get(ip, []) if now - ts < seconds]
        bucket[ip] = recent
        return recent

    @staticmethod
    def _too_many(limit: int, period: str, retry_after: int) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={
                "detail": f"Rate limit exceeded. Maximum {limit} requests per {period}.",
                "retry_after": retry_after,
            },
            headers={"Retry-After": str(retry_after)},
        )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        client_ip = self._get_client_ip(request)
        minute = self._window(self.minute_buckets, client_ip, 60)
        hour = self._window(self.hour_buckets, client_ip, 3600)

        if len(minute) >= self.requests_per_minute:
            log_event("api.rate_limit.request_exceeded", limit="minute", count=len(minute))
            return self._too_many(self.requests_per_minute, "minute", 60)
        if len(hour) >= self.requests_per_hour:
            log_event("api.rate_limit.request_exceeded", limit="hour", count=len(hour))
            return self._too_many(self.requests_per_hour, "hour", 3600)

        now = self.clock()
        minute.append(now)
        hour.append(now)

        response = await call_next(request)
        response.headers["X-RateLimit-Limit-Minute"] = str(self.requests_per_minute)
        response.headers["X-RateLimit-Remaining-Minute"] = str(
            max(0, self.requests_per_minute - len(minute))
        )
        response.headers["X-RateLimit-Limit-Hour"] = str(self.requests_per_hour)
        response.headers["X-RateLimit-Remaining-Hour"] = str(
            max(0, self.requests_per_hour - len(hour))
        )
        return response
