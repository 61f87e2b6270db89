"""Health check endpoints for the Inseam API.

- /health - Service health including LLM and email connector credential presence
- /health/db - Database connection pool health
- /health/metrics - In-memory counters and latency stats
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter

from inseam.config import APP_VERSION, GOOGLE_API_KEY, GOOGLE_CLOUD_PROJECT, NYLAS_API_KEY

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Service status and credential readiness (presence only, no API calls)."""
    return {
        "status": "healthy",
        "service": "Inseam API",
        "version": APP_VERSION,
        "timestamp": datetime.now(UTC).isoformat(),
        "llm": {"ready": bool(GOOGLE_API_KEY or GOOGLE_CLOUD_PROJECT)},
        "email_connector": {"ready": bool(NYLAS_API_KEY)},
    }


@router.get("/health/db")
async def database_health() -> dict[str, Any]:
    """Connection pool metrics; degraded above 80% usage."""
    from inseam.infrastructure.database import get_pool_stats

    stats = get_pool_stats()
    degraded = stats["usage_percent"] > 80
    return {
        "status": "degraded" if degraded else "healthy",
        "pool": stats,
        "warning": "Pool usage high" if degraded else None,
    }


@router.get("/health/metrics")
async def metrics() -> dict[str, Any]:
    """In-process counters and latency stats for the main timed operations."""
    from inseam.observability.telemetry import get_counters, get_latency_stats

    return {
        "counters": get_counters(),
        "latency": {
            name: get_latency_stats(name)
            for name in ("batch.duration", "matcher.complete.latency")
        },
    }
