"""FastAPI server for Inseam: email -> tracker update pipeline"""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Settings are read at import time, so .env has to be loaded first
load_dotenv()

from inseam.api.middleware.rate_limit import RateLimitMiddleware  # noqa: E402
from inseam.api.routes.email import router as email_router  # noqa: E402
from inseam.api.routes.health import router as health_router  # noqa: E402
from inseam.api.routes.inbox import router as inbox_router  # noqa: E402
from inseam.api.routes.trackers import router as trackers_router  # noqa: E402
from inseam.api.routes.updates import router as updates_router  # noqa: E402
from inseam.config import (  # noqa: E402
    API_HOST,
    API_PORT,
    APP_VERSION,
    LOG_LEVEL,
    RATE_LIMIT_RPH,
    RATE_LIMIT_RPM,
    is_development,
)
from inseam.infrastructure.database import close_pool, init_database  # noqa: E402
from inseam.observability.logging import get_logger  # noqa: E402
from inseam.observability.telemetry import counter, log_event  # noqa: E402
from inseam.utils.redaction import redact  # noqa: E402

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """
    Side Effects:
        - Creates missing tables (idempotent)
        - Closes pooled connections on shutdown
    """
    try:
        init_database()
        logger.info("Database initialization complete")
    except sqlite3.OperationalError as e:
        logger.critical("Database schema error: %s", e)
        raise RuntimeError(f"Database initialization failed: {e}") from e

    log_event("api.startup", service="inseam", version=APP_VERSION)
    yield
    close_pool()


app = FastAPI(title="Inseam API", version=APP_VERSION, lifespan=lifespan)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Answer malformed requests without echoing validation internals.

    Side Effects:
        - Logs the validation errors (URL redacted)
        - Increments api.validation_errors
    """
    logger.warning("Validation error on %s: %s", redact(str(request.url)), exc.errors())
    counter("api.validation_errors")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Invalid request format. Please check your request and try again.",
            "error_count": len(exc.errors()),
            "invalid_fields": [str(err["loc"][-1]) for err in exc.errors()],
        },
    )


ALLOWED_ORIGINS = ["https://app.inseam.io"]
if is_development():
    ALLOWED_ORIGINS.extend(
        [
            "http://localhost:3000",
            "http://localhost:3001",
            "http://127.0.0.1:3000",
        ]
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
)
app.add_middleware(
    RateLimitMiddleware,
    requests_per_minute=RATE_LIMIT_RPM,
    requests_per_hour=RATE_LIMIT_RPH,
)

app.include_router(health_router)
app.include_router(inbox_router)
app.include_router(updates_router)
app.include_router(trackers_router)
app.include_router(email_router)


@app.get("/")
def root() -> dict[str, Any]:
    return {
        "service": "Inseam API",
        "version": APP_VERSION,
        "status": "running",
        "endpoints": {
            "process_inbox": "/api/inbox/process",
            "updates": "/api/updates",
            "trackers": "/api/trackers",
            "email": "/api/email/status",
            "health": "/health",
            "metrics": "/health/metrics",
        },
    }


def main() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "inseam.api.app:app",
        host=API_HOST,
        port=API_PORT,
        log_level=LOG_LEVEL.lower(),
        reload=is_development(),
    )


if __name__ == "__main__":
    main()
