"""
Shared service instances for route handlers.

Routes take these through Depends(...) so tests can swap them with
app.dependency_overrides.
"""

from __future__ import annotations

from functools import lru_cache

from inseam.email.oauth import EmailConnectionService
from inseam.pipeline.orchestrator import BatchOrchestrator
from inseam.updates.service import UpdateStore


@lru_cache(maxsize=1)
def get_orchestrator() -> BatchOrchestrator:
    # One instance per process: cancel events and background tasks live on it
    return BatchOrchestrator()


@lru_cache(maxsize=1)
def get_update_store() -> UpdateStore:
    return UpdateStore()


@lru_cache(maxsize=1)
def get_connection_service() -> EmailConnectionService:
    return EmailConnectionService()
