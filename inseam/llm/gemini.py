"""
Gemini model manager.

Supports two backends:
  1. Vertex AI SDK (production) - uses GOOGLE_CLOUD_PROJECT + service account
  2. google-generativeai (local dev) - uses GOOGLE_API_KEY
"""

from __future__ import annotations

import os
from functools import lru_cache

from inseam.infrastructure.settings import GEMINI_LOCATION, GEMINI_MODEL, GOOGLE_CLOUD_PROJECT
from inseam.observability.logging import get_logger

logger = get_logger(__name__)

# Which backend initialized successfully: "vertexai" or "genai"
_backend: str | None = None


class GeminiInitializationError(RuntimeError):
    """Raised when Gemini model cannot be initialized."""


@lru_cache(maxsize=1)
def get_gemini_model():
    """
    Get or create the shared Gemini model instance (no system instruction).

    Vertex AI is used when GOOGLE_CLOUD_PROJECT is set; otherwise the
    google-generativeai client with GOOGLE_API_KEY.

    Raises:
        GeminiInitializationError: If neither backend is configured
    """
    global _backend
    # Read env fresh: settings may have been imported before dotenv ran
    project = os.getenv("GOOGLE_CLOUD_PROJECT") or GOOGLE_CLOUD_PROJECT
    location = os.getenv("GEMINI_LOCATION") or GEMINI_LOCATION
    api_key = os.getenv("GOOGLE_API_KEY")

    try:
        if project:
            import vertexai
            from vertexai.generative_models import GenerativeModel

            vertexai.init(project=project, location=location)
            model = GenerativeModel(GEMINI_MODEL)
            _backend = "vertexai"
            logger.info(
                "Initialized Gemini model (Vertex AI): project=%s, location=%s, model=%s",
                project,
                location,
                GEMINI_MODEL,
            )
            return model

        if api_key:
            import google.generativeai as genai

            genai.configure(api_key=api_key)
            model = genai.GenerativeModel(GEMINI_MODEL)
            _backend = "genai"
            logger.info("Initialized Gemini model (google-generativeai): model=%s", GEMINI_MODEL)
            return model

    except Exception as e:
        logger.error("Failed to initialize Gemini model: %s", e)
        raise GeminiInitializationError(f"Failed to initialize Gemini: {e}") from e

    raise GeminiInitializationError(
        "Neither GOOGLE_CLOUD_PROJECT nor GOOGLE_API_KEY is set; cannot initialize Gemini."
    )


def get_gemini_model_with_options(system_instruction: str | None = None) -> object:
    """Model instance carrying a system instruction.

    System instructions are per-model-instance in the Gemini API, so a fresh
    GenerativeModel is built on the already-initialized backend.
    """
    if system_instruction is None:
        return get_gemini_model()

    get_gemini_model()

    if _backend == "vertexai":
        from vertexai.generative_models import GenerativeModel

        return GenerativeModel(GEMINI_MODEL, system_instruction=system_instruction)

    import google.generativeai as genai

    return genai.GenerativeModel(GEMINI_MODEL, system_instruction=system_instruction)

