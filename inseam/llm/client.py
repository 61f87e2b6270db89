"""Async LLM completion with provider error mapping and backoff.

Gemini exceptions are translated into AdapterError carrying an HTTP-like
status so the shared retry classifier treats rate limits and 5xx as
transient, and everything else as fatal.
"""

from __future__ import annotations

import asyncio
from typing import Any

from inseam.config import LLM_TIMEOUT_SECONDS
from inseam.infrastructure.retry import AdapterError, RetryOptions, with_exponential_backoff
from inseam.infrastructure.settings import GEMINI_MAX_TOKENS, GEMINI_TEMPERATURE
from inseam.llm.gemini import get_gemini_model_with_options
from inseam.observability.logging import get_logger
from inseam.observability.telemetry import counter, time_block

logger = get_logger(__name__)


class GeminiClient:
    """Single-shot JSON completions against the shared Gemini model."""

    def __init__(self, retry_options: RetryOptions | None = None, counter_prefix: str = "llm"):
        self.retry_options = retry_options or RetryOptions(name="llm")
        self.counter_prefix = counter_prefix

    async def complete(
        self,
        prompt: str,
        system_instruction: str | None = None,
        response_schema: dict[str, Any] | None = None,
    ) -> str:
        """Return the model's text response, retrying transient failures.

        Raises:
            AdapterError: Provider failure (after retries when transient)
        """
        with time_block(f"{self.counter_prefix}.complete.latency"):
            return await with_exponential_backoff(
                lambda: self._complete_once(prompt, system_instruction, response_schema),
                self.retry_options,
            )

    async def _complete_once(
        self,
        prompt: str,
        system_instruction: str | None,
        response_schema: dict[str, Any] | None,
    ) -> str:
        from google.api_core.exceptions import (
            DeadlineExceeded,
            GoogleAPICallError,
            InternalServerError,
            ResourceExhausted,
            ServiceUnavailable,
        )

        model = get_gemini_model_with_options(system_instruction=system_instruction)

        generation_config: dict[str, Any] = {
            "temperature": GEMINI_TEMPERATURE,
            "max_output_tokens": GEMINI_MAX_TOKENS,
        }
        # The raw dict schema is described in the prompt; the SDKs want
        # protobuf Schema objects for response_schema, so only the MIME type is set.
        if response_schema is not None:
            generation_config["response_mime_type"] = "application/json"

        prefix = self.counter_prefix
        try:
            response = await asyncio.wait_for(
                model.generate_content_async(prompt, generation_config=generation_config),
                timeout=LLM_TIMEOUT_SECONDS,
            )
            counter(f"{prefix}.success")
            return response.text
        except asyncio.TimeoutError as e:
            counter(f"{prefix}.timeout")
            logger.warning("LLM call timed out after %ds", LLM_TIMEOUT_SECONDS)
            raise AdapterError(f"LLM call timeout after {LLM_TIMEOUT_SECONDS}s", 504) from e
        except DeadlineExceeded as e:
            counter(f"{prefix}.timeout")
            raise AdapterError(f"LLM call timeout: {e}", 504) from e
        except ResourceExhausted as e:
            counter(f"{prefix}.rate_limited")
            logger.warning("LLM rate limited (429), will retry: %s", e)
            raise AdapterError(f"LLM rate limit: {e}", 429) from e
        except ServiceUnavailable as e:
            counter(f"{prefix}.service_unavailable")
            logger.warning("LLM service unavailable, will retry: %s", e)
            raise AdapterError(f"LLM service unavailable: {e}", 503) from e
        except InternalServerError as e:
            counter(f"{prefix}.internal_error")
            raise AdapterError(f"LLM internal error: {e}", 502) from e
        except GoogleAPICallError as e:
            counter(f"{prefix}.api_error")
            raise AdapterError(f"LLM call failed: {e}", getattr(e, "code", None)) from e
