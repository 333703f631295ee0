"""
Claude API client used to interpret caller speech.

A caller is waiting in silence while this runs, so every call to
``generate`` shares one deadline across retries and the fallback model
instead of backing off for seconds at a time.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from anthropic import APIConnectionError, APIError, APIStatusError, AsyncAnthropic, RateLimitError

from callcatcher.config import settings

logger = logging.getLogger(__name__)

# Short pause between attempts; longer waits would be audible on the line
RETRY_PAUSE_SECONDS = 0.25


class ClaudeClientError(Exception):
    """Raised when no model produced an answer within the deadline."""
    pass


@dataclass
class ClaudeResponse:
    """One model answer."""
    content: str
    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: float


class ClaudeClient:
    """
    Async wrapper around the Anthropic messages API.

    Tries the primary understanding model, retries transient failures
    (rate limits, connection drops, 5xx) while time remains, then gives
    the fallback model whatever is left of the deadline.
    """

    _instance: Optional["ClaudeClient"] = None

    def __init__(self, api_key: Optional[str] = None, deadline_seconds: Optional[float] = None):
        self.api_key = api_key or settings.anthropic_api_key
        if not self.api_key:
            raise ValueError("Anthropic API key is required")

        self.deadline_seconds = deadline_seconds or settings.understanding_timeout_seconds
        self._client = AsyncAnthropic(api_key=self.api_key, max_retries=0)
        self._models = [settings.understanding_model]
        if settings.understanding_fallback_model not in self._models:
            self._models.append(settings.understanding_fallback_model)

        logger.info(f"ClaudeClient initialized with models={self._models}")

    @classmethod
    def get_instance(cls) -> "ClaudeClient":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: int = 512,
        temperature: float = 0.0,
    ) -> ClaudeResponse:
        """
        Ask the models in order until one answers.

        Raises:
            ClaudeClientError: Deadline passed or every model failed
        """
        started = time.monotonic()
        deadline = started + self.deadline_seconds
        request: dict[str, Any] = {
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            request["system"] = system_prompt

        last_error: Optional[Exception] = None
        for model in self._models:
            try:
                response = await self._attempt(model, request, deadline)
            except (APIError, asyncio.TimeoutError) as e:
                last_error = e
                logger.warning(f"Model {model} failed: {e}")
                continue

            text = "".join(
                getattr(block, "text", "") for block in response.content or []
                if getattr(block, "type", "text") == "text"
            )
            if not text.strip():
                last_error = ClaudeClientError(f"Empty answer from {model}")
                logger.warning(
                    f"Model {model} returned no text "
                    f"(stop_reason={getattr(response, 'stop_reason', None)})"
                )
                continue
            return ClaudeResponse(
                content=text,
                model=model,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                latency_ms=(time.monotonic() - started) * 1000,
            )

        raise ClaudeClientError(f"No model answered within {self.deadline_seconds}s: {last_error}")

    async def _attempt(self, model: str, request: dict[str, Any], deadline: float) -> Any:
        """Call one model, retrying transient errors until the deadline."""
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise asyncio.TimeoutError()
            try:
                return await asyncio.wait_for(
                    self._client.messages.create(model=model, **request),
                    timeout=remaining,
                )
            except (RateLimitError, APIConnectionError) as e:
                logger.warning(f"Transient error from {model}: {e}")
            except APIStatusError as e:
                if e.status_code < 500:
                    raise
                logger.warning(f"Server error from {model}: {e.status_code}")
            if deadline - time.monotonic() <= RETRY_PAUSE_SECONDS:
                raise asyncio.TimeoutError()
            await asyncio.sleep(RETRY_PAUSE_SECONDS)

    async def close(self) -> None:
        await self._client.close()


async def get_claude_client() -> ClaudeClient:
    return ClaudeClient.get_instance()


async def close_claude_client() -> None:
    """Close the shared client if one was created."""
    if ClaudeClient._instance is not None:
        await ClaudeClient._instance.close()
        ClaudeClient.reset_instance()
