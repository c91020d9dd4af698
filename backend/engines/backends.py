"""Model backends behind an EngineHandle.

A backend owns the actual inference resource for one model. The handle in
`engines.lifecycle` decides *when* to call `load`/`unload`; the backend
decides *how*.

- LiteLLMBackend: any LiteLLM-supported provider, typically a local
  LM Studio or Ollama server.
- MockBackend: scripted responses for tests and `USE_MOCK_LLM=true`.
"""

import asyncio
import time
from collections.abc import Callable
from typing import Any, Protocol

import structlog
from litellm import acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings

logger = structlog.get_logger()


class ModelBackend(Protocol):
    """Inference resource for one model."""

    model: str

    async def load(self) -> None: ...

    async def unload(self) -> None: ...

    async def generate(self, prompt: str) -> str: ...


class LiteLLMBackend:
    """Backend that generates through `litellm.acompletion`.

    Loading is a 1-token warm-up request: local model servers page the model
    into memory on first use, so issuing it ahead of need hides that latency.
    Transient failures (rate limit, unavailable, timeout) are retried with
    capped exponential backoff; authentication and bad-request errors are not.

    Attributes:
        model: LiteLLM model identifier with provider prefix.
        retry_attempts: Number of retries for transient failures.
        retry_delay: Base seconds between retries.
    """

    def __init__(
        self,
        model: str,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
        warmup: bool | None = None,
    ) -> None:
        self.model = model
        self.temperature = settings.llm_temperature if temperature is None else temperature
        self.max_tokens = max_tokens or settings.llm_max_tokens
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None
            else settings.llm_max_retries
        )
        self.retry_delay = retry_delay
        self.warmup = settings.engine_warmup if warmup is None else warmup

    async def _make_request(self, prompt: str, max_tokens: int) -> Any:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
            "max_tokens": max_tokens,
            "timeout": settings.llm_request_timeout_seconds,
        }
        return await acompletion(**kwargs)

    async def load(self) -> None:
        if not self.warmup:
            return
        start_time = time.time()
        await self._call_with_retries("ping", max_tokens=1)
        logger.info(
            "engine_warmup_complete",
            model=self.model,
            latency_ms=int((time.time() - start_time) * 1000),
        )

    async def unload(self) -> None:
        # Remote servers manage their own memory; nothing is held client-side.
        logger.debug("engine_backend_released", model=self.model)

    async def generate(self, prompt: str) -> str:
        return await self._call_with_retries(prompt, max_tokens=self.max_tokens)

    async def _call_with_retries(self, prompt: str, *, max_tokens: int) -> str:
        """Make the request, retrying transient errors.

        Raises:
            AuthenticationError: If the provider rejects credentials.
            BadRequestError: If the request is malformed.
            Exception: The last transient error after all retries.
        """
        start_time = time.time()
        last_exception: Exception | None = None

        for attempt in range(self.retry_attempts + 1):
            try:
                response = await self._make_request(prompt, max_tokens)
                content = response.choices[0].message.content or ""
                usage = getattr(response, "usage", None)
                logger.info(
                    "llm_call_complete",
                    model=self.model,
                    input_tokens=usage.prompt_tokens if usage else 0,
                    output_tokens=usage.completion_tokens if usage else 0,
                    latency_ms=int((time.time() - start_time) * 1000),
                    attempt=attempt + 1,
                )
                return content

            except (RateLimitError, ServiceUnavailableError, Timeout) as e:
                last_exception = e
                if attempt < self.retry_attempts:
                    delay = min(self.retry_delay * (2 ** attempt), 4.0)  # Cap backoff at 4s
                    logger.warning(
                        "llm_call_retry",
                        model=self.model,
                        attempt=attempt + 1,
                        max_retries=self.retry_attempts,
                        error_type=type(e).__name__,
                        error=str(e),
                        retry_delay=delay,
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error(
                        "llm_call_failed_all_retries",
                        model=self.model,
                        attempts=self.retry_attempts + 1,
                        error_type=type(e).__name__,
                        error=str(e),
                    )

            except (AuthenticationError, BadRequestError) as e:
                logger.error(
                    "llm_call_failed_no_retry",
                    model=self.model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

        raise last_exception or Exception("LLM call failed after all retries")


class MockBackend:
    """Scripted backend for testing without a model server.

    Responses are returned in order. A callable response is invoked with
    the prompt, so tests can branch on what the agent was asked.

    Usage:
        >>> backend = MockBackend("mock/dispatcher", responses=["<plan>done</plan>"])
        >>> await backend.generate("...")
        '<plan>done</plan>'
    """

    def __init__(
        self,
        model: str = "mock/model",
        responses: list[str | Callable[[str], str]] | None = None,
        *,
        default_response: str | None = None,
        load_delay: float = 0.0,
        load_error: Exception | None = None,
    ) -> None:
        self.model = model
        self.responses = list(responses) if responses else []
        self.default_response = default_response
        self.load_delay = load_delay
        self.load_error = load_error
        self.load_calls = 0
        self.unload_calls = 0
        self.prompts: list[str] = []
        self._response_index = 0

    async def load(self) -> None:
        self.load_calls += 1
        if self.load_delay:
            await asyncio.sleep(self.load_delay)
        if self.load_error is not None:
            raise self.load_error

    async def unload(self) -> None:
        self.unload_calls += 1

    async def generate(self, prompt: str) -> str:
        """Return the next scripted response.

        Raises:
            IndexError: If no more responses are available and no default is set.
        """
        self.prompts.append(prompt)

        if self._response_index >= len(self.responses):
            if self.default_response is not None:
                return self.default_response
            raise IndexError("No more mock responses available")

        response = self.responses[self._response_index]
        self._response_index += 1
        text = response(prompt) if callable(response) else response

        logger.debug(
            "mock_llm_call",
            model=self.model,
            response_index=self._response_index - 1,
            content_preview=text[:50],
        )
        return text
