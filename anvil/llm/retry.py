"""Retry wrapper for any ModelService.

Retries only LLMErrors whose category is retryable (rate limit, timeout,
network, server) with capped exponential backoff. Auth and invalid
request errors surface immediately.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from anvil.config import Settings
from anvil.llm.types import (
    CompletionRequest,
    CompletionResponse,
    LLMError,
    ModelService,
    StreamCallback,
    StreamEvent,
)

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    max_retries: int = 3
    initial_backoff: float = 1.0  # seconds
    max_backoff: float = 30.0  # seconds
    multiplier: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryConfig:
        return cls(
            max_retries=settings.max_retries,
            initial_backoff=settings.retry_initial_backoff,
            max_backoff=settings.retry_max_backoff,
            multiplier=settings.retry_multiplier,
        )

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.initial_backoff * self.multiplier**attempt, self.max_backoff)


class RetryingModelService:
    """ModelService decorator adding exponential backoff."""

    def __init__(
        self,
        inner: ModelService,
        config: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._inner = inner
        self._config = config or RetryConfig()
        self._sleep = sleep

    @property
    def inner(self) -> ModelService:
        return self._inner

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        attempt = 0
        while True:
            try:
                return await self._inner.complete(request)
            except LLMError as e:
                if not e.retryable or attempt >= self._config.max_retries:
                    raise
                await self._wait(attempt, e)
                attempt += 1

    async def stream(self, request: CompletionRequest, callback: StreamCallback) -> None:
        """Stream with retries, but never after output has been delivered.

        Once any event reached the caller a retry would duplicate partial
        output, so the error is raised instead.
        """
        delivered = False

        def tracking(event: StreamEvent) -> None:
            nonlocal delivered
            delivered = True
            callback(event)

        attempt = 0
        while True:
            try:
                await self._inner.stream(request, tracking)
                return
            except LLMError as e:
                if delivered or not e.retryable or attempt >= self._config.max_retries:
                    raise
                await self._wait(attempt, e)
                attempt += 1

    async def _wait(self, attempt: int, error: LLMError) -> None:
        delay = self._config.backoff(attempt)
        logger.warning(
            "Model call failed (%s), retry %d/%d in %.1fs",
            error,
            attempt + 1,
            self._config.max_retries,
            delay,
        )
        await self._sleep(delay)
