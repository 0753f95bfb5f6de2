"""Token usage accounting across model calls."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass

from anvil.llm.types import Usage

# USD per 1M tokens (input, output), matched by model-name prefix
_PRICING: dict[str, tuple[float, float]] = {
    "claude-opus": (15.00, 75.00),
    "claude-sonnet": (3.00, 15.00),
    "claude-haiku": (0.25, 1.25),
    "gpt-4": (10.00, 30.00),
    "gpt-3.5-turbo": (0.50, 1.50),
}


@dataclass(frozen=True)
class TokenStats:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    request_count: int = 0
    session_duration: float = 0.0  # seconds

    def estimated_cost(self, model: str) -> float:
        """Approximate USD cost; 0.0 for unknown models."""
        for prefix, (input_per_m, output_per_m) in _PRICING.items():
            if model.startswith(prefix):
                return (
                    self.prompt_tokens / 1_000_000 * input_per_m
                    + self.completion_tokens / 1_000_000 * output_per_m
                )
        return 0.0

    def to_dict(self) -> dict[str, float | int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "request_count": self.request_count,
            "session_duration": round(self.session_duration, 3),
        }


def format_token_count(tokens: int) -> str:
    """Format a token count with K/M suffixes (e.g. 1.5K, 2.0M)."""
    if tokens < 1000:
        return str(tokens)
    if tokens < 1_000_000:
        return f"{tokens / 1000:.1f}K"
    return f"{tokens / 1_000_000:.1f}M"


class TokenTracker:
    """Thread-safe running totals of model token usage."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._prompt = 0
        self._completion = 0
        self._requests = 0
        self._started = time.monotonic()

    def add_usage(self, usage: Usage) -> None:
        with self._lock:
            self._prompt += usage.prompt_tokens
            self._completion += usage.completion_tokens
            self._requests += 1

    def get_stats(self) -> TokenStats:
        with self._lock:
            return TokenStats(
                prompt_tokens=self._prompt,
                completion_tokens=self._completion,
                total_tokens=self._prompt + self._completion,
                request_count=self._requests,
                session_duration=time.monotonic() - self._started,
            )

    def reset(self) -> None:
        with self._lock:
            self._prompt = 0
            self._completion = 0
            self._requests = 0
            self._started = time.monotonic()
