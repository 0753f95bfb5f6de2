"""Bounded conversation window.

Owns the ordered message history sent to the model and keeps it under a
message-count ceiling and an estimated-token ceiling by evicting the
oldest non-system messages. System messages are never evicted.

Token counts are a chars/N heuristic, not a tokenizer result. They are
a known-imprecise estimate and must not be treated as exact.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from anvil.llm.types import Message, Role

logger = logging.getLogger(__name__)

DEFAULT_CHARS_PER_TOKEN = 4

# Called with (pruned_messages, summary) on a background thread
PruneCallback = Callable[[list[Message], str], None]


@dataclass
class ContextConfig:
    max_messages: int = 100  # 0 disables the count ceiling
    max_tokens: int = 100_000  # 0 disables the token ceiling
    chars_per_token: int = DEFAULT_CHARS_PER_TOKEN

    def __post_init__(self) -> None:
        if self.chars_per_token <= 0:
            self.chars_per_token = DEFAULT_CHARS_PER_TOKEN


@dataclass(frozen=True)
class ContextStats:
    message_count: int
    user_messages: int
    assistant_messages: int
    system_messages: int
    estimated_tokens: int
    pruned_count: int
    max_messages: int
    max_tokens: int

    def to_dict(self) -> dict[str, int]:
        return {
            "message_count": self.message_count,
            "user_messages": self.user_messages,
            "assistant_messages": self.assistant_messages,
            "system_messages": self.system_messages,
            "estimated_tokens": self.estimated_tokens,
            "pruned_count": self.pruned_count,
            "max_messages": self.max_messages,
            "max_tokens": self.max_tokens,
        }


def summarize_pruned(pruned: list[Message]) -> str:
    """Short human-readable description of what was evicted."""
    if not pruned:
        return ""
    users = sum(1 for m in pruned if m.role == Role.USER)
    assistants = sum(1 for m in pruned if m.role == Role.ASSISTANT)
    parts = []
    if users:
        parts.append(f"{users} user message(s)")
    if assistants:
        parts.append(f"{assistants} assistant message(s)")
    return f"Pruned {' and '.join(parts)} from context"


class ConversationContext:
    """Thread-safe, self-pruning message history.

    Readers on other threads get copies; only the orchestrator mutates.
    """

    def __init__(self, config: ContextConfig | None = None) -> None:
        self._lock = threading.RLock()
        self._config = config or ContextConfig()
        self._messages: list[Message] = []
        self._pruned_count = 0
        self._pruned_summary = ""
        self._on_prune: PruneCallback | None = None

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_message(self, message: Message) -> None:
        with self._lock:
            self._messages.append(message)
            self._prune_if_needed()

    def remove_last_message(self) -> Message | None:
        with self._lock:
            if not self._messages:
                return None
            return self._messages.pop()

    def remove_last_n(self, n: int) -> int:
        """Drop the last ``n`` messages. Returns how many were removed."""
        with self._lock:
            n = max(0, min(n, len(self._messages)))
            if n:
                del self._messages[-n:]
            return n

    def clear(self) -> None:
        with self._lock:
            self._messages = []
            self._pruned_count = 0
            self._pruned_summary = ""

    def set_max_size(self, max_messages: int) -> None:
        with self._lock:
            self._config.max_messages = max_messages
            self._prune_if_needed()

    def set_max_tokens(self, max_tokens: int) -> None:
        with self._lock:
            self._config.max_tokens = max_tokens
            self._prune_if_needed()

    def set_config(self, config: ContextConfig) -> None:
        with self._lock:
            self._config = ContextConfig(
                max_messages=config.max_messages,
                max_tokens=config.max_tokens,
                chars_per_token=config.chars_per_token,
            )
            self._prune_if_needed()

    def set_prune_callback(self, callback: PruneCallback | None) -> None:
        with self._lock:
            self._on_prune = callback

    # ------------------------------------------------------------------
    # Reads (always copies)
    # ------------------------------------------------------------------

    def get_messages(self) -> list[Message]:
        with self._lock:
            return list(self._messages)

    def get_recent_messages(self, n: int) -> list[Message]:
        with self._lock:
            if n <= 0:
                return []
            return list(self._messages[-n:])

    def get_config(self) -> ContextConfig:
        with self._lock:
            return ContextConfig(
                max_messages=self._config.max_messages,
                max_tokens=self._config.max_tokens,
                chars_per_token=self._config.chars_per_token,
            )

    def size(self) -> int:
        with self._lock:
            return len(self._messages)

    def __len__(self) -> int:
        return self.size()

    def estimate_tokens(self) -> int:
        with self._lock:
            return self._total_chars(self._messages) // self._config.chars_per_token

    def get_pruned_summary(self) -> str:
        with self._lock:
            return self._pruned_summary

    def get_pruned_count(self) -> int:
        with self._lock:
            return self._pruned_count

    def stats(self) -> ContextStats:
        with self._lock:
            return ContextStats(
                message_count=len(self._messages),
                user_messages=sum(1 for m in self._messages if m.role == Role.USER),
                assistant_messages=sum(1 for m in self._messages if m.role == Role.ASSISTANT),
                system_messages=sum(1 for m in self._messages if m.role == Role.SYSTEM),
                estimated_tokens=self._total_chars(self._messages) // self._config.chars_per_token,
                pruned_count=self._pruned_count,
                max_messages=self._config.max_messages,
                max_tokens=self._config.max_tokens,
            )

    # ------------------------------------------------------------------
    # Pruning (caller holds the lock)
    # ------------------------------------------------------------------

    @staticmethod
    def _total_chars(messages: list[Message]) -> int:
        return sum(len(m.content) for m in messages)

    def _over_budget(self) -> bool:
        cfg = self._config
        if cfg.max_messages > 0 and len(self._messages) > cfg.max_messages:
            return True
        if cfg.max_tokens > 0:
            return self._total_chars(self._messages) > cfg.max_tokens * cfg.chars_per_token
        return False

    def _prune_if_needed(self) -> None:
        if not self._over_budget():
            return

        cfg = self._config
        system = [m for m in self._messages if m.role == Role.SYSTEM]
        other = [m for m in self._messages if m.role != Role.SYSTEM]
        pruned: list[Message] = []

        # Count ceiling: drop the oldest non-system messages first
        if cfg.max_messages > 0:
            excess = len(system) + len(other) - cfg.max_messages
            if excess > 0:
                pruned.extend(other[:excess])
                other = other[excess:]

        # Token ceiling: newest-first, keep whatever still fits the budget
        if cfg.max_tokens > 0:
            budget = cfg.max_tokens * cfg.chars_per_token - self._total_chars(system)
            keep = [False] * len(other)
            used = 0
            for i in range(len(other) - 1, -1, -1):
                size = len(other[i].content)
                if used + size <= budget:
                    keep[i] = True
                    used += size
            pruned.extend(m for m, k in zip(other, keep) if not k)
            other = [m for m, k in zip(other, keep) if k]

        self._messages = system + other
        if not pruned:
            return

        self._pruned_count += len(pruned)
        self._pruned_summary = summarize_pruned(pruned)
        logger.debug("%s (total pruned: %d)", self._pruned_summary, self._pruned_count)

        callback = self._on_prune
        if callback is not None:
            threading.Thread(
                target=self._run_callback,
                args=(callback, list(pruned), self._pruned_summary),
                name="context-prune-callback",
                daemon=True,
            ).start()

    @staticmethod
    def _run_callback(callback: PruneCallback, pruned: list[Message], summary: str) -> None:
        try:
            callback(pruned, summary)
        except Exception:
            logger.warning("Prune callback failed", exc_info=True)
