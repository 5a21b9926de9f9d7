"""Exponential backoff policy for re-invocation delays."""

from __future__ import annotations

from dataclasses import dataclass

from .config import HandlerConfig


@dataclass(frozen=True)
class BackoffPolicy:
    """Capped exponential backoff without jitter.

    delay(attempt) = min(base * 2 ** (attempt - 1), maximum), so consecutive
    attempts yield a non-decreasing delay sequence that plateaus at maximum.
    """

    base_seconds: int
    max_seconds: int

    @classmethod
    def from_config(cls, config: HandlerConfig) -> BackoffPolicy:
        return cls(base_seconds=config.backoff_base_seconds, max_seconds=config.backoff_max_seconds)

    def delay_for(self, attempt: int) -> int:
        """Return the delay in seconds for a 1-based attempt number."""
        if attempt < 1:
            return self.base_seconds
        # Stop doubling once past the cap to keep the integer small
        if self.base_seconds * 2 ** min(attempt - 1, 32) >= self.max_seconds:
            return self.max_seconds
        return self.base_seconds * 2 ** (attempt - 1)
