from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable, Optional

from .config import RetryConfiguration
from .errors import TransientBackendError


def default_retry_classifier(exc: Exception) -> bool:
    """Transient backend errors and plain timeouts are retryable."""
    return isinstance(exc, (TransientBackendError, TimeoutError))


@dataclass
class RetryPolicy:
    """Exponential backoff; max_attempts=None retries until success."""

    max_attempts: Optional[int] = None
    initial_backoff_ms: int = 100
    max_backoff_ms: int = 10_000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    classify_retryable: Callable[[Exception], bool] = field(default=default_retry_classifier)

    @classmethod
    def from_config(cls, cfg: RetryConfiguration) -> "RetryPolicy":
        return cls(
            max_attempts=cfg.max_attempts,
            initial_backoff_ms=cfg.initial_backoff_ms,
            max_backoff_ms=cfg.max_backoff_ms,
            backoff_multiplier=cfg.backoff_multiplier,
            jitter=cfg.jitter,
        )

    def should_retry(self, attempt: int) -> bool:
        """attempt is 1-based: the number of attempts already made."""
        return self.max_attempts is None or attempt < self.max_attempts

    def next_backoff_ms(self, attempt: int) -> int:
        delay = self.initial_backoff_ms * (self.backoff_multiplier ** max(0, attempt - 1))
        delay = min(delay, self.max_backoff_ms)
        if self.jitter:
            # 50-100% of the computed delay
            delay = random.uniform(delay / 2, delay)
        return int(delay)
