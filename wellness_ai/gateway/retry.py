"""Retry policy for transient provider failures.

Backoff strategy:
  delay = min(base * factor^attempt + jitter, max_delay)
  jitter = random(0, base * jitter_ratio)

Defaults: 2s, 4s, 8s, then give up (3 retries). Quota errors are never retried
inline; they go to the durability queue. Each retry re-enters admission
control, so it consumes quota like any other call.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from wellness_ai.gateway.errors import GatewayError


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 2.0
    factor: float = 2.0
    max_delay: float = 60.0
    jitter_ratio: float = 0.0  # 0.5 adds up to half the base delay

    def should_retry(self, error: GatewayError, retries_done: int) -> bool:
        """True if another attempt is allowed after ``retries_done`` retries."""
        return error.retryable and retries_done < self.max_retries

    def delay_for(self, retries_done: int) -> float:
        """Delay before retry number ``retries_done + 1``."""
        exponential = self.base_delay * (self.factor**retries_done)
        jitter = random.uniform(0, self.base_delay * self.jitter_ratio) if self.jitter_ratio else 0.0
        return min(exponential + jitter, self.max_delay)
