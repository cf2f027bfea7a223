"""
Exponential backoff with a cap and jitter, tracked per resource identity.

The delay for the n-th consecutive requeue-in-place of an identity is
``base * 2**n`` (exponent capped at 10), capped at ``max_delay``, with
``±jitter_factor`` random jitter to avoid thundering herds. A real state
transition resets the identity's counter.
"""

import random
from typing import Dict, Optional

MAX_EXPONENT = 10


class Backoff:
    """Per-key exponential backoff."""

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        jitter_factor: float = 0.1,
        rng: Optional[random.Random] = None,
    ):
        if base_delay <= 0 or max_delay < base_delay:
            raise ValueError("Backoff requires 0 < base_delay <= max_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor
        self._rng = rng or random.Random()
        self._attempts: Dict[str, int] = {}

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds for a given zero-based attempt number."""
        delay = min(self.base_delay * (2 ** min(attempt, MAX_EXPONENT)), self.max_delay)
        jitter = 1 + (self._rng.random() * 2 - 1) * self.jitter_factor
        return min(delay * jitter, self.max_delay)

    def next_delay(self, key: str) -> float:
        """Return the delay for the next retry of key and count the attempt."""
        attempt = self._attempts.get(key, 0)
        self._attempts[key] = attempt + 1
        return self.delay_for(attempt)

    def reset(self, key: str) -> None:
        self._attempts.pop(key, None)

    def attempts(self, key: str) -> int:
        return self._attempts.get(key, 0)
