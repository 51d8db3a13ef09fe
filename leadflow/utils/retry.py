from __future__ import annotations

import random


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff multiplier with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)
