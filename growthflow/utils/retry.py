from __future__ import annotations

import random


def compute_backoff(attempt: int, base_ms: int, max_ms: int) -> int:
    """Exponential backoff in milliseconds, capped at ``max_ms``."""
    delay = base_ms * (2 ** max(attempt, 0))
    return int(min(max_ms, delay))


def random_interval(min_ms: int, max_ms: int) -> int:
    """Uniform random delay between the two bounds (inclusive)."""
    low, high = sorted((int(min_ms), int(max_ms)))
    return int(random.uniform(low, high))
