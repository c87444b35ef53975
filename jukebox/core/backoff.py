from __future__ import annotations

import random

RETRY_JITTER_RATIO = 0.25


def retry_backoff_seconds(
    *,
    next_retry_attempt: int,
    base_seconds: float,
    backoff_max_seconds: float,
) -> float:
    """Exponential delay for the n-th retry (1-based), capped and jittered."""
    safe_retry_attempt = max(1, int(next_retry_attempt))
    safe_base_seconds = max(0.0, float(base_seconds))
    safe_backoff_max_seconds = max(0.0, float(backoff_max_seconds))

    base_delay = min(
        safe_backoff_max_seconds,
        safe_base_seconds * 2 ** (safe_retry_attempt - 1),
    )
    max_jitter = max(0.0, base_delay * RETRY_JITTER_RATIO)
    jitter = random.uniform(0.0, max_jitter) if max_jitter > 0 else 0.0
    return min(safe_backoff_max_seconds, base_delay + jitter)
