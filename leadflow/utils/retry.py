from __future__ import annotations

import random
from datetime import datetime, timedelta


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


def next_retry_at(
    now: datetime,
    attempt: int,
    interval_minutes: float,
    exponential: bool = False,
) -> datetime:
    """Return when the next attempt of a node may run.

    With ``exponential`` the interval is scaled by ``compute_backoff`` for the
    attempt that just failed; otherwise the interval is fixed.
    """
    minutes = interval_minutes
    if exponential:
        minutes = interval_minutes * compute_backoff(max(attempt - 1, 0), jitter=0.0)
    return now + timedelta(minutes=minutes)
