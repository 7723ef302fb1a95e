"""Bounded exponential backoff for downstream side effects."""

from __future__ import annotations

from datetime import datetime, timedelta


def backoff_delay(attempts: int, base_seconds: float, max_seconds: float) -> float:
    """Seconds to wait before the next try after *attempts* failures."""
    if attempts <= 0:
        return 0.0
    return min(base_seconds * (2 ** (attempts - 1)), max_seconds)


def next_attempt_at(now: datetime, attempts: int, base_seconds: float, max_seconds: float) -> datetime:
    return now + timedelta(seconds=backoff_delay(attempts, base_seconds, max_seconds))
