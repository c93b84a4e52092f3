# cutover_engine/deployer/retry.py
"""Backoff helpers for bounded retries inside the state machine."""


def backoff_delay(attempt: int, base_seconds: float, max_seconds: float) -> float:
    """
    Exponential backoff: base, 2*base, 4*base, ... capped at max_seconds.

    Args:
        attempt: 1-based attempt number that just failed
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return min(base_seconds * (2 ** (attempt - 1)), max_seconds)
