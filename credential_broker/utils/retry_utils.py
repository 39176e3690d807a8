"""
Retry helpers shared by background jobs.
"""

import random


def calculate_exponential_backoff(
    retry_count: int,
    base_delay: int = 1,
    max_delay: int = 300,
    multiplier: float = 2.0,
    jitter: bool = True,
) -> int:
    """
    Calculate exponential backoff delay with jitter.

    Args:
        retry_count: Current retry attempt (0-based)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds
        multiplier: Exponential multiplier
        jitter: Whether to add +/-25% randomization to spread retries

    Returns:
        Delay in seconds before next retry, never below base_delay nor above max_delay

    Example (base_delay=30, no jitter):
        retry_count=0: 30s
        retry_count=1: 60s
        retry_count=2: 120s
        retry_count=6: 1800s (with max_delay=1800)
    """
    if retry_count < 0:
        return base_delay

    delay = min(base_delay * (multiplier**retry_count), max_delay)

    if jitter:
        jitter_range = delay * 0.25
        delay = delay + random.uniform(-jitter_range, jitter_range)

    return min(max(int(delay), base_delay), max_delay)
