"""Retry backoff policy for failed runs."""

RETRY_BASE_DELAY_SECONDS = 30
RETRY_MAX_DELAY_SECONDS = 900  # 15 minutes


def retry_delay_seconds(attempt_count: int) -> int:
    """
    Delay before a failed run becomes eligible again.

    30s after the first attempt, doubling per attempt, capped at 15 minutes.
    Deterministic: no jitter.
    """
    exponent = max(0, attempt_count - 1)
    delay = RETRY_BASE_DELAY_SECONDS * (2 ** min(exponent, 32))
    return min(delay, RETRY_MAX_DELAY_SECONDS)
