import random

def backoff_delay(
    attempt: int,
    base_delay_seconds: float = 0.2,
    max_delay_seconds: float = 5.0,
    jitter: bool = True
) -> float:
    """
    Seconds to wait before retrying a transient failure (store round-trip or
    worker signal).

    Formula:
        delay = min(base * (2 ^ attempt), max_delay)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)

    Args:
        attempt: Number of failed attempts so far. attempt=0 means
                 "the first call failed, how long before the second one?"
    """
    if attempt < 0:
        attempt = 0

    # Cap the exponent; the max delay clamps long before this anyway.
    safe_attempt = min(attempt, 20)

    delay = base_delay_seconds * (2 ** safe_attempt)
    if delay > max_delay_seconds:
        delay = max_delay_seconds

    if jitter:
        delay += random.uniform(0, delay * 0.1)

    return delay

def staleness_threshold(
    total_requests: int,
    base_seconds: float,
    per_record_seconds: float,
    max_seconds: float
) -> float:
    """
    How long a processing job may go without an update before recovery acts.

    Grows with the batch size so that large legitimate jobs are not killed
    while the worker is still busy, capped at max_seconds.
    """
    threshold = base_seconds + per_record_seconds * max(total_requests, 0)
    return min(threshold, max_seconds)
