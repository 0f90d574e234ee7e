# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exponential backoff between delivery attempts.

The delay doubles with every failed attempt starting from a five minute
base: 5, 10, 20, 40... minutes for attempts 0, 1, 2, 3. There is no jitter
and no cap, so the schedule is fully deterministic.

Example:
    Computing the next attempt after the first failure::

        from async_mail_scheduler.backoff import retry_delay

        next_ts = now_ts + retry_delay(0)  # 300 seconds later
"""

DEFAULT_BASE_MINUTES = 5


def retry_delay(attempt: int, base_minutes: int = DEFAULT_BASE_MINUTES) -> int:
    """Return the delay in seconds before the next attempt.

    Args:
        attempt: Number of failed attempts before the one that just failed
            (0 for the first failure).
        base_minutes: Delay applied after the first failure.

    Returns:
        Delay in seconds: ``base_minutes * 60 * 2 ** attempt``.

    Raises:
        ValueError: If ``attempt`` is negative or ``base_minutes`` is not positive.
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    if base_minutes <= 0:
        raise ValueError("base_minutes must be > 0")
    return base_minutes * 60 * (2 ** attempt)


def retry_schedule(max_retries: int, base_minutes: int = DEFAULT_BASE_MINUTES) -> list[int]:
    """Return the delays (seconds) applied for ``max_retries`` consecutive failures."""
    return [retry_delay(attempt, base_minutes) for attempt in range(max(0, max_retries))]
