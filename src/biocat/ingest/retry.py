"""
Retry policy for outbound requests.

A policy bundles how many attempts to make, how long to wait between them
and which errors are worth another attempt. The page fetcher receives one
at construction time instead of hard-coding its own loop.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Backoff = Callable[[int], float]


def fixed_backoff(delay: float) -> Backoff:
    """Same wait before every retry."""
    def _backoff(attempt: int) -> float:
        return float(delay)
    return _backoff


def exponential_backoff(base: float = 1.0, cap: float = 30.0) -> Backoff:
    """``base * 2 ** (attempt - 1)`` seconds, never more than ``cap``."""
    def _backoff(attempt: int) -> float:
        return float(min(base * (2 ** max(attempt - 1, 0)), cap))
    return _backoff


def _never_retry(error: Exception) -> bool:
    return False


@dataclass
class RetryPolicy:
    """
    Retry settings injected into the page fetcher.

    Attributes:
        max_attempts: Total attempts including the first; None retries forever.
        backoff: Maps the 1-based number of the failed attempt to a wait in seconds.
        is_retryable: Classifies an exception as transient (True) or fatal (False).
    """
    max_attempts: Optional[int] = 3
    backoff: Backoff = field(default_factory=lambda: fixed_backoff(1.0))
    is_retryable: Callable[[Exception], bool] = _never_retry

    def __post_init__(self):
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_config(cls, config: Dict[str, Any],
                    is_retryable: Callable[[Exception], bool] = _never_retry) -> "RetryPolicy":
        """Build a policy from the ``retry`` configuration section."""
        strategy = str(config.get("strategy", "fixed")).lower()
        delay = float(config.get("delay_seconds", 1.0))
        if strategy == "fixed":
            backoff = fixed_backoff(delay)
        elif strategy == "exponential":
            backoff = exponential_backoff(delay, float(config.get("max_delay_seconds", 30)))
        else:
            raise ValueError(f"Unknown retry strategy: {strategy!r}")
        return cls(
            max_attempts=config.get("max_attempts", 3),
            backoff=backoff,
            is_retryable=is_retryable,
        )

    def longest_delay(self) -> float:
        """Longest single wait this policy will ever sleep."""
        if self.max_attempts is None:
            # unbounded: sample enough attempts to reach any cap
            return max(self.backoff(a) for a in range(1, 64))
        if self.max_attempts <= 1:
            return 0.0
        return max(self.backoff(a) for a in range(1, self.max_attempts))

    def call(self, fn: Callable[[], T], description: str = "request",
             sleep: Callable[[float], None] = time.sleep) -> T:
        """
        Run ``fn`` until it succeeds, a non-retryable error occurs, or
        attempts run out. The last error is re-raised unchanged.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                if self.max_attempts is not None and attempt >= self.max_attempts:
                    logger.error(f"Giving up on {description} after {attempt} attempts: {e}")
                    raise
                wait_time = self.backoff(attempt)
                limit = self.max_attempts if self.max_attempts is not None else "inf"
                logger.warning(
                    f"{description} failed: {e}; retrying in {wait_time:.1f}s "
                    f"(attempt {attempt + 1}/{limit})"
                )
                sleep(wait_time)
