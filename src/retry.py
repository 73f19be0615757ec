"""
pNode Crawler - Retry Policies

A small retry policy value object applied uniformly to any callable,
independent of which RPC is being made:

- max_attempts: total attempts, including the first one
- backoff: function mapping the 1-indexed attempt that just failed to a delay
- is_terminal: predicate marking errors that must never be retried

Usage:
    from retry import RetryPolicy, linear_backoff, retry_call

    policy = RetryPolicy(
        max_attempts=2,
        backoff=linear_backoff(0.5),
        retryable_exceptions=(ProbeTransportError,),
    )
    result = retry_call(fetch_stats, policy, args=(ip,), cancel_event=stop)

Backoff waits on the optional cancel_event, so a cancelled cycle stops
retrying immediately instead of sleeping out its delay.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Base class for errors that should trigger a retry."""
    pass


class NonRetryableError(Exception):
    """Base class for errors that should NOT trigger a retry."""
    pass


class RetryCancelled(Exception):
    """Raised when a cancel event fires while waiting to retry."""

    def __init__(self, last_error: Exception):
        super().__init__(f"Retry cancelled after: {last_error}")
        self.last_error = last_error


def linear_backoff(step: float) -> Callable[[int], float]:
    """Delay of attempt * step seconds."""
    def backoff(attempt: int) -> float:
        return attempt * step
    return backoff


def _never_terminal(_error: Exception) -> bool:
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try, how long to wait, and what not to retry."""

    max_attempts: int = 2
    backoff: Callable[[int], float] = field(default=linear_backoff(0.5))
    is_terminal: Callable[[Exception], bool] = field(default=_never_terminal)
    retryable_exceptions: tuple[type[Exception], ...] = (
        ConnectionError,
        TimeoutError,
        RetryableError,
    )

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def should_retry(self, error: Exception) -> bool:
        if isinstance(error, NonRetryableError) or self.is_terminal(error):
            return False
        return isinstance(error, self.retryable_exceptions)

    def delay_for(self, attempt: int) -> float:
        return max(0.0, self.backoff(attempt))


@dataclass
class RetryStats:
    """Statistics from retry operations."""

    attempts: int = 0
    successes: int = 0
    failures: int = 0
    retries: int = 0
    total_delay: float = 0.0
    last_error: str | None = None

    def record_attempt(self, success: bool, delay: float = 0.0, error: str | None = None):
        """Record an attempt."""
        self.attempts += 1
        if success:
            self.successes += 1
        else:
            self.failures += 1
            self.last_error = error

        if delay > 0:
            self.retries += 1
            self.total_delay += delay


def retry_call(
    func: Callable,
    policy: RetryPolicy,
    args: tuple = (),
    kwargs: dict | None = None,
    cancel_event: threading.Event | None = None,
    stats: RetryStats | None = None,
) -> Any:
    """
    Execute a function under a retry policy.

    Terminal and non-retryable errors propagate immediately; the last
    retryable error propagates once attempts are exhausted. If cancel_event
    is set during a backoff wait, RetryCancelled is raised.
    """
    kwargs = kwargs or {}
    stats = stats if stats is not None else RetryStats()

    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = func(*args, **kwargs)
            stats.record_attempt(success=True)
            return result

        except Exception as e:
            if not policy.should_retry(e) or attempt >= policy.max_attempts:
                stats.record_attempt(success=False, error=str(e))
                raise

            delay = policy.delay_for(attempt)
            stats.record_attempt(success=False, delay=delay, error=str(e))
            logger.debug(
                f"Retry {attempt}/{policy.max_attempts - 1} for "
                f"{getattr(func, '__name__', 'call')} after {delay:.2f}s: {e}"
            )

            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise RetryCancelled(e) from e
            elif delay > 0:
                time.sleep(delay)

    # The loop always returns or raises.
    raise RuntimeError("retry_call exhausted without result")
