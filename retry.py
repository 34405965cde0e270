# retry.py
"""Backoff retry and bounded polling, both on top of tenacity.

Every mutating call in the executor goes through ``with_backoff``. Long waits
(instance RUNNING, node registration) go through ``poll_until``. Neither has a
cancellation path other than process termination.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from errors import is_transient

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 5
    base_delay: float = 1.0
    poll_interval: float = 10.0
    poll_attempts: int = 30
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)


def with_backoff(
    fn: Callable[[], T],
    attempts: int = 5,
    base_delay: float = 1.0,
    retryable: Callable[[BaseException], bool] = is_transient,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` until it succeeds, doubling the delay after each retryable error.

    Non-retryable errors propagate immediately. When attempts run out the
    tenacity ``RetryError`` is raised; its ``last_attempt`` holds the final error.
    """
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=base_delay, exp_base=2),
        retry=retry_if_exception(retryable),
        sleep=sleep,
    )
    return retrying(fn)


def poll_until(
    probe: Callable[[], Any],
    done: Callable[[Any], bool],
    interval: float = 10.0,
    attempts: int = 30,
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[Any]:
    """Run ``probe`` at a fixed interval until ``done(result)``.

    Returns the last result when done, ``None`` on timeout.
    """
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(interval),
        retry=retry_if_result(lambda r: not done(r)),
        sleep=sleep,
    )
    try:
        return retrying(probe)
    except RetryError:
        return None
