"""Bounded retry with a constant delay.

Every polling operation (DHCP lease lookups, SSH readiness) goes through
retry_after(). Only TransientError is retried; any other exception is
terminal and propagates at once.
"""

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from hyperkit_machine._logging import get_logger
from hyperkit_machine.exceptions import TransientError

logger = get_logger(__name__)

T = TypeVar("T")


def retry_after(
    attempts: int,
    callback: Callable[[], T],
    delay: float,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``callback`` until it returns, sleeping ``delay`` seconds between attempts.

    Args:
        attempts: Maximum number of calls (>= 1).
        callback: Zero-argument operation. Raise a TransientError subclass to
            request another attempt.
        delay: Constant inter-attempt delay in seconds (no backoff).
        sleep: Sleep function (test seam).

    Returns:
        The callback's return value from the first successful attempt.

    Raises:
        TransientError: The last attempt's error once the budget is exhausted.
        Exception: Any non-transient error, unchanged, on the attempt that raised it.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1 (got {attempts})")

    for attempt in Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(delay),
        retry=retry_if_exception_type(TransientError),
        before_sleep=before_sleep_log(logger, logging.DEBUG),
        sleep=sleep,
        reraise=True,
    ):
        with attempt:
            return callback()

    # Unreachable: Retrying either returns or raises
    raise AssertionError("Unreachable: Retrying exhausted without exception")
