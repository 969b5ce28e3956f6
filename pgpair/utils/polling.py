"""
Bounded poll-until-condition helper.
"""

import time
from typing import Callable, Optional, TypeVar

from ..exceptions import ConvergenceTimeout

T = TypeVar("T")


def wait_until(
    probe: Callable[[], Optional[T]],
    timeout: float,
    interval: float = 1.0,
    description: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic
) -> T:
    """
    Call probe until it returns a truthy value or timeout expires.

    Exceptions raised by probe count as a failed attempt.

    Args:
        probe: Callable returning a truthy value once the condition holds
        timeout: Maximum wait time in seconds
        interval: Delay between attempts in seconds
        description: Used in the timeout error message
        sleep: Sleep function (injectable for tests)
        clock: Monotonic clock (injectable for tests)

    Returns:
        The first truthy value returned by probe

    Raises:
        ConvergenceTimeout: If the condition never held within timeout
    """
    deadline = clock() + timeout
    last_error: Optional[Exception] = None
    while True:
        try:
            value = probe()
            if value:
                return value
        except Exception as e:
            last_error = e

        if clock() >= deadline:
            break
        sleep(interval)

    message = f"Timeout after {timeout}s waiting for {description}"
    if last_error is not None:
        message += f": {last_error}"
    raise ConvergenceTimeout(message)
