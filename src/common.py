"""Common utilities and types for stack orchestration."""

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class DriverError(Exception):
    """Base class for errors raised by stack-driver."""


class RunCancelled(DriverError):
    """The run was aborted while this operation was in flight."""


class ReadinessTimeoutError(DriverError, TimeoutError):
    """A bounded wait expired before the resource reported ready."""

    def __init__(self, what: str, timeout: float):
        super().__init__(f"{what} not ready after {timeout:g}s")
        self.what = what
        self.timeout = timeout


def poll_until(
    check: Callable[[], Optional[T]],
    what: str,
    timeout: float,
    interval: float,
    cancel: Optional[threading.Event] = None,
) -> T:
    """Call check() every interval seconds until it returns a non-None value.

    The cancel event doubles as the sleep primitive so an abort wakes the
    loop at once instead of after a full interval.

    Args:
        check: Callable returning None while waiting, a value once done.
            Exceptions raised by check propagate unchanged.
        what: Description used in timeout/cancel messages
        timeout: Maximum seconds to wait
        interval: Seconds between polls
        cancel: Optional cooperative cancellation flag

    Returns:
        The first non-None value returned by check

    Raises:
        ReadinessTimeoutError: If timeout expires first
        RunCancelled: If cancel is set before check succeeds
    """
    deadline = time.monotonic() + timeout
    while True:
        if cancel is not None and cancel.is_set():
            raise RunCancelled(f"Cancelled while waiting for {what}")
        result = check()
        if result is not None:
            return result
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.error(f"Timeout waiting for {what}")
            raise ReadinessTimeoutError(what, timeout)
        logger.debug(f"{what} not ready, retrying in {interval}s...")
        pause = min(interval, remaining)
        if cancel is not None:
            cancel.wait(pause)
        else:
            time.sleep(pause)
