"""Bounded retries with jittered exponential backoff for file I/O."""

from __future__ import annotations

import asyncio
import errno
import logging
import random
from collections.abc import Callable
from typing import TypeVar

from memoranda.config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_ERRNOS = {errno.EBUSY, errno.EAGAIN, errno.EINTR, errno.ETIMEDOUT}


def is_transient(exc: BaseException) -> bool:
    """Whether an OS error is worth retrying (locks, timeouts, interrupts)."""
    if isinstance(exc, (FileNotFoundError, IsADirectoryError, NotADirectoryError)):
        return False
    if isinstance(exc, (PermissionError, TimeoutError, InterruptedError, BlockingIOError)):
        return True
    if isinstance(exc, OSError):
        return exc.errno in _TRANSIENT_ERRNOS
    return False


async def retry_io(
    func: Callable[..., T],
    *args,
    config: RetryConfig | None = None,
    operation: str = "io",
) -> T:
    """Run blocking ``func(*args)`` in a worker thread, retrying transient errors.

    Non-transient errors and the last transient one propagate unchanged.
    """
    config = config or RetryConfig()
    delay = config.initial_delay
    attempt = 1
    while True:
        try:
            return await asyncio.to_thread(func, *args)
        except OSError as e:
            if attempt >= config.attempts or not is_transient(e):
                raise
            jitter = random.uniform(0, delay * config.jitter)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.0f ms",
                operation,
                attempt,
                config.attempts,
                e,
                (delay + jitter) * 1000,
            )
            await asyncio.sleep(delay + jitter)
            delay = min(delay * config.multiplier, config.max_delay)
            attempt += 1
