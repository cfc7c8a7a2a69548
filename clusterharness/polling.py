"""Bounded async poll loop shared by cluster start-up and the fault controller."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import HarnessTimeoutError

LOG = logging.getLogger(__name__)

T = TypeVar("T")


async def poll_until(
    check: Callable[[], Awaitable[Optional[T]]],
    *,
    timeout_s: float,
    interval_s: float,
    what: str,
) -> T:
    """
    Await `check()` every `interval_s` until it returns something other than `None` or
    `False`, and return that value (a legitimate 0 counts as success).

    The budget is wall-clock; once `timeout_s` has elapsed without success the loop
    raises `HarnessTimeoutError`. `check` runs at least once.
    """
    deadline = time.monotonic() + timeout_s
    attempts = 0
    while True:
        attempts += 1
        result = await check()
        if result is not None and result is not False:
            LOG.debug("%s satisfied after %d checks", what, attempts)
            return result
        if time.monotonic() >= deadline:
            raise HarnessTimeoutError(what, timeout_s)
        await asyncio.sleep(interval_s)
