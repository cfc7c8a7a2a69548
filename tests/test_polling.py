"""
tests/test_polling.py — Bounded poll loop
"""

from __future__ import annotations

import pytest

from clusterharness.errors import HarnessTimeoutError
from clusterharness.polling import poll_until


async def test_returns_first_satisfying_value():
    """The loop returns the first value that is neither None nor False."""
    seen = []

    async def check():
        seen.append(1)
        return len(seen) if len(seen) >= 3 else None

    assert await poll_until(check, timeout_s=1, interval_s=0, what="three checks") == 3


async def test_zero_counts_as_satisfied():
    """A legitimate 0 (e.g. epoch or count) ends the wait instead of looping on."""
    async def check():
        return 0

    assert await poll_until(check, timeout_s=1, interval_s=0, what="zero") == 0


async def test_times_out():
    """A check that never succeeds raises HarnessTimeoutError naming what was awaited."""
    async def never():
        return False

    with pytest.raises(HarnessTimeoutError, match="waiting for the impossible") as exc:
        await poll_until(never, timeout_s=0.05, interval_s=0.01, what="the impossible")
    assert exc.value.timeout_s == 0.05
