"""
errors.py — Harness error taxonomy

Purpose
-------
One exception hierarchy for everything the harness itself treats as a failure.
Callers (tests, the CLI) catch `HarnessError` at the top level; components never
swallow these.

Taxonomy
--------
- Resource-lifecycle  : `NodeStartError`, `NodeStopError`, `NodeInactiveError`
- Liveness / timeout  : `HarnessTimeoutError` (raised by every bounded poll loop)
- Chain surface       : `ChainError`
- Signing verdicts    : `SigningError` (inline assertion of a failed round)

Two conditions are NOT exceptions:
  • Validation errors returned by nodes (wrong payload length, malformed request) are
    structured replies (`transport.models.ErrorReply`) counted by the dispatcher.
  • Cache-consensus disagreement between nodes is logged as a warning only.
"""

from __future__ import annotations


class HarnessError(Exception):
    """Base class for all harness failures."""


class NodeInactiveError(HarnessError):
    """An operation was addressed to a node that has been stopped."""

    def __init__(self, index: int):
        super().__init__(f"node {index} is inactive")
        self.index = index


class NodeStartError(HarnessError):
    """A node process failed to launch or never became ready."""


class NodeStopError(HarnessError):
    """A node process could not be terminated."""


class HarnessTimeoutError(HarnessError):
    """A bounded poll loop exhausted its budget."""

    def __init__(self, what: str, timeout_s: float):
        super().__init__(f"timed out after {timeout_s:.1f}s waiting for {what}")
        self.what = what
        self.timeout_s = timeout_s


class ChainError(HarnessError):
    """The chain / contract surface rejected or failed a call."""


class SigningError(HarnessError):
    """A signing round did not produce a valid, complete outcome."""
