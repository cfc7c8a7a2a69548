"""
cluster/node.py — Node Handle and log cursor

A `NodeHandle` is the harness's reference to one running node: where it listens, where
its log goes, and how to stop it. The Cluster owns handles; nothing else stops a node.

`LogCursor` is an explicit byte offset into a node's append-only log file. Cursors are
private to whoever created them, so concurrent observers never share read position.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Protocol

from ..errors import NodeInactiveError, NodeStopError

LOG = logging.getLogger(__name__)


class NodeProcess(Protocol):
    """What a launcher hands back for each node it starts."""

    @property
    def running(self) -> bool: ...

    def stop(self) -> None: ...


class LogCursor:
    """
    Tailing reader over an append-only text file.

    The file is opened lazily on first read; a file that does not exist yet reads as
    empty. Only complete lines are returned; a trailing partial line stays unread until
    its newline arrives.
    """

    def __init__(self, path: str):
        self.path = path
        self.offset = 0

    def _size(self) -> int:
        try:
            return os.path.getsize(self.path)
        except FileNotFoundError:
            return 0

    def rebase(self) -> None:
        """Skip everything written so far. Never moves the offset backwards."""
        self.offset = max(self.offset, self._size())

    def read_new_lines(self) -> List[str]:
        try:
            with open(self.path, "rb") as f:
                f.seek(self.offset)
                chunk = f.read()
        except FileNotFoundError:
            return []
        end = chunk.rfind(b"\n")
        if end < 0:
            return []
        complete = chunk[: end + 1]
        self.offset += len(complete)
        return complete.decode("utf-8", errors="replace").splitlines()


@dataclass
class NodeHandle:
    index: int
    host: str
    port: int
    log_path: str
    process: Optional[NodeProcess] = None
    active: bool = True

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def url(self) -> str:
        return f"http://{self.address}"

    def new_log_cursor(self) -> LogCursor:
        """A fresh cursor nobody else holds."""
        return LogCursor(self.log_path)

    def require_active(self) -> None:
        if not self.active:
            raise NodeInactiveError(self.index)

    def stop(self) -> None:
        """Terminate the node process and mark the handle inactive."""
        self.require_active()
        if self.process is not None:
            try:
                self.process.stop()
            except (OSError, subprocess.SubprocessError) as e:
                raise NodeStopError(f"failed to stop node {self.index}: {e}") from e
        self.active = False
        LOG.info("node %d (%s) stopped", self.index, self.address)
