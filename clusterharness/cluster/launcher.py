"""
cluster/launcher.py — How node processes come into existence

Purpose
-------
Spawning a node is an external concern (binary layout, wallets, contract deployment all
live elsewhere). The Cluster only needs something that, given an index, a bind address,
a log path and the runtime config path, returns a handle it can later `stop()`.

Launchers
---------
- `SubprocessLauncher` : runs a command template per node, appending stdout/stderr to
                         the node's log file (the stream the cache observer tails).
- `SimulatedLauncher`  : in-process simulated nodes, see `sim/network.py`.

Command template placeholders: {index} {host} {port} {config} {log}
Example:
  SubprocessLauncher(["./lit_node", "--port", "{port}", "--config", "{config}"])

Each child also gets NODE_INDEX / NODE_PORT / NODE_CONFIG_PATH in its environment.
"""

from __future__ import annotations

import abc
import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import httpx

from ..errors import NodeStartError
from .node import NodeProcess

LOG = logging.getLogger(__name__)

STOP_GRACE_SECONDS = 10


class NodeLauncher(abc.ABC):
    @abc.abstractmethod
    def launch(self, index: int, host: str, port: int, log_path: str,
               config_path: str) -> NodeProcess:
        """Start node `index`; raise `NodeStartError` if it cannot be spawned."""

    def client_mounts(self) -> Dict[str, httpx.AsyncBaseTransport]:
        """Transports the node client must use to reach launched nodes (default: none)."""
        return {}


class SubprocessNode:
    def __init__(self, proc: subprocess.Popen, log_file):
        self._proc = proc
        self._log_file = log_file

    @property
    def running(self) -> bool:
        return self._proc.poll() is None

    @property
    def pid(self) -> int:
        return self._proc.pid

    def stop(self) -> None:
        try:
            if self.running:
                self._proc.terminate()
                try:
                    self._proc.wait(timeout=STOP_GRACE_SECONDS)
                except subprocess.TimeoutExpired:
                    LOG.warning("pid %d ignored SIGTERM, killing", self._proc.pid)
                    self._proc.kill()
                    self._proc.wait(timeout=STOP_GRACE_SECONDS)
        finally:
            self._log_file.close()


class SubprocessLauncher(NodeLauncher):
    def __init__(self, command: List[str], env: Optional[Mapping[str, str]] = None,
                 cwd: Optional[str] = None):
        self.command = command
        self.env = dict(env or {})
        self.cwd = cwd

    def launch(self, index: int, host: str, port: int, log_path: str,
               config_path: str) -> NodeProcess:
        fields = {"index": index, "host": host, "port": port,
                  "config": config_path, "log": log_path}
        argv = [part.format(**fields) for part in self.command]
        env = dict(os.environ)
        env.update(self.env)
        env.update({"NODE_INDEX": str(index), "NODE_PORT": str(port),
                    "NODE_CONFIG_PATH": config_path})

        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        log_file = open(log_path, "ab")
        try:
            proc = subprocess.Popen(argv, stdout=log_file, stderr=subprocess.STDOUT,
                                    env=env, cwd=self.cwd)
        except OSError as e:
            log_file.close()
            raise NodeStartError(f"could not spawn node {index}: {e}") from e
        LOG.info("spawned node %d pid=%d: %s", index, proc.pid, " ".join(argv))
        return SubprocessNode(proc, log_file)
