"""
tests/test_launcher.py — Subprocess launcher, start-up failures and shutdown

Covers:
  • a subprocess node writes to its log and stops cleanly
  • a failed start tears down every launched node, whatever the failure
    (readiness timeout, an RPC error from the chain, cancellation)
  • shutdown keeps stopping nodes past a failing one and always closes connections
"""

from __future__ import annotations

import asyncio
import dataclasses
import subprocess
import sys
import time

import pytest

from clusterharness.cluster.collection import Cluster, start_cluster
from clusterharness.cluster.launcher import SubprocessLauncher
from clusterharness.cluster.node import NodeHandle
from clusterharness.errors import NodeStartError, NodeStopError
from clusterharness.sim.network import SimulatedChain, SimulatedNetwork
from clusterharness.transport.client import NodeClient

NODE_SCRIPT = ("import os, sys, time; "
               "print('node', os.environ['NODE_INDEX'], sys.argv[1], flush=True); "
               "time.sleep(30)")
SLEEPER = [sys.executable, "-c", "import time; time.sleep(30)"]


class UnreachableChain(SimulatedChain):
    """Chain whose identity lookup fails with a non-harness error."""

    def __init__(self, num_validators: int, error: BaseException):
        super().__init__(num_validators)
        self.error = error

    async def node_accounts(self, count):
        raise self.error


class ClosingChain(SimulatedChain):
    closed = False

    async def aclose(self) -> None:
        self.closed = True


class FakeProcess:
    def __init__(self, error: Exception = None):
        self.error = error
        self.stopped = False

    @property
    def running(self) -> bool:
        return not self.stopped

    def stop(self) -> None:
        if self.error is not None:
            raise self.error
        self.stopped = True


def tracking(launcher):
    """Record every process `launcher` spawns."""
    spawned = []
    original = launcher.launch

    def tracking_launch(*args, **kwargs):
        proc = original(*args, **kwargs)
        spawned.append(proc)
        return proc

    launcher.launch = tracking_launch
    return spawned


def test_subprocess_launch_and_stop(tmp_path):
    """The command template is formatted per node and its output lands in the node log."""
    launcher = SubprocessLauncher([sys.executable, "-c", NODE_SCRIPT, "--port={port}"])
    log = tmp_path / "logs" / "node_2.log"

    node = launcher.launch(2, "127.0.0.1", 7472, str(log), str(tmp_path / "cfg.toml"))
    try:
        assert node.running
        deadline = time.monotonic() + 10
        while "node 2" not in log.read_text() and time.monotonic() < deadline:
            time.sleep(0.05)
        assert "node 2 --port=7472" in log.read_text()
    finally:
        node.stop()
    assert not node.running


def test_unspawnable_command_raises(tmp_path):
    """A missing binary surfaces as NodeStartError, not a raw OSError."""
    launcher = SubprocessLauncher([str(tmp_path / "no-such-binary")])
    with pytest.raises(NodeStartError):
        launcher.launch(0, "127.0.0.1", 7470, str(tmp_path / "n.log"), "cfg.toml")


async def test_start_cluster_tears_down_nodes_that_never_get_ready(settings):
    """Nothing answers the status route of a bare subprocess, so readiness times out."""
    settings = dataclasses.replace(settings, start_timeout_s=0.2, base_port=1)
    launcher = SubprocessLauncher(SLEEPER)
    spawned = tracking(launcher)

    with pytest.raises(NodeStartError, match="2 nodes to become ready"):
        await start_cluster(2, launcher, SimulatedChain(2), settings)
    assert len(spawned) == 2
    assert not any(p.running for p in spawned)


async def test_start_cluster_tears_down_nodes_when_chain_lookup_fails(settings, monkeypatch):
    """
    Nodes come up, then reading their on-chain identities fails with a plain RuntimeError:
      - the error propagates unchanged
      - no spawned process is left running
    """
    async def always_active(self, address):
        return True

    monkeypatch.setattr(NodeClient, "is_active", always_active)
    launcher = SubprocessLauncher(SLEEPER)
    spawned = tracking(launcher)
    chain = UnreachableChain(2, RuntimeError("rpc connection reset"))

    with pytest.raises(RuntimeError, match="rpc connection reset"):
        await start_cluster(2, launcher, chain, settings)
    assert len(spawned) == 2
    assert not any(p.running for p in spawned)


async def test_start_cluster_tears_down_nodes_when_cancelled(settings):
    """Cancellation during start-up stops every simulated node before it propagates."""
    network = SimulatedNetwork(3)
    chain = UnreachableChain(3, asyncio.CancelledError())

    with pytest.raises(asyncio.CancelledError):
        await start_cluster(3, network.launcher(), chain, settings)
    assert len(network.nodes) == 3
    assert not any(node.running for node in network.nodes.values())


async def test_shutdown_continues_past_a_node_that_will_not_stop(settings):
    """
    Node 0 ignores SIGTERM and SIGKILL (wait times out):
      - shutdown still stops nodes 1 and 2
      - the node client and the chain client are closed
      - the failure surfaces as NodeStopError after everything is released
    """
    stuck = FakeProcess(subprocess.TimeoutExpired(cmd="lit_node", timeout=10))
    others = [FakeProcess(), FakeProcess()]
    handles = [NodeHandle(index=i, host="127.0.0.1", port=7470 + i,
                          log_path=str(i), process=p)
               for i, p in enumerate([stuck] + others)]
    chain = ClosingChain(3)
    client = NodeClient()
    cluster = Cluster(handles, [], client, chain, settings)

    with pytest.raises(NodeStopError, match="node 0"):
        await cluster.shutdown()

    assert all(p.stopped for p in others)
    assert [h.active for h in handles] == [True, False, False]
    assert chain.closed
    assert client._client.is_closed

    await cluster.shutdown()
