"""
cluster/collection.py — Cluster lifecycle manager

Overview
--------
`start_cluster(n, launcher, chain, ...)` writes the per-test runtime config, launches
`n` nodes, waits until every one of them answers its status route, reads the nodes'
on-chain identities, and returns a `Cluster`.

A `Cluster` is an ordered list of `NodeHandle`s (index == node number) plus a side table
of `NodeAccount`s used as eviction-vote targets. Stopped nodes keep their slot so their
logs stay readable, but they drop out of `ports()` and refuse new work.

Resource policy
---------------
- Only the Cluster stops nodes (`stop_node`, `shutdown`).
- Use `async with cluster:` (or call `shutdown()` in a `finally`) so every node that is
  still running is terminated on every exit path, including failed assertions.
- If start-up fails half way, whatever was launched is torn down before the error
  propagates; there is no partial-cluster continuation.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import List, Optional, Sequence

from ..chain.client import ChainClient, NodeAccount
from ..config.runtime import ChainMode, NodeRuntimeConfig, generate_node_runtime_config
from ..config.settings import HarnessSettings
from ..errors import HarnessError, HarnessTimeoutError, NodeStartError
from ..polling import poll_until
from ..transport.client import NodeClient
from .launcher import NodeLauncher
from .node import NodeHandle

LOG = logging.getLogger(__name__)


class Cluster:
    def __init__(self, nodes: List[NodeHandle], accounts: List[NodeAccount],
                 client: NodeClient, chain: ChainClient, settings: HarnessSettings):
        self.nodes = nodes
        self.accounts = accounts
        self.client = client
        self.chain = chain
        self.settings = settings
        self._closed = False

    def __len__(self) -> int:
        return len(self.nodes)

    async def __aenter__(self) -> "Cluster":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # --- Addressing -------------------------------------------------------------------------

    def node(self, index: int) -> NodeHandle:
        """Handle for node `index`, stopped or not (for log reads)."""
        return self.nodes[index]

    def active_node(self, index: int) -> NodeHandle:
        handle = self.nodes[index]
        handle.require_active()
        return handle

    def active_indices(self) -> List[int]:
        return [n.index for n in self.nodes if n.active]

    def active_nodes(self) -> List[NodeHandle]:
        return [n for n in self.nodes if n.active]

    def ports(self) -> List[str]:
        """Addresses of active nodes, in cluster order."""
        return [n.address for n in self.nodes if n.active]

    def all_ports(self) -> List[str]:
        return [n.address for n in self.nodes]

    def active_addresses(self, addresses: Sequence[str]) -> List[str]:
        """
        Check that every address belongs to an active node of this cluster.

        Raises NodeInactiveError for a stopped node and KeyError for an address the
        cluster never launched; no request is sent in either case.
        """
        by_address = {n.address: n for n in self.nodes}
        for address in addresses:
            if address not in by_address:
                raise KeyError(f"no node of this cluster listens on {address}")
            by_address[address].require_active()
        return list(addresses)

    # --- Membership -------------------------------------------------------------------------

    def stop_node(self, index: int) -> None:
        """Stop exactly one node; a second stop of the same index raises NodeInactiveError."""
        self.nodes[index].stop()

    async def shutdown(self) -> None:
        """Stop every node still running and release connections. Idempotent."""
        if self._closed:
            return
        self._closed = True
        try:
            first_error = _stop_handles(self.nodes)
        finally:
            try:
                await self.client.aclose()
            finally:
                await self.chain.aclose()
        LOG.info("cluster of %d nodes shut down", len(self.nodes))
        if first_error is not None:
            raise first_error


def _stop_handles(handles: List[NodeHandle]) -> Optional[HarnessError]:
    """Stop every still-active handle; keep going past failures and return the first."""
    first_error: Optional[HarnessError] = None
    for handle in handles:
        if not handle.active:
            continue
        try:
            handle.stop()
        except HarnessError as e:
            LOG.error("%s", e)
            first_error = first_error or e
    return first_error


# --- Start-up ------------------------------------------------------------------------------------

async def start_cluster(
    num_nodes: int,
    launcher: NodeLauncher,
    chain: ChainClient,
    settings: HarnessSettings,
    *,
    is_fault_test: bool = False,
    chain_mode: ChainMode = ChainMode.ANVIL,
    runtime_config: Optional[NodeRuntimeConfig] = None,
) -> Cluster:
    """
    Provision `num_nodes` nodes and return once all report ready.

    Raises:
      NodeStartError if a node cannot be spawned or is not ready within
      `settings.start_timeout_s`. Already-launched nodes are stopped first, on
      every failure path (including cancellation), before the error propagates.
    """
    if num_nodes <= 0:
        raise ValueError("num_nodes must be positive")

    config_path = generate_node_runtime_config(
        is_fault_test, chain_mode, runtime_config, path=settings.runtime_config_path)

    nodes: List[NodeHandle] = []
    client: Optional[NodeClient] = None
    try:
        for i in range(num_nodes):
            port = settings.base_port + i
            log_path = os.path.join(settings.log_dir, f"node_{i}.log")
            process = launcher.launch(i, settings.node_host, port, log_path, str(config_path))
            nodes.append(NodeHandle(index=i, host=settings.node_host, port=port,
                                    log_path=log_path, process=process))

        client = NodeClient(timeout_s=settings.request_timeout_s,
                            mounts=launcher.client_mounts())

        async def all_ready() -> bool:
            states = await asyncio.gather(*(client.is_active(n.address) for n in nodes))
            return all(states)

        await poll_until(all_ready, timeout_s=settings.start_timeout_s,
                         interval_s=settings.poll_interval_s,
                         what=f"{num_nodes} nodes to become ready")
        accounts = await chain.node_accounts(num_nodes)
    except BaseException as e:
        _stop_handles(nodes)
        if client is not None:
            await client.aclose()
        if isinstance(e, HarnessTimeoutError):
            raise NodeStartError(str(e)) from e
        raise

    LOG.info("cluster up: %s", ", ".join(n.address for n in nodes))
    return Cluster(nodes, accounts, client, chain, settings)
