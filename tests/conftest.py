"""
tests/conftest.py — Shared fixtures: settings on tmp_path and simulated clusters

Every cluster here runs against the in-process simulated network, so no ports are bound
and no node binaries are needed. Poll intervals and wait budgets are shrunk so a broken
wait fails in seconds instead of minutes.
"""

from __future__ import annotations

from typing import List

import pytest

from clusterharness.cluster.collection import Cluster
from clusterharness.config.settings import HarnessSettings
from clusterharness.scenarios import new_cluster_with_authorized_key
from clusterharness.sim.network import NodeBehaviour, SimulatedNetwork


@pytest.fixture
def settings(tmp_path) -> HarnessSettings:
    return HarnessSettings(
        log_dir=str(tmp_path / "node_logs"),
        runtime_config_path=str(tmp_path / "config" / "custom_node_runtime_config.toml"),
        poll_interval_ms=10,
        epoch_timeout_s=5,
        active_timeout_s=5,
        voting_timeout_s=5,
        start_timeout_s=5,
        request_timeout_s=5,
    )


@pytest.fixture
async def make_cluster(settings):
    """
    Factory: `network, cluster, key = await make_cluster(n, **network_kwargs)`.
    Every cluster created through it is shut down after the test.
    """
    clusters: List[Cluster] = []

    async def _make(num_nodes: int, *, behaviour: NodeBehaviour = None,
                    is_fault_test: bool = False, **chain_kwargs):
        network = SimulatedNetwork(num_nodes, behaviour=behaviour, **chain_kwargs)
        cluster, key = await new_cluster_with_authorized_key(
            num_nodes, network.launcher(), network.chain, settings,
            is_fault_test=is_fault_test)
        clusters.append(cluster)
        return network, cluster, key

    yield _make

    for cluster in clusters:
        await cluster.shutdown()
