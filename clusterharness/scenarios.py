"""
scenarios.py — Reusable end-to-end test flows

Each flow drives a running Cluster through one behaviour the network must keep under
fault and membership churn. Flows return what they observed; they fail only by raising
(`SigningError` from inline assertions, `HarnessTimeoutError` from waits), so tests can
assert on the returned values without re-implementing the choreography.

  • new_cluster_with_authorized_key   start a cluster, mint a key, permit a fresh wallet
  • simple_single_sign                one fixed message, sequential, asserted inline
  • sign_across_epoch_change          sign, let the epoch roll over, sign again
  • sign_when_node_drops              sign, kill + evict one node, sign with the rest
  • check_wrong_length_rejected       send a non-32-byte payload, count length errors
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .chain.client import ChainClient
from .cluster.collection import Cluster, start_cluster
from .cluster.launcher import NodeLauncher
from .config.runtime import ChainMode, NodeRuntimeConfig
from .config.settings import HarnessSettings
from .dispatch.keys import mint_key_with_permitted_address, new_wallet
from .dispatch.signing import (LENGTH_ERROR_TEXT, DispatchOutcome, SigningKey, SigningPlan,
                               build_signing_request, count_validation_errors, dispatch,
                               send_signing_requests)
from .faults.controller import PEER_REFRESH_MS, FaultController

LOG = logging.getLogger(__name__)

SINGLE_SIGN_MESSAGE = "Hello world, this is a test message"
EPOCH_ADVANCE_SECONDS = 300


@dataclass
class EpochChangeResult:
    before: DispatchOutcome
    after: DispatchOutcome
    epoch_before: int
    epoch_after: int


@dataclass
class NodeDropResult:
    before: DispatchOutcome
    after: DispatchOutcome
    killed: int
    epoch_before: int
    epoch_after: int
    replies_after: int


async def new_cluster_with_authorized_key(
    num_nodes: int,
    launcher: NodeLauncher,
    chain: ChainClient,
    settings: HarnessSettings,
    *,
    is_fault_test: bool = False,
    chain_mode: ChainMode = ChainMode.ANVIL,
    runtime_config: Optional[NodeRuntimeConfig] = None,
) -> Tuple[Cluster, SigningKey]:
    cluster = await start_cluster(num_nodes, launcher, chain, settings,
                                  is_fault_test=is_fault_test, chain_mode=chain_mode,
                                  runtime_config=runtime_config)
    try:
        wallet = new_wallet()
        minted = await mint_key_with_permitted_address(chain, wallet.address)
    except BaseException:
        await cluster.shutdown()
        raise
    LOG.info("minted key %s (token %d) for %s", minted.pubkey, minted.token_id,
             wallet.address)
    return cluster, SigningKey(pubkey=minted.pubkey, token_id=minted.token_id, wallet=wallet)


async def simple_single_sign(cluster: Cluster, key: SigningKey,
                             message: str = SINGLE_SIGN_MESSAGE) -> DispatchOutcome:
    return await dispatch(cluster, key, SigningPlan(messages=1, message=message))


async def sign_across_epoch_change(cluster: Cluster, key: SigningKey,
                                   advance_seconds: int = EPOCH_ADVANCE_SECONDS
                                   ) -> EpochChangeResult:
    faults = FaultController(cluster)
    before = await dispatch(cluster, key, SigningPlan())
    epoch_before = await cluster.chain.get_current_epoch()

    await faults.wait_for_active()
    await faults.sleep_millis(PEER_REFRESH_MS)
    await faults.advance_time(advance_seconds)
    epoch_after = await faults.wait_for_epoch(epoch_before + 1)
    await faults.wait_for_active()

    after = await dispatch(cluster, key, SigningPlan())
    return EpochChangeResult(before, after, epoch_before, epoch_after)


async def sign_when_node_drops(cluster: Cluster, key: SigningKey, node_to_kill: int = 3,
                               votes_required: Optional[int] = 3) -> NodeDropResult:
    faults = FaultController(cluster)
    before = await dispatch(cluster, key, SigningPlan())

    epoch_before = await faults.kill_node(node_to_kill, votes_required)
    epoch_after = await faults.wait_for_epoch(epoch_before + 1)

    after = await dispatch(cluster, key, SigningPlan())
    replies = after.rounds[-1].responses if after.rounds else 0
    LOG.info("after dropping node %d: %d replies", node_to_kill, replies)
    return NodeDropResult(before, after, node_to_kill, epoch_before, epoch_after, replies)


async def check_wrong_length_rejected(cluster: Cluster, key: SigningKey,
                                      payload: bytes = b"\x01\x02\x03\x04"
                                      ) -> Tuple[int, int, List[str]]:
    """Return (matching error count, responders, unexpected error details)."""
    request = await build_signing_request(cluster, key, payload)
    bodies = await send_signing_requests(cluster, request)
    tally = count_validation_errors(bodies, LENGTH_ERROR_TEXT)
    LOG.info("%d of %d nodes rejected a %d-byte payload", tally.matching, tally.responded,
             len(payload))
    return tally.matching, tally.responded, tally.other_details
