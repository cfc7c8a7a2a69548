"""
faults/controller.py — Fault & epoch controller

Purpose
-------
Mutate cluster membership and chain state, then block (bounded) until the network shows
the expected, externally observable result:

  • kill_node(i)        stop node i, have a quorum of the remaining nodes vote it out,
                        wait until the chain reports it kicked
  • advance_time(s)     move the simulated chain clock forward (crosses epoch boundaries
                        deterministically instead of waiting out real epoch lengths)
  • wait_for_epoch(e)   poll the epoch counter until it reaches e; this also waits out the
                        nodes' internal key refresh, which the harness treats as opaque
  • wait_for_active()   poll every active node until all report active again

Every wait is a bounded poll loop (see `polling.poll_until`); running out of budget
raises `HarnessTimeoutError`, which tests must treat as fatal. Nothing here retries
beyond its own loop.

Tunable / Config
----------------
HarnessSettings: poll_interval_ms, epoch_timeout_s, active_timeout_s, voting_timeout_s.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..chain.client import KickReason, NodeAccount, VotingStatus
from ..cluster.collection import Cluster
from ..errors import HarnessError
from ..polling import poll_until

LOG = logging.getLogger(__name__)

PEER_REFRESH_MS = 2000


def default_votes_required(remaining: int) -> int:
    """Two-thirds-plus-one of the remaining nodes, never more than there are."""
    return min(remaining, (2 * remaining) // 3 + 1)


class FaultController:
    def __init__(self, cluster: Cluster):
        self.cluster = cluster
        self.chain = cluster.chain
        self.settings = cluster.settings

    async def sleep_millis(self, ms: int) -> None:
        await asyncio.sleep(ms / 1000.0)

    # --- Node faults ------------------------------------------------------------------------

    async def kill_node(self, index: int, votes_required: Optional[int] = None,
                        reason: KickReason = KickReason.BAD_ATTESTATION) -> int:
        """
        Stop node `index` and drive its eviction.

        Votes are cast from the staker identities of the first `votes_required` remaining
        active nodes. Refuses (HarnessError, nothing stopped) when `index` is the only
        active node. Returns the epoch that was current when the node was stopped, so the
        caller can `wait_for_epoch(returned + 1)`.
        """
        self.cluster.active_node(index)
        remaining = [i for i in self.cluster.active_indices() if i != index]
        if not remaining:
            raise HarnessError(
                f"node {index} is the last active node; no validator is left to vote it out")

        self.cluster.stop_node(index)
        epoch = await self.chain.get_current_epoch()
        target = self.cluster.accounts[index]

        honest = [self.cluster.accounts[i] for i in remaining]
        if votes_required is None:
            votes_required = default_votes_required(len(honest))
        voters = honest[:votes_required]
        LOG.info("node %d down in epoch %d; %d of %d remaining nodes vote to kick %s",
                 index, epoch, len(voters), len(honest), target.staker_address)

        for voter in voters:
            await self.chain.vote_to_kick(voter.staker_address, target.staker_address, reason)

        await self.wait_for_voting_status_to_kick_validator(
            epoch, target, honest[0], votes_required)
        LOG.info("Faulty node %d is kicked", index)
        return epoch

    async def wait_for_voting_status_to_kick_validator(
        self,
        epoch: int,
        target: NodeAccount,
        voter: NodeAccount,
        votes_required: int,
    ) -> VotingStatus:
        async def kicked() -> Optional[VotingStatus]:
            status = await self.chain.voting_status(epoch, target.staker_address,
                                                    voter.staker_address)
            LOG.debug("voting status for %s: %s", target.staker_address, status)
            if status.kicked or status.votes >= votes_required:
                return status
            return None

        return await poll_until(kicked, timeout_s=self.settings.voting_timeout_s,
                                interval_s=self.settings.poll_interval_s,
                                what=f"eviction of {target.staker_address}")

    # --- Time / epochs ----------------------------------------------------------------------

    async def advance_time(self, seconds: int) -> None:
        await self.chain.increase_timestamp(seconds)

    async def wait_for_epoch(self, target_epoch: int) -> int:
        async def reached() -> Optional[int]:
            epoch = await self.chain.get_current_epoch()
            return epoch if epoch >= target_epoch else None

        epoch = await poll_until(reached, timeout_s=self.settings.epoch_timeout_s,
                                 interval_s=self.settings.poll_interval_s,
                                 what=f"epoch {target_epoch}")
        LOG.info("network reached epoch %d", epoch)
        return epoch

    async def wait_for_active(self) -> None:
        client = self.cluster.client

        async def all_active() -> bool:
            addresses = self.cluster.ports()
            states = await asyncio.gather(*(client.is_active(a) for a in addresses))
            return all(states)

        await poll_until(all_active, timeout_s=self.settings.active_timeout_s,
                         interval_s=self.settings.poll_interval_s,
                         what="all active nodes to report active")
        LOG.info("all %d active nodes report active", len(self.cluster.ports()))
