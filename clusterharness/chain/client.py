"""
chain/client.py — Chain / contract surface used by the harness

Purpose
-------
Everything the harness needs from the chain, as one pluggable async interface so the
rest of the system (fault controller, dispatcher, scenarios) depends on a stable surface
while the backend is swapped:

  • `Web3ChainClient` (chain/web3_client.py): a real dev chain (Anvil/Hardhat) over
    JSON-RPC with the staking + key NFT contracts deployed.
  • `SimulatedChain` (sim/network.py): in-process stand-in for CI.

The harness treats all values as opaque: epochs are only compared, addresses only
passed back in.
"""

from __future__ import annotations

import abc
import enum
from dataclasses import dataclass
from typing import List, Sequence


class KickReason(enum.IntEnum):
    UNRESPONSIVE = 1
    BAD_ATTESTATION = 2
    INCORRECT_INFO = 3


class NetworkState(enum.IntEnum):
    ACTIVE = 0
    NEXT_VALIDATOR_SET_LOCKED = 1
    READY_FOR_NEXT_EPOCH = 2
    UNLOCKED = 3
    PAUSED = 4


@dataclass(frozen=True)
class NodeAccount:
    """On-chain identity of one node (side table entry, same index as the node)."""
    staker_address: str
    node_address: str


@dataclass(frozen=True)
class VotingStatus:
    votes: int
    kicked: bool


@dataclass(frozen=True)
class MintedKey:
    pubkey: str
    token_id: int


class ChainClient(abc.ABC):
    # --- Epoch / time -----------------------------------------------------------------------

    @abc.abstractmethod
    async def get_current_epoch(self) -> int: ...

    @abc.abstractmethod
    async def get_network_state(self) -> NetworkState: ...

    @abc.abstractmethod
    async def increase_timestamp(self, seconds: int) -> None:
        """Move the chain clock forward and mine a block at the new time."""

    # --- Validators / eviction --------------------------------------------------------------

    @abc.abstractmethod
    async def node_accounts(self, count: int) -> List[NodeAccount]:
        """Identities of the first `count` validators, in node order."""

    @abc.abstractmethod
    async def vote_to_kick(self, voter: str, target: str, reason: KickReason) -> None: ...

    @abc.abstractmethod
    async def voting_status(self, epoch: int, target: str, voter: str) -> VotingStatus:
        """Votes against `target` in `epoch` and whether it has been kicked."""

    # --- Keys -------------------------------------------------------------------------------

    @abc.abstractmethod
    async def mint_next_key(self) -> MintedKey: ...

    @abc.abstractmethod
    async def add_permitted_address(self, token_id: int, address: str,
                                    scopes: Sequence[int] = (1,)) -> None: ...

    @abc.abstractmethod
    async def is_permitted_address(self, token_id: int, address: str) -> bool: ...

    @abc.abstractmethod
    async def get_permitted_addresses(self, token_id: int) -> List[str]:
        """Every address allowed to sign with `token_id`."""

    @abc.abstractmethod
    async def get_eth_address(self, token_id: int) -> str: ...

    async def aclose(self) -> None:
        """Release connections (default: nothing to release)."""
