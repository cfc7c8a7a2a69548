"""
tests/test_chain.py — Chain surface: simulated chain rules and web3 client guards
"""

from __future__ import annotations

import pytest

from clusterharness.chain.client import KickReason, NetworkState
from clusterharness.chain.web3_client import Web3ChainClient
from clusterharness.config.settings import HarnessSettings
from clusterharness.dispatch.keys import mint_key_with_permitted_address, new_wallet
from clusterharness.errors import ChainError
from clusterharness.sim.network import SimulatedChain


class ForgetfulChain(SimulatedChain):
    """Accepts the permission transaction but never records it."""

    async def add_permitted_address(self, token_id, address, scopes=(1,)):
        return None


async def test_mint_and_permit():
    """A minted key permits exactly the wallet it was minted for."""
    chain = SimulatedChain(3)
    wallet = new_wallet()

    minted = await mint_key_with_permitted_address(chain, wallet.address)

    assert minted.pubkey.startswith("0x04") and len(minted.pubkey) == 2 + 130
    assert await chain.is_permitted_address(minted.token_id, wallet.address)
    assert not await chain.is_permitted_address(minted.token_id, new_wallet().address)
    assert (await chain.get_eth_address(minted.token_id)).startswith("0x")


async def test_permitted_addresses_list_the_wallet():
    """A fresh key permits exactly its wallet, listed in checksum form."""
    chain = SimulatedChain(3)
    wallet = new_wallet()

    minted = await mint_key_with_permitted_address(chain, wallet.address.lower())

    assert await chain.get_permitted_addresses(minted.token_id) == [wallet.address]
    assert await chain.get_permitted_addresses(minted.token_id + 1) == []


async def test_mint_fails_when_permission_does_not_stick():
    """If the read-back does not show the wallet, minting raises ChainError."""
    chain = ForgetfulChain(3)

    with pytest.raises(ChainError, match="not among the permitted addresses"):
        await mint_key_with_permitted_address(chain, new_wallet().address)


async def test_eviction_needs_quorum_and_advances_epoch():
    """
    4 validators, kick threshold 3:
      - 2 votes → not kicked, network stays active
      - 3rd vote → kicked, validator set locks, next epoch drops the target
    """
    chain = SimulatedChain(4)
    accounts = await chain.node_accounts(4)
    target = accounts[3].staker_address

    for voter in accounts[:2]:
        await chain.vote_to_kick(voter.staker_address, target, KickReason.BAD_ATTESTATION)
    assert not (await chain.voting_status(1, target, accounts[0].staker_address)).kicked
    assert await chain.get_network_state() == NetworkState.ACTIVE

    await chain.vote_to_kick(accounts[2].staker_address, target, KickReason.BAD_ATTESTATION)
    assert (await chain.voting_status(1, target, accounts[0].staker_address)).kicked
    assert await chain.get_network_state() == NetworkState.NEXT_VALIDATOR_SET_LOCKED

    assert await chain.get_current_epoch() == 2
    assert target not in chain.validators


async def test_vote_from_outsider_rejected():
    """Non-validators cannot vote, and asking for more accounts than exist fails."""
    chain = SimulatedChain(3)
    accounts = await chain.node_accounts(3)
    with pytest.raises(ChainError):
        await chain.vote_to_kick(new_wallet().address, accounts[0].staker_address,
                                 KickReason.UNRESPONSIVE)
    with pytest.raises(ChainError):
        await chain.node_accounts(4)


async def test_time_advance_crosses_epoch_boundary():
    """The epoch rolls over exactly when chain time reaches the epoch length."""
    chain = SimulatedChain(3, epoch_length_s=100)
    await chain.increase_timestamp(99)
    assert await chain.get_current_epoch() == 1
    await chain.increase_timestamp(1)
    assert await chain.get_current_epoch() == 2


async def test_web3_client_requires_contract_addresses():
    """Missing contract addresses raise a ChainError naming the contract, before any RPC."""
    client = Web3ChainClient(HarnessSettings())
    with pytest.raises(ChainError, match="staking contract address is not configured"):
        await client.get_current_epoch()
    with pytest.raises(ChainError, match="PKP NFT"):
        await client.get_eth_address(1)
