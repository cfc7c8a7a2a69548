"""
chain/web3_client.py — `ChainClient` over a local EVM dev chain (Anvil / Hardhat)

Overview
--------
Talks JSON-RPC through `web3`'s `AsyncWeb3` to three already-deployed contracts:

  • Staking         : epoch(), state(), getValidatorsInCurrentEpoch(), validators(),
                      voteToKickValidatorInNextEpoch(), getVotingStatusToKickValidator()
  • PKP NFT         : mintCost(), mintNext(), getPubkey(), getEthAddress(), balanceOf(),
                      tokenOfOwnerByIndex()
  • PKP Permissions : addPermittedAddress(), isPermittedAddress(), getPermittedAddresses()

Only the ABI fragments actually called are declared here. Deployment is somebody else's
job; pass the addresses via HarnessSettings (HARNESS_STAKING_ADDRESS, HARNESS_PKP_ADDRESS,
HARNESS_PKP_PERMISSIONS_ADDRESS).

Dev-chain assumptions
---------------------
- Time travel uses `evm_increaseTime` followed by `evm_mine`.
- Votes are sent "from" the voter's staker address; the client impersonates it with
  `anvil_impersonateAccount` (Hardhat: `hardhat_impersonateAccount`).
- Minting and permission changes are sent from the first unlocked account (deployer).
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from web3 import AsyncWeb3
from web3.exceptions import Web3Exception

from ..config.settings import HarnessSettings
from ..errors import ChainError
from .client import (ChainClient, KickReason, MintedKey, NetworkState, NodeAccount,
                     VotingStatus)

LOG = logging.getLogger(__name__)

ECDSA_KEY_TYPE = 2

STAKING_ABI = [
    {"name": "epoch", "type": "function", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "tuple", "components": [
         {"name": "epochLength", "type": "uint256"},
         {"name": "number", "type": "uint256"},
         {"name": "endTime", "type": "uint256"},
         {"name": "retries", "type": "uint256"},
         {"name": "timeout", "type": "uint256"}]}]},
    {"name": "state", "type": "function", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "uint8"}]},
    {"name": "getValidatorsInCurrentEpoch", "type": "function", "stateMutability": "view",
     "inputs": [], "outputs": [{"name": "", "type": "address[]"}]},
    {"name": "validators", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "staker", "type": "address"}],
     "outputs": [{"name": "ip", "type": "uint32"},
                 {"name": "ipv6", "type": "uint128"},
                 {"name": "port", "type": "uint32"},
                 {"name": "nodeAddress", "type": "address"},
                 {"name": "reward", "type": "uint256"},
                 {"name": "senderPubKey", "type": "uint256"},
                 {"name": "receiverPubKey", "type": "uint256"}]},
    {"name": "voteToKickValidatorInNextEpoch", "type": "function",
     "stateMutability": "nonpayable",
     "inputs": [{"name": "validatorStakerAddress", "type": "address"},
                {"name": "reason", "type": "uint256"},
                {"name": "data", "type": "bytes"}],
     "outputs": []},
    {"name": "getVotingStatusToKickValidator", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "epochNumber", "type": "uint256"},
                {"name": "validatorStakerAddress", "type": "address"},
                {"name": "voterStakerAddress", "type": "address"}],
     "outputs": [{"name": "", "type": "uint256"}, {"name": "", "type": "bool"}]},
]

PKP_NFT_ABI = [
    {"name": "mintCost", "type": "function", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "mintNext", "type": "function", "stateMutability": "payable",
     "inputs": [{"name": "keyType", "type": "uint256"}],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "getPubkey", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "tokenId", "type": "uint256"}],
     "outputs": [{"name": "", "type": "bytes"}]},
    {"name": "getEthAddress", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "tokenId", "type": "uint256"}],
     "outputs": [{"name": "", "type": "address"}]},
    {"name": "balanceOf", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "tokenOfOwnerByIndex", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}, {"name": "index", "type": "uint256"}],
     "outputs": [{"name": "", "type": "uint256"}]},
]

PKP_PERMISSIONS_ABI = [
    {"name": "addPermittedAddress", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "tokenId", "type": "uint256"},
                {"name": "user", "type": "address"},
                {"name": "scopes", "type": "uint256[]"}],
     "outputs": []},
    {"name": "isPermittedAddress", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "tokenId", "type": "uint256"}, {"name": "user", "type": "address"}],
     "outputs": [{"name": "", "type": "bool"}]},
    {"name": "getPermittedAddresses", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "tokenId", "type": "uint256"}],
     "outputs": [{"name": "", "type": "address[]"}]},
]


def _require(address: Optional[str], what: str) -> str:
    if not address:
        raise ChainError(f"{what} contract address is not configured")
    return AsyncWeb3.to_checksum_address(address)


class Web3ChainClient(ChainClient):
    def __init__(self, settings: HarnessSettings,
                 impersonate_method: str = "anvil_impersonateAccount"):
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(settings.chain_rpc_url))
        self.impersonate_method = impersonate_method
        self._staking_address = settings.staking_address
        self._pkp_address = settings.pkp_address
        self._permissions_address = settings.pkp_permissions_address

    @property
    def staking(self):
        return self.w3.eth.contract(
            address=_require(self._staking_address, "staking"), abi=STAKING_ABI)

    @property
    def pkp_nft(self):
        return self.w3.eth.contract(
            address=_require(self._pkp_address, "PKP NFT"), abi=PKP_NFT_ABI)

    @property
    def pkp_permissions(self):
        return self.w3.eth.contract(
            address=_require(self._permissions_address, "PKP permissions"),
            abi=PKP_PERMISSIONS_ABI)

    async def _deployer(self) -> str:
        accounts = await self.w3.eth.accounts
        if not accounts:
            raise ChainError("chain exposes no unlocked accounts")
        return accounts[0]

    async def _transact(self, fn, tx: dict) -> None:
        try:
            tx_hash = await fn.transact(tx)
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash)
        except Web3Exception as e:
            raise ChainError(str(e)) from e
        if receipt["status"] != 1:
            raise ChainError(f"transaction {tx_hash.hex()} reverted")

    async def _call(self, fn):
        try:
            return await fn.call()
        except Web3Exception as e:
            raise ChainError(str(e)) from e

    # --- Epoch / time -----------------------------------------------------------------------

    async def get_current_epoch(self) -> int:
        epoch = await self._call(self.staking.functions.epoch())
        return int(epoch[1])

    async def get_network_state(self) -> NetworkState:
        return NetworkState(int(await self._call(self.staking.functions.state())))

    async def increase_timestamp(self, seconds: int) -> None:
        await self.w3.provider.make_request("evm_increaseTime", [int(seconds)])
        await self.w3.provider.make_request("evm_mine", [])
        LOG.info("advanced chain clock by %ds", seconds)

    # --- Validators / eviction --------------------------------------------------------------

    async def node_accounts(self, count: int) -> List[NodeAccount]:
        stakers = await self._call(self.staking.functions.getValidatorsInCurrentEpoch())
        if len(stakers) < count:
            raise ChainError(f"chain knows {len(stakers)} validators, need {count}")
        accounts = []
        for staker in stakers[:count]:
            v = await self._call(self.staking.functions.validators(staker))
            accounts.append(NodeAccount(staker_address=staker, node_address=v[3]))
        return accounts

    async def vote_to_kick(self, voter: str, target: str, reason: KickReason) -> None:
        voter = AsyncWeb3.to_checksum_address(voter)
        await self.w3.provider.make_request(self.impersonate_method, [voter])
        await self._transact(
            self.staking.functions.voteToKickValidatorInNextEpoch(
                AsyncWeb3.to_checksum_address(target), int(reason), b""),
            {"from": voter})

    async def voting_status(self, epoch: int, target: str, voter: str) -> VotingStatus:
        votes, kicked = await self._call(
            self.staking.functions.getVotingStatusToKickValidator(
                epoch, AsyncWeb3.to_checksum_address(target),
                AsyncWeb3.to_checksum_address(voter)))
        return VotingStatus(votes=int(votes), kicked=bool(kicked))

    # --- Keys -------------------------------------------------------------------------------

    async def mint_next_key(self) -> MintedKey:
        deployer = await self._deployer()
        cost = await self._call(self.pkp_nft.functions.mintCost())
        await self._transact(self.pkp_nft.functions.mintNext(ECDSA_KEY_TYPE),
                             {"from": deployer, "value": cost})
        balance = await self._call(self.pkp_nft.functions.balanceOf(deployer))
        token_id = await self._call(
            self.pkp_nft.functions.tokenOfOwnerByIndex(deployer, balance - 1))
        pubkey = await self._call(self.pkp_nft.functions.getPubkey(token_id))
        LOG.info("minted key token_id=%s", token_id)
        return MintedKey(pubkey="0x" + bytes(pubkey).hex(), token_id=int(token_id))

    async def add_permitted_address(self, token_id: int, address: str,
                                    scopes: Sequence[int] = (1,)) -> None:
        deployer = await self._deployer()
        await self._transact(
            self.pkp_permissions.functions.addPermittedAddress(
                token_id, AsyncWeb3.to_checksum_address(address), list(scopes)),
            {"from": deployer})

    async def is_permitted_address(self, token_id: int, address: str) -> bool:
        return bool(await self._call(self.pkp_permissions.functions.isPermittedAddress(
            token_id, AsyncWeb3.to_checksum_address(address))))

    async def get_permitted_addresses(self, token_id: int) -> List[str]:
        addresses = await self._call(
            self.pkp_permissions.functions.getPermittedAddresses(token_id))
        return [AsyncWeb3.to_checksum_address(a) for a in addresses]

    async def get_eth_address(self, token_id: int) -> str:
        return await self._call(self.pkp_nft.functions.getEthAddress(token_id))

    async def aclose(self) -> None:
        provider = self.w3.provider
        if hasattr(provider, "disconnect"):
            await provider.disconnect()
