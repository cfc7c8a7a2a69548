"""
sim/network.py — In-process simulated signing network (chain + nodes)

Purpose
-------
A stand-in for the real node binaries and dev chain so the harness can be exercised end
to end in CI and from the CLI. It models only what the harness can observe:

  • SimulatedChain  : epoch counter, clock, validator set, eviction votes, key registry,
                      permitted addresses (implements `ChainClient`)
  • SimulatedNode   : liveness, a Beaver-triple pool that produces cache hit/miss log
                      lines, a short "key refresh" window after each epoch change
  • SimulatedLauncher : mounts one FastAPI app per node on an `httpx.ASGITransport`,
                      keyed by the node's http://host:port, so the harness reaches nodes
                      exactly as it would over the network

Security & Ops
--------------
- This is NOT threshold cryptography. Every node holds the full key and returns a full
  ECDSA signature; the point is to exercise orchestration, not the protocol.
- Keys are derived deterministically from the network seed. Never use them for anything.

Tunable / Config
----------------
- pool_size          : triples each node starts with (hits until exhausted, then misses)
- refill_per_status  : triples added on every status poll (models background pregen)
- dkg_status_polls   : status polls a node reports inactive after an epoch change
- epoch_lag_reads    : epoch reads before a pending epoch change becomes visible
- epoch_length_s     : simulated seconds per epoch (advance_time crosses boundaries)
- votes_to_kick      : eviction threshold (default: 2/3+1 of the other validators)
"""

from __future__ import annotations

import logging
import os
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

import httpx
from eth_account import Account
from eth_keys import keys
from eth_utils import keccak, to_checksum_address

from ..chain.client import (ChainClient, KickReason, MintedKey, NetworkState, NodeAccount,
                            VotingStatus)
from ..cluster.launcher import NodeLauncher
from ..dispatch.keys import verify_auth_sig
from ..dispatch.signing import LENGTH_ERROR_TEXT
from ..errors import ChainError
from ..faults.controller import default_votes_required
from ..transport.models import (ErrorReply, NodeStatus, Signature, SigningReply,
                                SigningRequest)
from .node_app import create_node_app

LOG = logging.getLogger(__name__)

CACHE_HIT_LINE = "BT Cache Hit: using pregenerated triple ({left} left)"
CACHE_MISS_LINE = "BT Cache Miss: generating triple on demand"


# --- Chain ---------------------------------------------------------------------------------------

class SimulatedChain(ChainClient):
    def __init__(self, num_validators: int, *, seed: int = 0, epoch_length_s: int = 300,
                 votes_to_kick: Optional[int] = None, epoch_lag_reads: int = 0):
        self.seed = seed
        self.epoch = 1
        self.clock = 0
        self.epoch_length_s = epoch_length_s
        self.next_epoch_at = epoch_length_s
        self.epoch_lag_reads = epoch_lag_reads
        self.votes_to_kick = votes_to_kick or default_votes_required(num_validators - 1)

        self.accounts: List[NodeAccount] = []
        for i in range(num_validators):
            staker = Account.from_key(keccak(text=f"staker-{seed}-{i}"))
            node = Account.from_key(keccak(text=f"node-{seed}-{i}"))
            self.accounts.append(NodeAccount(staker.address, node.address))
        self.validators: Set[str] = {a.staker_address for a in self.accounts}
        self.kicked: Set[str] = set()
        self.votes: Dict[Tuple[int, str], Set[str]] = defaultdict(set)

        self._pending_reads: Optional[int] = None
        self._listeners: List[Callable[[int], None]] = []

        self._keys: Dict[int, keys.PrivateKey] = {}
        self._token_by_pubkey: Dict[str, int] = {}
        self._permitted: Dict[int, Set[str]] = defaultdict(set)

    def subscribe(self, listener: Callable[[int], None]) -> None:
        """Call `listener(new_epoch)` on every epoch change."""
        self._listeners.append(listener)

    def _schedule_epoch_change(self) -> None:
        if self._pending_reads is None:
            self._pending_reads = self.epoch_lag_reads

    def _advance_epoch(self) -> None:
        self._pending_reads = None
        self.validators -= self.kicked
        self.epoch += 1
        LOG.info("simulated chain entered epoch %d with %d validators",
                 self.epoch, len(self.validators))
        for listener in self._listeners:
            listener(self.epoch)

    def is_validator(self, staker: str) -> bool:
        return staker in self.validators and staker not in self.kicked

    # --- Epoch / time -----------------------------------------------------------------------

    async def get_current_epoch(self) -> int:
        if self._pending_reads is not None:
            if self._pending_reads <= 0:
                self._advance_epoch()
            else:
                self._pending_reads -= 1
        return self.epoch

    async def get_network_state(self) -> NetworkState:
        if self._pending_reads is not None:
            return NetworkState.NEXT_VALIDATOR_SET_LOCKED
        return NetworkState.ACTIVE

    async def increase_timestamp(self, seconds: int) -> None:
        self.clock += seconds
        if self.clock >= self.next_epoch_at:
            while self.next_epoch_at <= self.clock:
                self.next_epoch_at += self.epoch_length_s
            self._schedule_epoch_change()

    # --- Validators / eviction --------------------------------------------------------------

    async def node_accounts(self, count: int) -> List[NodeAccount]:
        if count > len(self.accounts):
            raise ChainError(f"chain knows {len(self.accounts)} validators, need {count}")
        return self.accounts[:count]

    async def vote_to_kick(self, voter: str, target: str, reason: KickReason) -> None:
        if not self.is_validator(voter):
            raise ChainError(f"{voter} is not an active validator")
        if target not in self.validators:
            raise ChainError(f"{target} is not a validator")
        ballot = self.votes[(self.epoch, target)]
        ballot.add(voter)
        LOG.info("vote %d/%d to kick %s (reason %s)", len(ballot), self.votes_to_kick,
                 target, reason.name)
        if len(ballot) >= self.votes_to_kick and target not in self.kicked:
            self.kicked.add(target)
            self._schedule_epoch_change()

    async def voting_status(self, epoch: int, target: str, voter: str) -> VotingStatus:
        return VotingStatus(votes=len(self.votes.get((epoch, target), ())),
                            kicked=target in self.kicked)

    # --- Keys -------------------------------------------------------------------------------

    async def mint_next_key(self) -> MintedKey:
        token_id = len(self._keys) + 1
        priv = keys.PrivateKey(keccak(text=f"pkp-{self.seed}-{token_id}"))
        pubkey = "0x04" + priv.public_key.to_bytes().hex()
        self._keys[token_id] = priv
        self._token_by_pubkey[pubkey.lower()] = token_id
        return MintedKey(pubkey=pubkey, token_id=token_id)

    async def add_permitted_address(self, token_id: int, address: str,
                                    scopes: Sequence[int] = (1,)) -> None:
        if token_id not in self._keys:
            raise ChainError(f"unknown token {token_id}")
        self._permitted[token_id].add(to_checksum_address(address))

    def permits(self, token_id: int, address: str) -> bool:
        return to_checksum_address(address) in self._permitted.get(token_id, set())

    async def is_permitted_address(self, token_id: int, address: str) -> bool:
        return self.permits(token_id, address)

    async def get_permitted_addresses(self, token_id: int) -> List[str]:
        return sorted(self._permitted.get(token_id, set()))

    async def get_eth_address(self, token_id: int) -> str:
        return self._keys[token_id].public_key.to_checksum_address()

    def key_for(self, pubkey: str) -> Optional[Tuple[int, keys.PrivateKey]]:
        token_id = self._token_by_pubkey.get(pubkey.lower())
        if token_id is None:
            return None
        return token_id, self._keys[token_id]


# --- Nodes ---------------------------------------------------------------------------------------

@dataclass
class NodeBehaviour:
    pool_size: int = 0
    refill_per_status: int = 0
    dkg_status_polls: int = 0


class SimulatedNode:
    def __init__(self, index: int, chain: SimulatedChain, log_path: str,
                 behaviour: NodeBehaviour):
        self.index = index
        self.chain = chain
        self.account = chain.accounts[index]
        self.behaviour = behaviour
        self.triples = behaviour.pool_size
        self._stopped = False
        self._inactive_polls = 0

        self.log = logging.getLogger(f"{__name__}.node{index}")
        self.log.setLevel(logging.INFO)
        self.log.propagate = False
        self._handler = logging.FileHandler(log_path, encoding="utf-8")
        self._handler.setFormatter(logging.Formatter(
            f"%(asctime)s %(levelname)s node{index}: %(message)s"))
        self.log.addHandler(self._handler)
        chain.subscribe(self.on_epoch_change)
        self.log.info("node %d started as %s", index, self.account.staker_address)

    # NodeProcess
    @property
    def running(self) -> bool:
        return not self._stopped

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self.log.info("node %d shutting down", self.index)
        self.log.removeHandler(self._handler)
        self._handler.close()

    def on_epoch_change(self, epoch: int) -> None:
        if self._stopped:
            return
        self._inactive_polls = self.behaviour.dkg_status_polls
        self.log.info("epoch %d: refreshing key shares", epoch)

    def status(self) -> NodeStatus:
        if self._inactive_polls > 0:
            self._inactive_polls -= 1
            active = False
        else:
            active = self.running and self.chain.is_validator(self.account.staker_address)
        self.triples += self.behaviour.refill_per_status
        return NodeStatus(active=active, epoch=self.chain.epoch, index=self.index)

    def sign(self, request: SigningRequest) -> Tuple[int, dict]:
        """Return (http_status, body) for one signing request."""
        if self._stopped:
            return 503, _error("Unavailable", "node is shut down")
        if len(request.to_sign) != 32:
            return 400, _error("Validation", LENGTH_ERROR_TEXT)
        if not self.chain.is_validator(self.account.staker_address):
            return 503, _error("Unavailable", "node is not in the active validator set")
        if request.epoch not in (self.chain.epoch, self.chain.epoch - 1):
            return 400, _error("Validation", f"Invalid epoch {request.epoch}")
        if not verify_auth_sig(request.auth_sig):
            return 401, _error("Unauthorized", "Invalid auth sig")
        found = self.chain.key_for(request.pubkey)
        if found is None:
            return 404, _error("NotFound", f"Unknown key {request.pubkey}")
        token_id, priv = found
        if not self.chain.permits(token_id, request.auth_sig.address):
            return 401, _error("Unauthorized", "Address is not permitted to sign with key")

        if self.triples > 0:
            self.triples -= 1
            self.log.info(CACHE_HIT_LINE.format(left=self.triples))
        else:
            self.log.info(CACHE_MISS_LINE)

        digest = bytes(request.to_sign)
        sig = priv.sign_msg_hash(digest)
        reply = SigningReply(
            signed_data="0x" + digest.hex(),
            signature=Signature(r=hex(sig.r), s=hex(sig.s), recid=sig.v),
            public_key=request.pubkey,
            share_index=self.index,
        )
        self.log.info("signed 0x%s with token %d", digest.hex(), token_id)
        return 200, reply.to_wire()


def _error(kind: str, detail: str) -> dict:
    return ErrorReply(error_kind=kind, message=detail, details=[detail]).to_wire()


# --- Network + launcher --------------------------------------------------------------------------

class SimulatedNetwork:
    def __init__(self, num_nodes: int, *, seed: int = 0,
                 behaviour: Optional[NodeBehaviour] = None, **chain_kwargs):
        self.chain = SimulatedChain(num_nodes, seed=seed, **chain_kwargs)
        self.behaviour = behaviour or NodeBehaviour()
        self.nodes: Dict[int, SimulatedNode] = {}

    def launcher(self) -> "SimulatedLauncher":
        return SimulatedLauncher(self)


class SimulatedLauncher(NodeLauncher):
    def __init__(self, network: SimulatedNetwork):
        self.network = network
        self._mounts: Dict[str, httpx.AsyncBaseTransport] = {}

    def launch(self, index: int, host: str, port: int, log_path: str,
               config_path: str) -> SimulatedNode:
        os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
        node = SimulatedNode(index, self.network.chain, log_path, self.network.behaviour)
        self.network.nodes[index] = node
        self._mounts[f"http://{host}:{port}"] = httpx.ASGITransport(app=create_node_app(node))
        return node

    def client_mounts(self) -> Dict[str, httpx.AsyncBaseTransport]:
        return dict(self._mounts)
