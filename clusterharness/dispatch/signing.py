"""
dispatch/signing.py — Workload dispatcher (sequential / concurrent signing rounds)

Purpose
-------
Issue signing requests for one key against every active node of a Cluster and turn the
raw replies into verdicts.

Modes
-----
- Sequential : one round in flight at a time. Round k+1 starts only after round k's
               replies are in (and, with `assert_inline`, validated). The aggregate
               `valid` is the verdict of the LAST round only; earlier rounds are kept in
               `rounds` for diagnostics but do not feed the aggregate.
- Concurrent : every round becomes its own task, submitted without waiting. With
               `jitter`, the submitting side sleeps a random 0..255 ms draw before the next
               submission (draws above `max_jitter_ms` mean no sleep). All tasks are then
               joined; each must have exactly one reply per node that was active when
               the dispatch began. Overall success requires that of every unit.

Messages
--------
Round i signs keccak256(`plan.message`) when a fixed message is given, otherwise
keccak256("test message #i").

Validation-error path
---------------------
A payload that is not 32 bytes is refused by every node with a structured error reply.
`count_validation_errors()` tallies replies whose first detail carries the expected text.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from eth_account.signers.local import LocalAccount

from ..cluster.collection import Cluster
from ..errors import SigningError
from ..transport.models import (SIGN_PATH, ErrorReply, SigningReply, SigningRequest,
                                parse_reply)
from .keys import generate_auth_sig, message_digest, pubkey_to_address, signature_matches

LOG = logging.getLogger(__name__)

LENGTH_ERROR_TEXT = "Message length to be signed is not 32 bytes."


@dataclass(frozen=True)
class SigningKey:
    """A minted key plus the wallet permitted to request signatures with it."""
    pubkey: str
    token_id: int
    wallet: LocalAccount

    @property
    def address(self) -> str:
        return pubkey_to_address(self.pubkey)


@dataclass(frozen=True)
class SigningPlan:
    messages: int = 1
    concurrent: bool = False
    jitter: bool = False
    message: Optional[str] = None
    assert_inline: bool = True
    max_jitter_ms: int = 100

    def text(self, i: int) -> str:
        return self.message if self.message is not None else f"test message #{i}"


@dataclass
class RoundOutcome:
    round_no: int
    message: str
    expected: int
    replies: List[str]
    valid_signatures: int = 0
    errors: List[ErrorReply] = field(default_factory=list)
    unparseable: int = 0

    @property
    def responses(self) -> int:
        return len(self.replies)

    @property
    def complete(self) -> bool:
        """Exactly one reply per dispatched node."""
        return self.responses == self.expected

    @property
    def valid(self) -> bool:
        return (self.complete and not self.errors and not self.unparseable
                and self.valid_signatures == self.expected)


@dataclass
class DispatchOutcome:
    valid: bool
    rounds: List[RoundOutcome]
    concurrent: bool
    jitter_ms: int = 0
    elapsed_s: float = 0.0


@dataclass(frozen=True)
class ValidationTally:
    responded: int
    matching: int
    other_details: List[str]


# --- Single rounds -------------------------------------------------------------------------------

def _targets(cluster: Cluster, addresses: Optional[Sequence[str]]) -> List[str]:
    if addresses is None:
        return cluster.ports()
    return cluster.active_addresses(addresses)


async def build_signing_request(cluster: Cluster, key: SigningKey, payload: bytes,
                                epoch: Optional[int] = None) -> SigningRequest:
    """Wrap `payload` with a fresh auth sig and the chain's current epoch."""
    if epoch is None:
        epoch = await cluster.chain.get_current_epoch()
    return SigningRequest(auth_sig=generate_auth_sig(key.wallet), to_sign=list(payload),
                          pubkey=key.pubkey, epoch=epoch)


async def send_signing_requests(cluster: Cluster, request: SigningRequest,
                                addresses: Optional[Sequence[str]] = None) -> List[str]:
    """
    Raw reply bodies from every active node (or `addresses`), in cluster order.

    Raises NodeInactiveError before any I/O when `addresses` names a stopped node.
    """
    targets = _targets(cluster, addresses)
    return await cluster.client.post_json_join_all(targets, SIGN_PATH, request.to_wire())


def validate_replies(round_no: int, message: str, bodies: Sequence[str],
                     key_address: str, digest: bytes, expected: int) -> RoundOutcome:
    outcome = RoundOutcome(round_no=round_no, message=message, expected=expected,
                           replies=list(bodies))
    for body in bodies:
        reply = parse_reply(body)
        if isinstance(reply, ErrorReply):
            outcome.errors.append(reply)
        elif isinstance(reply, SigningReply):
            sig = reply.signature
            if reply.success and signature_matches(digest, sig.r, sig.s, sig.recid,
                                                   key_address):
                outcome.valid_signatures += 1
        else:
            outcome.unparseable += 1
    return outcome


async def sign_digest(cluster: Cluster, key: SigningKey, digest: bytes,
                      round_no: int = 0, message: str = "",
                      addresses: Optional[Sequence[str]] = None) -> RoundOutcome:
    targets = _targets(cluster, addresses)
    request = await build_signing_request(cluster, key, digest)
    bodies = await send_signing_requests(cluster, request, targets)
    return validate_replies(round_no, message, bodies, key.address, digest, len(targets))


async def sign_message(cluster: Cluster, key: SigningKey, text: str,
                       round_no: int = 0) -> RoundOutcome:
    return await sign_digest(cluster, key, message_digest(text), round_no, text)


# --- Plans ---------------------------------------------------------------------------------------

async def dispatch(cluster: Cluster, key: SigningKey, plan: SigningPlan,
                   rng: Optional[random.Random] = None) -> DispatchOutcome:
    """
    Run `plan` against the cluster's active nodes.

    Raises:
      SigningError when `plan.assert_inline` is set and a round fails (sequential) or a
      unit comes back short of replies (concurrent).
    """
    start = time.monotonic()
    if plan.concurrent:
        outcome = await _dispatch_concurrent(cluster, key, plan, rng or random.Random())
    else:
        outcome = await _dispatch_sequential(cluster, key, plan)
    outcome.elapsed_s = time.monotonic() - start
    return outcome


async def _dispatch_sequential(cluster: Cluster, key: SigningKey,
                               plan: SigningPlan) -> DispatchOutcome:
    rounds: List[RoundOutcome] = []
    valid = False
    for i in range(plan.messages):
        text = plan.text(i)
        LOG.info("Testing message #%d: %r", i, text)
        outcome = await sign_message(cluster, key, text, round_no=i)
        rounds.append(outcome)
        valid = outcome.valid
        if not valid:
            LOG.error("round %d failed: %d/%d replies, %d valid signatures, %d errors",
                      i, outcome.responses, outcome.expected, outcome.valid_signatures,
                      len(outcome.errors))
            if plan.assert_inline:
                raise SigningError(f"signing round {i} failed for message {text!r}")
    return DispatchOutcome(valid=valid, rounds=rounds, concurrent=False)


async def _dispatch_concurrent(cluster: Cluster, key: SigningKey, plan: SigningPlan,
                               rng: random.Random) -> DispatchOutcome:
    addresses = cluster.ports()
    expected = len(addresses)
    tasks: List[asyncio.Task] = []
    jitter_total = 0

    for i in range(plan.messages):
        text = plan.text(i)
        LOG.info("Testing message #%d: %r", i, text)
        digest = message_digest(text)
        request = await build_signing_request(cluster, key, digest)
        tasks.append(asyncio.create_task(
            _concurrent_unit(cluster, request, addresses, i, text, key.address, digest)))
        if plan.jitter:
            sleep_ms = rng.randrange(256)
            if sleep_ms > plan.max_jitter_ms:
                sleep_ms = 0
            jitter_total += sleep_ms
            await asyncio.sleep(sleep_ms / 1000.0)

    LOG.warning("Waiting for concurrent signing to complete.")
    rounds = list(await asyncio.gather(*tasks))

    short = [r for r in rounds if not r.complete]
    for r in short:
        LOG.error("unit %d got %d replies, expected %d", r.round_no, r.responses, expected)
    if short and plan.assert_inline:
        raise SigningError(f"{len(short)} of {len(rounds)} concurrent units came back short")
    return DispatchOutcome(valid=bool(rounds) and not short, rounds=rounds,
                           concurrent=True, jitter_ms=jitter_total)


async def _concurrent_unit(cluster: Cluster, request: SigningRequest, addresses: List[str],
                           round_no: int, text: str, key_address: str,
                           digest: bytes) -> RoundOutcome:
    bodies = await send_signing_requests(cluster, request, addresses)
    return validate_replies(round_no, text, bodies, key_address, digest, len(addresses))


# --- Validation errors ---------------------------------------------------------------------------

def count_validation_errors(bodies: Sequence[str],
                            expected_text: str = LENGTH_ERROR_TEXT) -> ValidationTally:
    """Count replies whose first error detail contains `expected_text`."""
    matching = 0
    others: List[str] = []
    for body in bodies:
        reply = parse_reply(body)
        if not isinstance(reply, ErrorReply) or not reply.details:
            continue
        if expected_text in reply.details[0]:
            matching += 1
        else:
            LOG.info("error detail does not mention %r: %s", expected_text, reply.details[0])
            others.append(reply.details[0])
    return ValidationTally(responded=len(bodies), matching=matching, other_details=others)
