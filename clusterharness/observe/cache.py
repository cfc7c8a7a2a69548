"""
observe/cache.py — Cache-consensus observer (Beaver-triple / presignature cache)

Overview
--------
Nodes log "BT Cache Hit" when a signing round reuses a precomputed triple and
"BT Cache Miss" when they have to generate one on the spot. After each round the
observer reads only the log lines appended during that round and turns the per-node
markers into one verdict:

  • each node votes at most once; the first marker seen decides its vote
  • a node with neither marker is silent and votes for neither side
  • the round is a "hit" when hit votes >= miss votes, otherwise a "miss"

Every active node should agree. When they do not, the round is still classified and a
warning is logged; disagreement is a diagnostic signal, not a failure.

Round protocol
--------------
    observer.begin_round()        # rebase cursors: drop everything already logged
    ... dispatch the round ...
    result = observer.finish_round()

Each observer owns private cursors, so concurrent observers never steal each other's
lines. `finish_round()` is memoised per round: calling it again returns the same
classification even though the underlying log range has already been consumed.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..cluster.collection import Cluster
from ..cluster.node import LogCursor
from ..dispatch.signing import SigningKey, SigningPlan, dispatch

LOG = logging.getLogger(__name__)

CACHE_HIT_MARKER = "BT Cache Hit"
CACHE_MISS_MARKER = "BT Cache Miss"

HIT = "hit"
MISS = "miss"


@dataclass(frozen=True)
class RoundClassification:
    round_no: int
    hits: int
    misses: int
    active: int
    elapsed_s: float

    @property
    def silent(self) -> int:
        return self.active - self.hits - self.misses

    @property
    def classification(self) -> str:
        return HIT if self.hits >= self.misses else MISS

    @property
    def is_hit(self) -> bool:
        return self.classification == HIT

    @property
    def unanimous(self) -> bool:
        return self.hits == self.active or self.misses == self.active


def scan_vote(lines: List[str]) -> Optional[str]:
    """First marker in `lines` decides the node's vote; None when the node is silent."""
    for line in lines:
        if CACHE_HIT_MARKER in line:
            return HIT
        if CACHE_MISS_MARKER in line:
            return MISS
    return None


class CacheObserver:
    def __init__(self, cluster: Cluster):
        self.cluster = cluster
        self._cursors: Dict[int, LogCursor] = {
            n.index: n.new_log_cursor() for n in cluster.active_nodes()}
        self._round_no = -1
        self._started = 0.0
        self._result: Optional[RoundClassification] = None

    def discard(self) -> None:
        """Drop everything logged so far without classifying it (e.g. after a warmup)."""
        for cursor in self._cursors.values():
            cursor.rebase()

    def begin_round(self) -> int:
        self.discard()
        self._round_no += 1
        self._result = None
        self._started = time.monotonic()
        return self._round_no

    def finish_round(self) -> RoundClassification:
        if self._result is not None:
            return self._result

        elapsed = time.monotonic() - self._started
        active = [i for i in self.cluster.active_indices() if i in self._cursors]
        hits = misses = 0
        for index in active:
            vote = scan_vote(self._cursors[index].read_new_lines())
            if vote == HIT:
                hits += 1
            elif vote == MISS:
                misses += 1

        result = RoundClassification(round_no=self._round_no, hits=hits, misses=misses,
                                     active=len(active), elapsed_s=elapsed)
        LOG.info("round %d: node_cache_hit_count=%d node_cache_miss_count=%d",
                 result.round_no, hits, misses)
        if not result.unanimous:
            LOG.warning(
                "No consensus among the nodes on hit or miss for round %d: "
                "hits=%d misses=%d silent=%d", result.round_no, hits, misses, result.silent)
        self._result = result
        return result


# --- Statistics ----------------------------------------------------------------------------------

@dataclass
class CacheStats:
    messages: int
    nodes: int
    warmup_ms: int = 0
    cache_hits: int = 0
    cache_hit_s: float = 0.0
    cache_misses: int = 0
    cache_miss_s: float = 0.0
    sign_success: int = 0
    disagreements: int = 0
    total_sleep_ms: int = 0
    signing_ms: List[int] = field(default_factory=list)
    start_time: float = field(default_factory=time.monotonic)

    def record(self, classification: RoundClassification, signed_ok: bool,
               completion_s: float) -> None:
        if classification.is_hit:
            self.cache_hits += 1
            self.cache_hit_s += completion_s
        else:
            self.cache_misses += 1
            self.cache_miss_s += completion_s
        if not classification.unanimous:
            self.disagreements += 1
        if signed_ok:
            self.sign_success += 1
        self.signing_ms.append(int(completion_s * 1000))

    @property
    def hit_ratio(self) -> float:
        return self.cache_hits / self.messages if self.messages else 0.0

    @property
    def average_hit_ms(self) -> float:
        return 1000 * self.cache_hit_s / self.cache_hits if self.cache_hits else 0.0

    @property
    def average_miss_ms(self) -> float:
        return 1000 * self.cache_miss_s / self.cache_misses if self.cache_misses else 0.0

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.start_time

    def summary(self) -> str:
        return (
            f"Signing {self.messages} messages randomly in a {self.nodes} node network\n"
            f"   Pregen BT warmup: {self.warmup_ms} ms\n"
            f"   BT cache hit (qty/time): {self.cache_hits} / {self.cache_hit_s:.3f}s\n"
            f"   BT cache miss (qty/time): {self.cache_misses} / {self.cache_miss_s:.3f}s\n"
            f"   Cache success: {self.hit_ratio:.2f}\n"
            f"   Rounds without node consensus: {self.disagreements}\n"
            f"   Total time spent sleeping: {self.total_sleep_ms} ms\n"
            f"   Total time elapsed: {self.elapsed:.3f}s\n"
            f"   Sign success: {self.sign_success}\n"
            f"   Signing time (ms): {self.signing_ms}"
        )


async def run_cache_workload(
    cluster: Cluster,
    key: SigningKey,
    messages: int,
    *,
    warmup_ms: int = 5000,
    max_sleep_steps: int = 100,
    sleep_step_ms: int = 50,
    rng: Optional[random.Random] = None,
) -> CacheStats:
    """
    Sign `messages` messages one at a time with random pauses and classify each round.

    A first, unobserved round forces the nodes to start generating triples; the warmup
    pause lets them stock their caches before measurement starts. Between rounds the
    harness sleeps `randint(0, max_sleep_steps - 1) * sleep_step_ms` milliseconds.
    """
    rng = rng or random.Random()
    observer = CacheObserver(cluster)

    start = time.monotonic()
    await dispatch(cluster, key, SigningPlan(message="First Test message",
                                             assert_inline=False))
    LOG.info("Requiring BTs: time elapsed %.3fs", time.monotonic() - start)
    await asyncio.sleep(warmup_ms / 1000.0)

    stats = CacheStats(messages=messages, nodes=len(cluster.active_indices()),
                       warmup_ms=warmup_ms)
    for i in range(messages):
        LOG.info("Starting sig #%d", i)
        observer.begin_round()
        round_start = time.monotonic()
        outcome = await dispatch(cluster, key, SigningPlan(message=f"Test message #{i}",
                                                           assert_inline=False))
        completion = time.monotonic() - round_start
        if not outcome.valid:
            LOG.error("Validation failed for sig #%d", i)
        stats.record(observer.finish_round(), outcome.valid, completion)

        sleep_ms = rng.randrange(max_sleep_steps) * sleep_step_ms
        stats.total_sleep_ms += sleep_ms
        await asyncio.sleep(sleep_ms / 1000.0)

    LOG.info("%s", stats.summary())
    return stats
