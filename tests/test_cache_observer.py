"""
tests/test_cache_observer.py — Cache-consensus classification from node logs

The simulated nodes each start with a small triple pool: a round that consumes a pooled
triple logs "BT Cache Hit", a round on an empty pool logs "BT Cache Miss".
"""

from __future__ import annotations

import logging
import random

from clusterharness.dispatch.signing import SigningPlan, dispatch
from clusterharness.observe.cache import (HIT, MISS, CacheObserver, RoundClassification,
                                          run_cache_workload, scan_vote)
from clusterharness.sim.network import NodeBehaviour


def test_scan_vote_first_marker_wins():
    """Only the first hit/miss marker in a node's new lines counts."""
    assert scan_vote(["x", "BT Cache Miss", "BT Cache Hit"]) == MISS
    assert scan_vote(["BT Cache Hit: pooled", "BT Cache Miss"]) == HIT
    assert scan_vote(["nothing here"]) is None


def test_tie_counts_as_hit():
    """Equal hit and miss votes classify as a hit; silent nodes are counted apart."""
    tie = RoundClassification(round_no=0, hits=1, misses=1, active=3, elapsed_s=0.0)
    assert tie.classification == HIT
    assert tie.silent == 1
    assert not tie.unanimous


async def test_unanimous_hit_then_miss(make_cluster):
    """A one-triple pool gives a unanimous hit round, then a unanimous miss round."""
    _, cluster, key = await make_cluster(3, behaviour=NodeBehaviour(pool_size=1))
    observer = CacheObserver(cluster)

    observer.begin_round()
    await dispatch(cluster, key, SigningPlan())
    first = observer.finish_round()
    assert (first.hits, first.misses, first.classification) == (3, 0, HIT)
    assert first.unanimous

    observer.begin_round()
    await dispatch(cluster, key, SigningPlan())
    second = observer.finish_round()
    assert (second.hits, second.misses, second.classification) == (0, 3, MISS)
    assert second.round_no == first.round_no + 1


async def test_classification_is_idempotent(make_cluster):
    """Finishing a round twice returns the memoised result."""
    _, cluster, key = await make_cluster(3, behaviour=NodeBehaviour(pool_size=5))
    observer = CacheObserver(cluster)

    observer.begin_round()
    await dispatch(cluster, key, SigningPlan())
    once = observer.finish_round()
    twice = observer.finish_round()

    assert twice is once
    assert twice.hits == 3


async def test_stale_markers_do_not_leak_into_next_round(make_cluster):
    """Markers logged before begin_round are skipped."""
    _, cluster, key = await make_cluster(3, behaviour=NodeBehaviour(pool_size=5))
    observer = CacheObserver(cluster)

    await dispatch(cluster, key, SigningPlan())  # logged before the round starts
    observer.begin_round()
    result = observer.finish_round()

    assert result.hits == 0 and result.misses == 0
    assert result.silent == 3


async def test_disagreement_is_a_warning_not_a_failure(make_cluster, caplog):
    """A split vote is logged as a warning and signing still succeeds."""
    network, cluster, key = await make_cluster(3, behaviour=NodeBehaviour(pool_size=5))
    network.nodes[0].triples = 0
    observer = CacheObserver(cluster)

    observer.begin_round()
    outcome = await dispatch(cluster, key, SigningPlan())
    with caplog.at_level(logging.WARNING, logger="clusterharness.observe.cache"):
        result = observer.finish_round()

    assert outcome.valid
    assert (result.hits, result.misses) == (2, 1)
    assert result.is_hit and not result.unanimous
    assert "No consensus among the nodes" in caplog.text


async def test_observers_keep_private_positions(make_cluster):
    """Two observers over the same logs each see every marker."""
    _, cluster, key = await make_cluster(2, behaviour=NodeBehaviour(pool_size=5))
    a = CacheObserver(cluster)
    b = CacheObserver(cluster)

    a.begin_round()
    b.begin_round()
    await dispatch(cluster, key, SigningPlan())

    assert a.finish_round().hits == 2
    assert b.finish_round().hits == 2


async def test_cache_workload_statistics(make_cluster):
    """Hit/miss counts, ratio and timings of a pool-limited workload."""
    _, cluster, key = await make_cluster(3, behaviour=NodeBehaviour(pool_size=2))

    stats = await run_cache_workload(cluster, key, 4, warmup_ms=0, max_sleep_steps=1,
                                     rng=random.Random(1))

    # warmup takes one triple, round 0 the last one, rounds 1..3 miss
    assert stats.cache_hits == 1
    assert stats.cache_misses == 3
    assert stats.sign_success == 4
    assert stats.disagreements == 0
    assert stats.hit_ratio == 0.25
    assert len(stats.signing_ms) == 4
    assert "Cache success: 0.25" in stats.summary()
