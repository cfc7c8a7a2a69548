"""
cli/harness.py — Operator CLI for the cluster harness

Commands
--------
  clusterharness gen-config [--fault-test] [--no-chain] [--round-timeout MS]
                            [--rate-limit/--no-rate-limit] [--polling-interval MS] [--out PATH]
      Write the node runtime config TOML the nodes read at start-up.

  clusterharness simulate {sign|epoch|drop|cache} [--nodes N] [--messages K]
                          [--concurrent] [--jitter] [--seed S] [--pool-size P]
      Run one scenario against the in-process simulated network and print a JSON
      summary. Exit status 1 when the scenario did not succeed.

Tunable / Config
----------------
- HARNESS_* environment variables (see config/settings.py); `.env` is loaded for
  developer convenience.
- --log-dir overrides HARNESS_LOG_DIR for the simulated nodes' log files.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import random
from typing import Optional

import click
from dotenv import load_dotenv

from ..config.runtime import ChainMode, NodeRuntimeConfig, generate_node_runtime_config
from ..config.settings import DEFAULT_RUNTIME_CONFIG_PATH, HarnessSettings, init_test_config
from ..dispatch.signing import SigningPlan, dispatch
from ..errors import HarnessError
from ..observe.cache import run_cache_workload
from ..scenarios import (new_cluster_with_authorized_key, sign_across_epoch_change,
                         sign_when_node_drops)
from ..sim.network import NodeBehaviour, SimulatedNetwork

load_dotenv()


@click.group()
def cli() -> None:
    """Threshold-signing cluster harness."""
    pass


@cli.command("gen-config")
@click.option("--fault-test", is_flag=True, help="Use fault-injection timeouts")
@click.option("--no-chain", is_flag=True, help="Disable epoch transitions on the nodes")
@click.option("--round-timeout", type=int, default=None, help="ECDSA round timeout (ms)")
@click.option("--rate-limit/--no-rate-limit", default=None, help="Enable node rate limiting")
@click.option("--polling-interval", type=int, default=None,
              help="Chain polling interval (ms)")
@click.option("--out", default=DEFAULT_RUNTIME_CONFIG_PATH, show_default=True,
              help="Where to write the TOML file")
def gen_config(fault_test: bool, no_chain: bool, round_timeout: Optional[int],
               rate_limit: Optional[bool], polling_interval: Optional[int], out: str) -> None:
    """Write the node runtime config file."""
    builder = NodeRuntimeConfig.builder()
    if round_timeout is not None:
        builder.ecdsa_round_timeout(round_timeout)
    if rate_limit is not None:
        builder.enable_rate_limiting(rate_limit)
    if polling_interval is not None:
        builder.chain_polling_interval(polling_interval)
    mode = ChainMode.NO_CHAIN if no_chain else ChainMode.ANVIL
    path = generate_node_runtime_config(fault_test, mode, builder.build(), path=out)
    click.echo(str(path))


@cli.command()
@click.argument("scenario", type=click.Choice(["sign", "epoch", "drop", "cache"]))
@click.option("--nodes", type=int, default=None,
              help="Cluster size (default 3, or 5 for 'drop')")
@click.option("--messages", type=int, default=1, show_default=True)
@click.option("--concurrent", is_flag=True, help="Submit rounds without waiting ('sign')")
@click.option("--jitter", is_flag=True, help="Random 0-100 ms gaps between submissions")
@click.option("--seed", type=int, default=0, show_default=True)
@click.option("--pool-size", type=int, default=3, show_default=True,
              help="Triples each simulated node starts with")
@click.option("--log-dir", default=None, help="Directory for simulated node logs")
def simulate(scenario: str, nodes: Optional[int], messages: int, concurrent: bool,
             jitter: bool, seed: int, pool_size: int, log_dir: Optional[str]) -> None:
    """Run SCENARIO against the in-process simulated network."""
    settings = init_test_config()
    if log_dir:
        settings = dataclasses.replace(settings, log_dir=log_dir)
    if nodes is None:
        nodes = 5 if scenario == "drop" else 3

    try:
        summary = asyncio.run(_simulate(scenario, settings, nodes, messages, concurrent,
                                        jitter, seed, pool_size))
    except HarnessError as e:
        click.echo(json.dumps({"scenario": scenario, "ok": False, "error": str(e)}, indent=2))
        raise SystemExit(1)

    click.echo(json.dumps(summary, indent=2))
    if not summary["ok"]:
        raise SystemExit(1)


async def _simulate(scenario: str, settings: HarnessSettings, nodes: int, messages: int,
                    concurrent: bool, jitter: bool, seed: int, pool_size: int) -> dict:
    network = SimulatedNetwork(nodes, seed=seed,
                               behaviour=NodeBehaviour(pool_size=pool_size,
                                                       refill_per_status=0))
    cluster, key = await new_cluster_with_authorized_key(
        nodes, network.launcher(), network.chain, settings,
        is_fault_test=scenario == "drop")
    async with cluster:
        summary = {"scenario": scenario, "nodes": nodes, "pubkey": key.pubkey}
        if scenario == "sign":
            plan = SigningPlan(messages=messages, concurrent=concurrent, jitter=jitter,
                               assert_inline=False)
            outcome = await dispatch(cluster, key, plan, rng=random.Random(seed))
            summary.update(ok=outcome.valid, rounds=len(outcome.rounds),
                           replies=[r.responses for r in outcome.rounds],
                           jitter_ms=outcome.jitter_ms,
                           elapsed_s=round(outcome.elapsed_s, 3))
        elif scenario == "epoch":
            res = await sign_across_epoch_change(cluster, key)
            summary.update(ok=res.before.valid and res.after.valid,
                           epoch_before=res.epoch_before, epoch_after=res.epoch_after)
        elif scenario == "drop":
            res = await sign_when_node_drops(cluster, key)
            summary.update(ok=res.after.valid and res.replies_after == nodes - 1,
                           killed=res.killed, epoch_before=res.epoch_before,
                           epoch_after=res.epoch_after, replies_after=res.replies_after)
        else:
            stats = await run_cache_workload(cluster, key, messages, warmup_ms=0,
                                             max_sleep_steps=2, sleep_step_ms=10,
                                             rng=random.Random(seed))
            summary.update(ok=stats.sign_success == messages, cache_hits=stats.cache_hits,
                           cache_misses=stats.cache_misses, hit_ratio=stats.hit_ratio,
                           disagreements=stats.disagreements)
        return summary


if __name__ == "__main__":
    cli()
