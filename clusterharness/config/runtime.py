"""
config/runtime.py — Per-test node runtime config (builder + TOML writer)

Purpose
-------
Each test may tweak a few node runtime parameters (ECDSA round timeout, rate limiting,
chain polling interval). This module accumulates those overrides, resolves them against
documented defaults, and writes a flat `[node]` TOML section that the node deployment
tooling merges into each node's startup config.

Two modes
---------
- Normal      : manual overrides apply; unset fields fall back to defaults.
- Fault test  : nodes talk through a fault-injecting HTTP proxy, so the timeouts are
                derived from FAULT_TEST_HTTP_CLIENT_TIMEOUT_SECS instead (x2 for one retry,
                x1000 because the round timeout is in ms). Manual timeout overrides are
                ignored in this mode.

Defaults
--------
- ecdsa_round_timeout     : 20000 ms
- http_client_timeout     : 10 s (node default is 30 s)
- chain_polling_interval  : 1000 ms
- enable_rate_limiting    : false

`build_node_runtime_config()` is pure and never fails. Writing the file is the only
side effect and lives in `write_node_runtime_config()`.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import toml

from .settings import DEFAULT_RUNTIME_CONFIG_PATH

LOG = logging.getLogger(__name__)

NODE_SECTION = "node"

CFG_KEY_ENABLE_PROXIED_HTTP_CLIENT = "enable_proxied_http_client"
CFG_KEY_ENABLE_EPOCH_TRANSITIONS = "enable_epoch_transitions"
CFG_KEY_HTTP_CLIENT_TIMEOUT = "http_client_timeout"
CFG_KEY_ECDSA_ROUND_TIMEOUT = "ecdsa_round_timeout"
CFG_KEY_CHAIN_POLLING_INTERVAL_MS = "chain_polling_interval"
CFG_KEY_ENABLE_RATE_LIMITING = "enable_rate_limiting"

ECDSA_ROUND_TIMEOUT_DEFAULT_MS = 20000
HTTP_CLIENT_TIMEOUT_DEFAULT_SECS = 10
CHAIN_POLLING_INTERVAL_DEFAULT_MS = 1000
FAULT_TEST_HTTP_CLIENT_TIMEOUT_SECS = 5
FAULT_TEST_RETRY_FACTOR = 2


class ChainMode(enum.Enum):
    """Which chain the cluster runs against."""
    NO_CHAIN = "no_chain"
    ANVIL = "anvil"


def _flag(value: bool) -> str:
    return "true" if value else "false"


@dataclass(frozen=True)
class NodeRuntimeConfig:
    """Resolved-on-demand set of manual overrides; `None` means "use the default"."""
    ecdsa_round_timeout_ms: Optional[int] = None
    enable_rate_limiting: Optional[bool] = None
    chain_polling_interval_ms: Optional[int] = None

    @staticmethod
    def builder() -> "NodeRuntimeConfigBuilder":
        return NodeRuntimeConfigBuilder()


class NodeRuntimeConfigBuilder:
    """
    Fluent accumulator for runtime overrides.

    >>> cfg = NodeRuntimeConfig.builder().ecdsa_round_timeout(30000).build()
    """

    def __init__(self):
        self._ecdsa_round_timeout_ms: Optional[int] = None
        self._enable_rate_limiting: Optional[bool] = None
        self._chain_polling_interval_ms: Optional[int] = None

    def ecdsa_round_timeout(self, ms: int) -> "NodeRuntimeConfigBuilder":
        self._ecdsa_round_timeout_ms = ms
        return self

    def enable_rate_limiting(self, enabled: bool) -> "NodeRuntimeConfigBuilder":
        self._enable_rate_limiting = enabled
        return self

    def chain_polling_interval(self, ms: int) -> "NodeRuntimeConfigBuilder":
        self._chain_polling_interval_ms = ms
        return self

    def build(self) -> NodeRuntimeConfig:
        return NodeRuntimeConfig(
            ecdsa_round_timeout_ms=self._ecdsa_round_timeout_ms,
            enable_rate_limiting=self._enable_rate_limiting,
            chain_polling_interval_ms=self._chain_polling_interval_ms,
        )


# --- Document construction -----------------------------------------------------------------------

def build_node_runtime_config(
    is_fault_test: bool,
    chain_mode: ChainMode,
    custom: Optional[NodeRuntimeConfig] = None,
) -> Dict[str, Dict[str, str]]:
    """
    Resolve overrides and defaults into a `{section: {key: value}}` document.

    Args:
      is_fault_test: select fault-injection timeouts (overrides manual timeouts).
      chain_mode: `ChainMode.NO_CHAIN` disables epoch transitions on the nodes.
      custom: manual overrides; `None` behaves like an empty builder.

    Returns:
      Flat document, every value a string as the node config loader expects.
    """
    custom = custom or NodeRuntimeConfig()
    node: Dict[str, str] = {
        CFG_KEY_ENABLE_PROXIED_HTTP_CLIENT: _flag(is_fault_test),
        CFG_KEY_ENABLE_EPOCH_TRANSITIONS: _flag(chain_mode != ChainMode.NO_CHAIN),
    }

    if is_fault_test:
        node[CFG_KEY_HTTP_CLIENT_TIMEOUT] = str(FAULT_TEST_HTTP_CLIENT_TIMEOUT_SECS)
        node[CFG_KEY_ECDSA_ROUND_TIMEOUT] = str(
            FAULT_TEST_HTTP_CLIENT_TIMEOUT_SECS * FAULT_TEST_RETRY_FACTOR * 1000)
    else:
        round_timeout = custom.ecdsa_round_timeout_ms
        if round_timeout is None:
            round_timeout = ECDSA_ROUND_TIMEOUT_DEFAULT_MS
        node[CFG_KEY_ECDSA_ROUND_TIMEOUT] = str(round_timeout)
        node[CFG_KEY_HTTP_CLIENT_TIMEOUT] = str(HTTP_CLIENT_TIMEOUT_DEFAULT_SECS)

    polling = custom.chain_polling_interval_ms
    if polling is None:
        polling = CHAIN_POLLING_INTERVAL_DEFAULT_MS
    node[CFG_KEY_CHAIN_POLLING_INTERVAL_MS] = str(polling)

    node[CFG_KEY_ENABLE_RATE_LIMITING] = _flag(bool(custom.enable_rate_limiting))

    return {NODE_SECTION: node}


# --- File writer ---------------------------------------------------------------------------------

def write_node_runtime_config(doc: Dict[str, Dict[str, str]],
                              path: str = DEFAULT_RUNTIME_CONFIG_PATH) -> Path:
    """Write the document as TOML, creating parent directories as needed."""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(toml.dumps(doc), encoding="utf-8")
    LOG.info("Generated custom node runtime config at %s", out)
    return out


def generate_node_runtime_config(
    is_fault_test: bool,
    chain_mode: ChainMode,
    custom: Optional[NodeRuntimeConfig] = None,
    path: str = DEFAULT_RUNTIME_CONFIG_PATH,
) -> Path:
    """Build the document and write it; returns the path written."""
    doc = build_node_runtime_config(is_fault_test, chain_mode, custom)
    return write_node_runtime_config(doc, path)
