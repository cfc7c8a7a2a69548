"""
config/settings.py — Harness settings and the one-time process initialisation guard

Purpose
-------
Collect the handful of knobs the harness needs (where nodes live, where the chain is,
how long each poll loop may run) from the environment, and provide `init_test_config()`,
which every test entry point calls first. The guard loads `.env`, configures logging,
and does both exactly once per process no matter how many tests call it.

Tunable / Config (env)
----------------------
- HARNESS_LOG_LEVEL           : root log level (default INFO)
- HARNESS_NODE_HOST           : host the nodes bind to (default 127.0.0.1)
- HARNESS_BASE_PORT           : port of node 0; node i listens on base + i (default 7470)
- HARNESS_LOG_DIR             : directory for per-node log files (default ./node_logs)
- HARNESS_CHAIN_RPC_URL       : EVM JSON-RPC endpoint (default http://127.0.0.1:8545)
- HARNESS_STAKING_ADDRESS     : staking contract address (no default)
- HARNESS_PKP_ADDRESS         : key NFT contract address (no default)
- HARNESS_PKP_PERMISSIONS_ADDRESS : key permissions contract address (no default)
- HARNESS_POLL_INTERVAL_MS    : sleep between poll checks (default 500)
- HARNESS_EPOCH_TIMEOUT_S     : budget for wait-for-epoch (default 300)
- HARNESS_ACTIVE_TIMEOUT_S    : budget for wait-for-active (default 120)
- HARNESS_VOTING_TIMEOUT_S    : budget for wait-for-voting-status (default 120)
- HARNESS_START_TIMEOUT_S     : budget for node readiness at cluster start (default 60)
- HARNESS_REQUEST_TIMEOUT_S   : per-HTTP-request timeout (default 30)
- HARNESS_RUNTIME_CONFIG_PATH : where the node runtime config TOML is written

Developer overrides may be placed in a `.env` file (python-dotenv); do not keep secrets
there.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

DEFAULT_RUNTIME_CONFIG_PATH = "config/test/custom_node_runtime_config.toml"

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


@dataclass(frozen=True)
class HarnessSettings:
    log_level: str = "INFO"
    node_host: str = "127.0.0.1"
    base_port: int = 7470
    log_dir: str = "./node_logs"
    chain_rpc_url: str = "http://127.0.0.1:8545"
    staking_address: Optional[str] = None
    pkp_address: Optional[str] = None
    pkp_permissions_address: Optional[str] = None
    poll_interval_ms: int = 500
    epoch_timeout_s: float = 300.0
    active_timeout_s: float = 120.0
    voting_timeout_s: float = 120.0
    start_timeout_s: float = 60.0
    request_timeout_s: float = 30.0
    runtime_config_path: str = DEFAULT_RUNTIME_CONFIG_PATH

    @property
    def poll_interval_s(self) -> float:
        return self.poll_interval_ms / 1000.0

    @classmethod
    def from_env(cls) -> "HarnessSettings":
        """Read settings from the process environment, falling back to defaults."""
        return cls(
            log_level=os.getenv("HARNESS_LOG_LEVEL", "INFO").upper(),
            node_host=os.getenv("HARNESS_NODE_HOST", "127.0.0.1"),
            base_port=int(os.getenv("HARNESS_BASE_PORT", "7470")),
            log_dir=os.getenv("HARNESS_LOG_DIR", "./node_logs"),
            chain_rpc_url=os.getenv("HARNESS_CHAIN_RPC_URL", "http://127.0.0.1:8545"),
            staking_address=os.getenv("HARNESS_STAKING_ADDRESS") or None,
            pkp_address=os.getenv("HARNESS_PKP_ADDRESS") or None,
            pkp_permissions_address=os.getenv("HARNESS_PKP_PERMISSIONS_ADDRESS") or None,
            poll_interval_ms=int(os.getenv("HARNESS_POLL_INTERVAL_MS", "500")),
            epoch_timeout_s=float(os.getenv("HARNESS_EPOCH_TIMEOUT_S", "300")),
            active_timeout_s=float(os.getenv("HARNESS_ACTIVE_TIMEOUT_S", "120")),
            voting_timeout_s=float(os.getenv("HARNESS_VOTING_TIMEOUT_S", "120")),
            start_timeout_s=float(os.getenv("HARNESS_START_TIMEOUT_S", "60")),
            request_timeout_s=float(os.getenv("HARNESS_REQUEST_TIMEOUT_S", "30")),
            runtime_config_path=os.getenv(
                "HARNESS_RUNTIME_CONFIG_PATH", DEFAULT_RUNTIME_CONFIG_PATH),
        )


# --- Process-wide init guard ---------------------------------------------------------------------

_init_lock = threading.Lock()
_settings: Optional[HarnessSettings] = None


def init_test_config() -> HarnessSettings:
    """
    Initialise logging and settings once per process.

    Safe to call from every test; the first call loads `.env`, configures the root
    logger and caches the settings, later calls return the cached settings untouched.
    """
    global _settings
    with _init_lock:
        if _settings is None:
            load_dotenv()
            settings = HarnessSettings.from_env()
            logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
            # httpx logs every request at INFO.
            logging.getLogger("httpx").setLevel(logging.WARNING)
            _settings = settings
            logging.getLogger(__name__).info("harness initialised (log level %s)",
                                             settings.log_level)
        return _settings


def reset_test_config() -> None:
    """Forget the cached settings (tests only)."""
    global _settings
    with _init_lock:
        _settings = None
