"""
tests/test_settings.py — Environment settings and the one-time init guard
"""

from __future__ import annotations

import logging
import threading

import pytest

from clusterharness.config import settings as settings_mod
from clusterharness.config.settings import HarnessSettings, init_test_config, reset_test_config


@pytest.fixture
def fresh_init():
    reset_test_config()
    yield
    reset_test_config()


def test_from_env_defaults(monkeypatch):
    """With no HARNESS_* variables set the documented defaults apply."""
    for name in ("HARNESS_BASE_PORT", "HARNESS_POLL_INTERVAL_MS", "HARNESS_LOG_DIR"):
        monkeypatch.delenv(name, raising=False)
    s = HarnessSettings.from_env()
    assert s.base_port == 7470
    assert s.poll_interval_s == 0.5
    assert s.staking_address is None


def test_from_env_overrides(monkeypatch):
    """Environment values are parsed to their types; the log level is upper-cased."""
    monkeypatch.setenv("HARNESS_BASE_PORT", "9000")
    monkeypatch.setenv("HARNESS_LOG_LEVEL", "debug")
    monkeypatch.setenv("HARNESS_EPOCH_TIMEOUT_S", "12.5")
    s = HarnessSettings.from_env()
    assert s.base_port == 9000
    assert s.log_level == "DEBUG"
    assert s.epoch_timeout_s == 12.5


def test_init_is_idempotent(fresh_init, monkeypatch):
    """A second init returns the same settings without reloading .env or logging."""
    calls = []
    monkeypatch.setattr(settings_mod, "load_dotenv", lambda: calls.append(1))
    monkeypatch.setattr(logging, "basicConfig", lambda **kw: calls.append(kw))

    first = init_test_config()
    second = init_test_config()
    assert first is second
    assert len(calls) == 2  # one load_dotenv + one basicConfig


def test_init_is_safe_across_threads(fresh_init, monkeypatch):
    """Eight racing threads still initialise exactly once."""
    calls = []
    monkeypatch.setattr(settings_mod, "load_dotenv", lambda: calls.append("env"))
    monkeypatch.setattr(logging, "basicConfig", lambda **kw: calls.append("log"))

    results = []
    threads = [threading.Thread(target=lambda: results.append(init_test_config()))
               for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert calls == ["env", "log"]
    assert all(r is results[0] for r in results)
