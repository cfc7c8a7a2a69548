"""
transport/client.py — Async HTTP client for the node data plane

Purpose
-------
Thin wrapper around `httpx.AsyncClient` that knows how to talk to signing nodes:

  • `post_json(address, path, body)`       → raw reply body (any HTTP status)
  • `post_json_join_all(addresses, ...)`   → fan out to every node, join all replies
  • `status(address)` / `is_active(...)`   → liveness + epoch query surface

Error replies are data
----------------------
Nodes answer validation failures (e.g. a payload that is not 32 bytes) with a non-2xx
status and a structured JSON body. The harness asserts on those bodies, so unlike a
typical client helper we do NOT `raise_for_status()` on signing calls. Transport-level
failures (connection refused, timeout) still raise `httpx.HTTPError`.

Tunable / Config
----------------
- timeout_s : per-request timeout (HarnessSettings.request_timeout_s)
- mounts    : optional {"http://host:port": transport} map; the simulated network uses it
              to route each node address to an in-process ASGI app.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Dict, List, Optional, Sequence

import httpx

from .models import STATUS_PATH, NodeStatus

LOG = logging.getLogger(__name__)


def node_url(address: str) -> str:
    """'127.0.0.1:7470' → 'http://127.0.0.1:7470' (addresses with a scheme pass through)."""
    if address.startswith("http://") or address.startswith("https://"):
        return address
    return f"http://{address}"


class NodeClient:
    def __init__(self, timeout_s: float = 30.0,
                 mounts: Optional[Dict[str, httpx.AsyncBaseTransport]] = None):
        self._client = httpx.AsyncClient(timeout=timeout_s, mounts=mounts or None)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def post_json(self, address: str, path: str, body: dict) -> str:
        """POST `body` as JSON and return the response text whatever the status code."""
        r = await self._client.post(node_url(address) + path, json=body)
        if r.status_code >= 400:
            LOG.debug("node %s answered %s on %s", address, r.status_code, path)
        return r.text

    async def post_json_join_all(self, addresses: Sequence[str], path: str,
                                 body: dict) -> List[str]:
        """
        Send the same body to every address concurrently and wait for all replies.

        Replies come back in the order of `addresses`. The first transport failure
        propagates to the caller.
        """
        return list(await asyncio.gather(
            *(self.post_json(a, path, body) for a in addresses)))

    async def status(self, address: str) -> NodeStatus:
        r = await self._client.get(node_url(address) + STATUS_PATH)
        r.raise_for_status()
        return NodeStatus.model_validate(r.json())

    async def is_active(self, address: str) -> bool:
        """True iff the node answers its status route and reports itself active."""
        try:
            return (await self.status(address)).active
        except (httpx.HTTPError, json.JSONDecodeError, ValueError) as e:
            LOG.debug("status check on %s failed: %s", address, e)
            return False
