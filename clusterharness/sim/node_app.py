"""
sim/node_app.py — FastAPI surface of one simulated node

Routes
------
POST /web/pkp/sign   SigningRequest → SigningReply (200) or ErrorReply (4xx/5xx)
GET  /web/status     NodeStatus (used for readiness and post-epoch "active" polling)

The app is mounted on an httpx.ASGITransport by `SimulatedLauncher`; it never binds a
socket.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from ..transport.models import SIGN_PATH, STATUS_PATH, SigningRequest

if TYPE_CHECKING:
    from .network import SimulatedNode


def create_node_app(node: "SimulatedNode") -> FastAPI:
    app = FastAPI(title=f"Simulated signing node {node.index}", version="0.1.0")

    @app.post(SIGN_PATH)
    async def sign(req: SigningRequest):
        status_code, body = node.sign(req)
        return JSONResponse(status_code=status_code, content=body)

    @app.get(STATUS_PATH)
    async def status():
        if not node.running:
            return JSONResponse(status_code=503, content={"detail": "node is shut down"})
        return node.status().to_wire()

    return app
