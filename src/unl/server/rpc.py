"""
Administrative RPC server.

Exposes the Manager's administrative handlers over HTTP with aiohttp:

    GET  /validators/print     Known validators, scores, Chosen set, sources
    POST /validators/rebuild   Queue a Chosen-set rebuild
    GET  /validators/sources   Sources and their last-fetch outcome
    POST /rpc                  {"method": "validators_print"} style calls
    GET  /health               Liveness check
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

from aiohttp import web

from ..core import defaults
from ..validators.manager import Manager

logger = logging.getLogger(__name__)


def create_app(manager: Manager) -> web.Application:
    """Create the aiohttp application for a manager."""

    async def handle_print(request: web.Request) -> web.Response:
        """GET /validators/print"""
        return web.json_response(manager.rpc_print())

    async def handle_rebuild(request: web.Request) -> web.Response:
        """POST /validators/rebuild"""
        return web.json_response(manager.rpc_rebuild())

    async def handle_sources(request: web.Request) -> web.Response:
        """GET /validators/sources"""
        return web.json_response(manager.rpc_sources())

    async def handle_rpc(request: web.Request) -> web.Response:
        """
        Named-method call.

        POST /rpc
        {"method": "validators_print"}
        """
        try:
            data = await request.json()
        except json.JSONDecodeError:
            return web.json_response({"error": "Invalid JSON"}, status=400)

        method = data.get("method") if isinstance(data, dict) else None
        handler = manager.rpc_handlers.get(method) if isinstance(method, str) else None
        if handler is None:
            return web.json_response({"error": f"Unknown method: {method}"}, status=404)

        try:
            result = handler()
        except Exception as e:
            logger.exception(f"RPC {method} failed")
            return web.json_response({"error": str(e)}, status=500)
        return web.json_response({"result": result})

    async def handle_health(request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.json_response({
            "status": "ok" if manager.is_running else "stopped",
        })

    app = web.Application()

    app.router.add_get("/validators/print", handle_print)
    app.router.add_post("/validators/rebuild", handle_rebuild)
    app.router.add_get("/validators/sources", handle_sources)
    app.router.add_post("/rpc", handle_rpc)
    app.router.add_get("/health", handle_health)

    return app


class RpcServer:
    """Serves a Manager's administrative handlers on host:port."""

    def __init__(
        self,
        manager: Manager,
        host: str = defaults.DEFAULT_RPC_HOST,
        port: int = defaults.DEFAULT_RPC_PORT,
    ):
        self.manager = manager
        self.host = host
        self.port = port

        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start listening."""
        if self._running:
            logger.warning("RPC server already running")
            return

        self._runner = web.AppRunner(create_app(self.manager))
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        self._running = True
        logger.info(f"RPC server listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop listening."""
        if not self._running:
            return

        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()

        self._running = False
        self._runner = None
        self._site = None

        logger.info("RPC server stopped")

    async def run_forever(self) -> None:
        """Start the manager and server, and run until cancelled."""
        await self.manager.start()
        try:
            await self.start()
            while self._running:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()
            await self.manager.stop()
