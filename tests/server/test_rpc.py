"""Tests for the administrative RPC server."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiohttp import test_utils

from unl.core.config import ValidatorsConfig
from unl.server.rpc import RpcServer, create_app
from unl.validators.manager import Manager


@pytest.fixture
def mock_manager():
    manager = MagicMock()
    manager.is_running = True
    manager.rpc_print = MagicMock(return_value={"counts": {"known": 3, "trusted": 2}})
    manager.rpc_rebuild = MagicMock(return_value={"chosen_list": "rebuilding"})
    manager.rpc_sources = MagicMock(return_value={"sources": []})
    manager.rpc_handlers = {
        "validators_print": manager.rpc_print,
        "validators_rebuild": manager.rpc_rebuild,
        "validators_sources": manager.rpc_sources,
    }
    return manager


class TestRoutes:
    """Test the HTTP routes against a mocked manager."""

    @pytest.mark.asyncio
    async def test_print(self, mock_manager):
        async with test_utils.TestClient(test_utils.TestServer(create_app(mock_manager))) as client:
            resp = await client.get("/validators/print")
            assert resp.status == 200
            assert (await resp.json())["counts"]["trusted"] == 2

    @pytest.mark.asyncio
    async def test_rebuild_is_post_only(self, mock_manager):
        async with test_utils.TestClient(test_utils.TestServer(create_app(mock_manager))) as client:
            resp = await client.post("/validators/rebuild")
            assert resp.status == 200
            assert await resp.json() == {"chosen_list": "rebuilding"}

            resp = await client.get("/validators/rebuild")
            assert resp.status == 405

        mock_manager.rpc_rebuild.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_sources(self, mock_manager):
        async with test_utils.TestClient(test_utils.TestServer(create_app(mock_manager))) as client:
            resp = await client.get("/validators/sources")
            assert await resp.json() == {"sources": []}

    @pytest.mark.asyncio
    async def test_named_method(self, mock_manager):
        async with test_utils.TestClient(test_utils.TestServer(create_app(mock_manager))) as client:
            resp = await client.post("/rpc", json={"method": "validators_rebuild"})
            assert resp.status == 200
            assert await resp.json() == {"result": {"chosen_list": "rebuilding"}}

    @pytest.mark.asyncio
    async def test_unknown_method(self, mock_manager):
        async with test_utils.TestClient(test_utils.TestServer(create_app(mock_manager))) as client:
            resp = await client.post("/rpc", json={"method": "ledger_accept"})
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_invalid_json(self, mock_manager):
        async with test_utils.TestClient(test_utils.TestServer(create_app(mock_manager))) as client:
            resp = await client.post("/rpc", data="{not json")
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_handler_error(self, mock_manager):
        mock_manager.rpc_handlers["validators_print"] = MagicMock(side_effect=RuntimeError("boom"))
        async with test_utils.TestClient(test_utils.TestServer(create_app(mock_manager))) as client:
            resp = await client.post("/rpc", json={"method": "validators_print"})
            assert resp.status == 500
            assert "boom" in (await resp.json())["error"]

    @pytest.mark.asyncio
    async def test_health(self, mock_manager):
        async with test_utils.TestClient(test_utils.TestServer(create_app(mock_manager))) as client:
            resp = await client.get("/health")
            assert await resp.json() == {"status": "ok"}


class TestEndToEnd:
    """Test the routes against a real manager."""

    @pytest.mark.asyncio
    async def test_print_real_manager(self, store, keys):
        config = ValidatorsConfig(target_count=2, static_lists={"bootstrap": keys[:3]})
        manager = Manager(config, store=store)
        await manager.start()
        try:
            await manager.flush()
            async with test_utils.TestClient(test_utils.TestServer(create_app(manager))) as client:
                resp = await client.get("/validators/print")
                status = await resp.json()

            assert status["counts"]["trusted"] == 3
            assert status["chosen"]["size"] == 2
            assert status["sources"][0]["name"] == "bootstrap"
        finally:
            await manager.stop()


class TestRpcServer:
    """Test server lifecycle."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, mock_manager):
        server = RpcServer(mock_manager, host="127.0.0.1", port=8480)

        with patch("unl.server.rpc.web.TCPSite") as mock_site_cls:
            mock_site = MagicMock()
            mock_site.start = AsyncMock()
            mock_site.stop = AsyncMock()
            mock_site_cls.return_value = mock_site

            await server.start()
            assert server.is_running
            mock_site_cls.assert_called_once()
            assert mock_site_cls.call_args.args[1:] == ("127.0.0.1", 8480)

            await server.stop()
            assert not server.is_running
            mock_site.stop.assert_awaited_once()
