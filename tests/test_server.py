"""Test the HTTP API."""

import aiohttp.test_utils
import pytest

from bridgearb.main import BridgeArbBot
from tests.sample_data import XRP_ADDRESS, XRP_TAG, make_config, make_paper_venues


def _make_bot():
    config = make_config(exchanges={
        "enabled": ["binance", "kraken"],
        "accounts": {
            "kraken": {"deposit_addresses": {"XRP": {"address": XRP_ADDRESS, "tag": XRP_TAG}}},
        },
    })
    venues, _ = make_paper_venues()
    return BridgeArbBot(config, exchanges=venues)


class TestApiServer:
    """Test routes against paper venues."""

    @pytest.mark.asyncio
    async def test_scan_ranks_paths(self):
        bot = _make_bot()
        await bot.price_cache.refresh()
        app = bot.server.create_app()

        async with aiohttp.test_utils.TestClient(aiohttp.test_utils.TestServer(app)) as client:
            resp = await client.post("/scan", json={"max_amount": 1000})
            assert resp.status == 200
            data = await resp.json()

        assert data["bridge_asset"] == "XRP"
        assert data["total_possible"] == 2
        assert data["opportunities"][0]["path"]["id"] == "binance-USDT-kraken-USDT"

    @pytest.mark.asyncio
    async def test_scan_unknown_venue_rejected(self):
        bot = _make_bot()
        app = bot.server.create_app()

        async with aiohttp.test_utils.TestClient(aiohttp.test_utils.TestServer(app)) as client:
            resp = await client.post("/scan", json={"venues": ["binance", "nowhere"]})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_execute_uses_configured_address(self):
        bot = _make_bot()
        await bot.price_cache.refresh()
        app = bot.server.create_app()

        async with aiohttp.test_utils.TestClient(aiohttp.test_utils.TestServer(app)) as client:
            resp = await client.post("/execute", json={
                "source_venue": "binance",
                "dest_venue": "kraken",
                "source_asset": "USDT",
                "amount": 100,
            })
            assert resp.status == 200
            result = await resp.json()

            resp = await client.get("/history?limit=5")
            history = await resp.json()

        await bot.queue.stop()
        assert result["state"] == "completed"
        assert result["success"] is True
        assert history["count"] == 1

    @pytest.mark.asyncio
    async def test_execute_busy_returns_409(self):
        bot = _make_bot()
        await bot.price_cache.refresh()
        bot.admission.acquire(["binance"], "swap-other")
        app = bot.server.create_app()

        async with aiohttp.test_utils.TestClient(aiohttp.test_utils.TestServer(app)) as client:
            resp = await client.post("/execute", json={
                "source_venue": "binance",
                "dest_venue": "kraken",
                "source_asset": "USDT",
                "amount": 100,
            })
            assert resp.status == 409
            data = await resp.json()
            assert data["code"] == "BUSY"

            resp = await client.get("/active-transfers")
            active = await resp.json()

        assert active["admission"] == {"binance": "swap-other"}
        assert active["venues"]["binance"] == "BUSY"

    @pytest.mark.asyncio
    async def test_execute_bad_request(self):
        bot = _make_bot()
        app = bot.server.create_app()

        async with aiohttp.test_utils.TestClient(aiohttp.test_utils.TestServer(app)) as client:
            resp = await client.post("/execute", json={"source_venue": "binance", "amount": -1})
            assert resp.status == 400

            resp = await client.post("/execute", json={
                "source_venue": "binance",
                "dest_venue": "bitstamp",
                "source_asset": "USDT",
                "amount": 100,
            })
            assert resp.status == 400

            resp = await client.get("/history?limit=abc")
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_status_routes(self):
        bot = _make_bot()
        await bot.price_cache.refresh()
        app = bot.server.create_app()

        async with aiohttp.test_utils.TestClient(aiohttp.test_utils.TestServer(app)) as client:
            resp = await client.get("/price-cache-status")
            cache_status = await resp.json()
            resp = await client.get("/bridges")
            bridges = await resp.json()

        assert cache_status["venues"]["kraken"]["price_count"] == 1
        assert bridges["bridges"] == ["XRP"]

    @pytest.mark.asyncio
    async def test_scan_applies_configured_threshold(self):
        bot = _make_bot()
        await bot.price_cache.refresh()
        app = bot.server.create_app()

        async with aiohttp.test_utils.TestClient(aiohttp.test_utils.TestServer(app)) as client:
            resp = await client.post("/scan", json={})
            default = await resp.json()
            resp = await client.post("/scan", json={"min_profit_percent": -100})
            everything = await resp.json()

        assert len(default["opportunities"]) == 1
        assert len(everything["opportunities"]) == 2

    @pytest.mark.asyncio
    async def test_execute_without_amount_uses_sized_amount(self):
        bot = _make_bot()
        await bot.price_cache.refresh()
        app = bot.server.create_app()

        async with aiohttp.test_utils.TestClient(aiohttp.test_utils.TestServer(app)) as client:
            resp = await client.post("/execute", json={
                "source_venue": "binance",
                "dest_venue": "kraken",
                "source_asset": "USDT",
            })
            assert resp.status == 200
            result = await resp.json()

        await bot.queue.stop()
        assert result["success"] is True
        # 10% of the 1000 USDT balance
        assert result["leg_log"][0]["input"] == pytest.approx(100.0)
        assert bot.exchanges["binance"].balances["USDT"] == pytest.approx(900.0)

    @pytest.mark.asyncio
    async def test_calculate_trade_amount(self):
        bot = _make_bot()
        await bot.price_cache.refresh()
        app = bot.server.create_app()

        async with aiohttp.test_utils.TestClient(aiohttp.test_utils.TestServer(app)) as client:
            resp = await client.post("/calculate-trade-amount",
                                     json={"venue": "binance", "asset": "usdt"})
            assert resp.status == 200
            from_balance = await resp.json()

            resp = await client.post("/calculate-trade-amount", json={
                "venue": "binance", "asset": "USDT", "available_balance": 100000,
            })
            large = await resp.json()

            resp = await client.post("/calculate-trade-amount",
                                     json={"venue": "nowhere", "asset": "USDT"})
            assert resp.status == 400

        assert from_balance["asset"] == "USDT"
        assert from_balance["recommended_amount"] == pytest.approx(100.0)
        assert from_balance["binding_constraint"] == "percentage"
        assert from_balance["reserve_amount"] == pytest.approx(50.0)
        assert large["recommended_amount"] == pytest.approx(5000.0)
        assert large["binding_constraint"] == "absolute_limit"
