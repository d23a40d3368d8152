"""Test round-robin scanning across bridge assets."""

import asyncio
import pytest
from unittest.mock import Mock

from bridgearb.core.scanner import PathScanner
from bridgearb.core.scheduler import MultiBridgeScheduler
from bridgearb.core.types import PriceQuote
from tests.sample_data import make_config


def _quote(venue, pair, bid, ask):
    return PriceQuote(venue=venue, pair=pair, bid=bid, ask=ask, last=(bid + ask) / 2,
                      captured_at_ms=0)


class TestMultiBridgeScheduler:
    """Test bridge rotation and single-flight scans."""

    def setup_method(self):
        self.config = make_config(scan={
            "currencies": ["USDT"],
            "bridge_assets": ["XRP", "XLM"],
            "rotation_interval_s": 60.0,
        })
        quotes = {
            ("binance", "XRP/USDT"): _quote("binance", "XRP/USDT", 0.499, 0.50),
            ("kraken", "XRP/USDT"): _quote("kraken", "XRP/USDT", 0.52, 0.521),
            ("binance", "XLM/USDT"): _quote("binance", "XLM/USDT", 0.10, 0.1001),
            ("kraken", "XLM/USDT"): _quote("kraken", "XLM/USDT", 0.1002, 0.1003),
        }
        cache = Mock()
        cache.get_quote.side_effect = lambda venue, pair: quotes.get((venue, pair))
        self.scanner = PathScanner(self.config, cache)
        self.scheduler = MultiBridgeScheduler(self.config, self.scanner,
                                              venues=["binance", "kraken"])

    @pytest.mark.asyncio
    async def test_scan_bridge_stores_result(self):
        result = await self.scheduler.scan_bridge("XRP", amount=1000.0)

        assert result is not None
        assert self.scheduler.results["XRP"] is result
        assert not self.scheduler.is_scanning("XRP")

    @pytest.mark.asyncio
    async def test_concurrent_scan_of_same_bridge_skipped(self):
        """A second scan of a bridge already in flight returns None."""
        self.scheduler._in_flight.add("XRP")

        assert await self.scheduler.scan_bridge("XRP") is None
        assert "XRP" not in self.scheduler.results

    @pytest.mark.asyncio
    async def test_best_overall_across_bridges(self):
        await self.scheduler.scan_bridge("XRP", amount=1000.0)
        await self.scheduler.scan_bridge("XLM", amount=1000.0)

        best = self.scheduler.best_overall()
        assert best.path.bridge_asset == "XRP"
        assert best.path.id == "binance-USDT-kraken-USDT"

    @pytest.mark.asyncio
    async def test_scan_failure_recorded(self):
        self.scanner.scan = Mock(side_effect=RuntimeError("scan exploded"))

        assert await self.scheduler.scan_bridge("XRP") is None
        assert "scan exploded" in self.scheduler.errors["XRP"]

    @pytest.mark.asyncio
    async def test_rotation_starts_with_first_bridge(self):
        await self.scheduler.start()
        await self.scheduler.start()
        for _ in range(50):
            if "XRP" in self.scheduler.results:
                break
            await asyncio.sleep(0.01)
        await self.scheduler.stop()
        await self.scheduler.stop()

        assert "XRP" in self.scheduler.results
        assert self.scheduler.current_index == 1
        assert not self.scheduler.is_running

    def test_status_shape(self):
        status = self.scheduler.get_status()
        assert status["bridges"] == ["XRP", "XLM"]
        assert status["current_bridge"] == "XRP"
        assert status["best_overall"] is None
