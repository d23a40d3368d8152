"""Test path generation, the profit model and ranking."""

import math
import pytest
from unittest.mock import Mock

from bridgearb.core.scanner import (
    PathScanner, calculate_path_profit, generate_paths, group_by_venue_pair, path_statistics,
)
from bridgearb.core.types import ArbitragePath, PriceQuote, SENTINEL_PROFIT_PERCENT
from tests.sample_data import make_config


def _quote(venue, pair, bid, ask):
    return PriceQuote(venue=venue, pair=pair, bid=bid, ask=ask, last=(bid + ask) / 2,
                      captured_at_ms=0)


class TestPathGeneration:
    """Test combinatorial path generation."""

    def test_path_count(self):
        """V venues and A assets give V × (V − 1) × A paths."""
        paths = generate_paths(["binance", "kraken", "okx", "bybit"], ["USDT", "USDC", "ZAR"], "XRP")
        assert len(paths) == 4 * 3 * 3

    def test_bridge_asset_excluded(self):
        paths = generate_paths(["binance", "kraken"], ["USDT", "XRP"], "XRP")
        assert {p.source_asset for p in paths} == {"USDT"}

    def test_path_shape(self):
        path = generate_paths(["binance", "kraken"], ["USDT"], "XRP")[0]

        assert path.id == "binance-USDT-kraken-USDT"
        assert [leg.action for leg in path.legs] == ["buy", "transfer", "sell"]
        assert path.buy_pair == "XRP/USDT"
        assert path.sell_pair == "XRP/USDT"
        assert path.legs[1].to_venue == "kraken"

    def test_category_filter(self):
        paths = generate_paths(["binance", "kraken"], ["USDT", "ZAR"], "XRP",
                               {"ZAR": False, "INTERNATIONAL": True})
        assert {p.source_asset for p in paths} == {"USDT"}

    def test_grouping_and_statistics(self):
        paths = generate_paths(["binance", "kraken", "okx"], ["USDT", "USDC"], "XRP")
        grouped = group_by_venue_pair(paths)
        stats = path_statistics(paths)

        assert len(grouped) == 6
        assert len(grouped["binance-kraken"]) == 2
        assert stats["total_paths"] == 12
        assert stats["by_asset"]["USDT"] == 6


class TestProfitModel:
    """Test calculate_path_profit."""

    def setup_method(self):
        self.path = ArbitragePath.build("binance", "kraken", "USDT", "USDT", "XRP")
        self.source = _quote("binance", "XRP/USDT", 0.49, 0.50)
        self.dest = _quote("kraken", "XRP/USDT", 0.52, 0.53)

    def test_profit_matches_fee_chain(self):
        """1000 in at ask 0.50, 0.1% fees, 0.1 XRP withdrawal fee, bid 0.52."""
        estimate = calculate_path_profit(self.path, self.source, self.dest, 1000.0,
                                         source_fee=0.001, dest_fee=0.001, withdrawal_fee=0.1)

        expected_output = (1000.0 / 0.50 * 0.999 - 0.1) * 0.52 * 0.999
        expected_percent = (expected_output - 1000.0) / 1000.0 * 100

        assert estimate.bridge_bought == pytest.approx(1998.0, abs=1e-9)
        assert estimate.bridge_after_withdrawal == pytest.approx(1997.9, abs=1e-9)
        assert abs(estimate.output_amount - expected_output) < 1e-6
        assert abs(estimate.profit_percent - expected_percent) < 1e-6
        assert 3.7 < estimate.profit_percent < 3.8
        assert estimate.is_viable

    def test_missing_quote_is_sentinel(self):
        estimate = calculate_path_profit(self.path, None, self.dest, 1000.0, 0.001, 0.001, 0.1)

        assert not estimate.evaluated
        assert estimate.profit_percent == SENTINEL_PROFIT_PERCENT
        assert estimate.profit_amount == -1000.0
        assert estimate.output_amount == 0.0

    def test_withdrawal_fee_exceeding_position(self):
        """Fee eating the whole bridge amount is evaluated but not viable."""
        estimate = calculate_path_profit(self.path, self.source, self.dest, 1.0,
                                         source_fee=0.001, dest_fee=0.001, withdrawal_fee=5.0)
        assert estimate.evaluated
        assert not estimate.is_viable
        assert estimate.profit_percent == SENTINEL_PROFIT_PERCENT

    def test_non_finite_price_is_sentinel(self):
        bad = _quote("binance", "XRP/USDT", 0.49, 0.50)
        bad.ask = math.inf
        estimate = calculate_path_profit(self.path, bad, self.dest, 1000.0, 0.001, 0.001, 0.1)
        assert not estimate.evaluated
        assert estimate.profit_percent == SENTINEL_PROFIT_PERCENT

    def test_network_fee_reduces_output(self):
        without = calculate_path_profit(self.path, self.source, self.dest, 1000.0, 0.001, 0.001, 0.1)
        with_fee = calculate_path_profit(self.path, self.source, self.dest, 1000.0, 0.001, 0.001,
                                         0.1, network_fee=1.0)
        assert with_fee.output_amount < without.output_amount
        assert with_fee.fees.network == 1.0


class TestPathScanner:
    """Test full scans against a price cache."""

    def setup_method(self):
        self.config = make_config()
        quotes = {
            ("binance", "XRP/USDT"): _quote("binance", "XRP/USDT", 0.499, 0.50),
            ("kraken", "XRP/USDT"): _quote("kraken", "XRP/USDT", 0.52, 0.521),
            ("okx", "XRP/USDT"): _quote("okx", "XRP/USDT", 0.505, 0.506),
        }
        self.cache = Mock()
        self.cache.get_quote.side_effect = lambda venue, pair: quotes.get((venue, pair))
        self.scanner = PathScanner(self.config, self.cache)

    def test_counts_add_up(self):
        """Evaluated plus skipped always equals the number of paths."""
        result = self.scanner.scan(["binance", "kraken", "okx", "bybit"], ["USDT", "USDC"], "XRP",
                                   amount=1000.0)

        assert result.total_possible == 4 * 3 * 2
        assert result.evaluated_count + result.skipped_count == result.total_possible
        assert all(e.profit_percent == SENTINEL_PROFIT_PERCENT for e in result.skipped)

    def test_ranked_descending(self):
        result = self.scanner.scan(["binance", "kraken", "okx"], ["USDT"], "XRP", amount=1000.0)
        profits = [e.profit_percent for e in result.ranked]

        assert profits == sorted(profits, reverse=True)
        assert result.best.path.id == "binance-USDT-kraken-USDT"

    def test_ties_keep_generation_order(self):
        flat = _quote("x", "XRP/USDT", 0.5, 0.5)
        self.cache.get_quote.side_effect = lambda venue, pair: flat
        result = self.scanner.scan(["a", "b", "c"], ["USDT"], "XRP", amount=1000.0)

        assert [e.path.id for e in result.ranked] == [
            p.id for p in generate_paths(["a", "b", "c"], ["USDT"], "XRP")
        ]

    def test_estimate_error_becomes_skip(self):
        self.cache.get_quote.side_effect = RuntimeError("boom")
        result = self.scanner.scan(["binance", "kraken"], ["USDT"], "XRP", amount=1000.0)

        assert result.evaluated_count == 0
        assert result.skipped_count == 2
        assert result.best is None

    def test_profitable_filter_and_dict(self):
        result = self.scanner.scan(["binance", "kraken", "okx"], ["USDT"], "XRP", amount=1000.0)
        data = result.to_dict(min_profit_percent=2.0)

        assert all(o["profit_percent"] >= 2.0 for o in data["opportunities"])
        assert data["total_possible"] == 6
