"""Test trade sizing and trade-count limits."""

from datetime import datetime, timezone
import pytest

from bridgearb.config import RiskConfig
from bridgearb.core.risk import BindingConstraint, RiskCalculator


class TestTradeSizing:
    """Test size_trade_amount."""

    def setup_method(self):
        self.risk = RiskCalculator(RiskConfig(
            max_balance_percent=10.0,
            max_trade_amount_ref=5000.0,
            min_reserve_percent=5.0,
        ))

    def test_percentage_binds_for_small_balance(self):
        sizing = self.risk.size_trade_amount(1000.0, "USDT")

        assert sizing.recommended_amount == pytest.approx(100.0)
        assert sizing.binding_constraint is BindingConstraint.PERCENTAGE
        assert sizing.reserve_amount == pytest.approx(50.0)
        assert sizing.balance_after_reserve == pytest.approx(950.0)

    def test_absolute_binds_for_large_balance(self):
        sizing = self.risk.size_trade_amount(100000.0, "USDT")

        assert sizing.recommended_amount == pytest.approx(5000.0)
        assert sizing.binding_constraint is BindingConstraint.ABSOLUTE

    def test_reserve_binds_when_percentage_is_loose(self):
        risk = RiskCalculator(RiskConfig(max_balance_percent=100.0, max_trade_amount_ref=5000.0,
                                         min_reserve_percent=5.0))
        sizing = risk.size_trade_amount(1000.0, "USDT")

        assert sizing.recommended_amount == pytest.approx(950.0)
        assert sizing.binding_constraint is BindingConstraint.RESERVE

    def test_whole_balance_reports_no_binding(self):
        risk = RiskCalculator(RiskConfig(max_balance_percent=100.0, max_trade_amount_ref=5000.0,
                                         min_reserve_percent=0.0))
        sizing = risk.size_trade_amount(1000.0, "USDT")

        assert sizing.recommended_amount == pytest.approx(1000.0)
        assert sizing.binding_constraint is BindingConstraint.NONE

    def test_recommended_is_min_of_three_and_never_negative(self):
        for balance in (-50.0, 0.0, 10.0, 1234.5, 1e7):
            sizing = self.risk.size_trade_amount(balance, "USDT")
            expected = max(0.0, min(sizing.balance_after_reserve, sizing.max_by_percentage,
                                    sizing.max_by_absolute))
            assert sizing.recommended_amount == pytest.approx(expected)
            assert sizing.recommended_amount >= 0.0

    def test_fallback_rate_multiplies(self):
        """5000 USDT is about 95000 ZAR from the fallback table."""
        sizing = self.risk.size_trade_amount(10_000_000.0, "ZAR")
        assert sizing.max_by_absolute == pytest.approx(95000.0)

    def test_live_rate_divides(self):
        assert self.risk.convert_reference_to_asset(5000.0, "XRP", reference_rate=0.5) == pytest.approx(10000.0)

    def test_unknown_asset_blocks_trade(self):
        sizing = self.risk.size_trade_amount(1000.0, "DOGE")

        assert sizing.max_by_absolute == 0.0
        assert sizing.recommended_amount == 0.0
        assert not sizing.can_trade


class TestTradeLimits:
    """Test daily and concurrency limits."""

    def setup_method(self):
        self.risk = RiskCalculator(RiskConfig(max_daily_trades=2, max_concurrent_trades=1))
        self.noon = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc).timestamp()

    def test_daily_limit_reached(self):
        self.risk.record_trade(self.noon - 60)
        assert self.risk.check_daily_limit(self.noon).allowed

        self.risk.record_trade(self.noon - 30)
        check = self.risk.check_daily_limit(self.noon)
        assert not check.allowed
        assert check.current == 2
        assert check.remaining == 0

    def test_previous_utc_day_not_counted(self):
        yesterday = self.noon - 24 * 60 * 60
        self.risk.record_trade(yesterday)
        self.risk.record_trade(yesterday + 10)

        assert self.risk.daily_trade_count(self.noon) == 0
        assert self.risk.check_daily_limit(self.noon).allowed

    def test_concurrency(self):
        assert self.risk.check_concurrency(0).allowed
        assert not self.risk.check_concurrency(1).allowed
