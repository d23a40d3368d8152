"""Trade sizing and trade-count limits."""

import time
from collections import deque
from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict, Optional
from loguru import logger

from ..config import RiskConfig


class BindingConstraint(Enum):
    """Which limit set the recommended amount."""
    RESERVE = "reserve"
    PERCENTAGE = "percentage"
    ABSOLUTE = "absolute_limit"
    NONE = "none"


@dataclass
class TradeSizing:
    """Recommended trade amount and how it was derived."""
    recommended_amount: float
    binding_constraint: BindingConstraint
    available_balance: float
    reserve_amount: float
    balance_after_reserve: float
    max_by_percentage: float
    max_by_absolute: float

    @property
    def can_trade(self) -> bool:
        return self.recommended_amount > 0

    def to_dict(self):
        return {
            "recommended_amount": self.recommended_amount,
            "binding_constraint": self.binding_constraint.value,
            "available_balance": self.available_balance,
            "reserve_amount": self.reserve_amount,
            "balance_after_reserve": self.balance_after_reserve,
            "max_by_percentage": self.max_by_percentage,
            "max_by_absolute": self.max_by_absolute,
        }


@dataclass
class LimitCheck:
    """Result of a count-based limit."""
    allowed: bool
    current: int
    limit: int
    reason: Optional[str] = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current)


class RiskCalculator:
    """Sizes trades against reserve, balance-percentage and absolute limits."""

    def __init__(self, limits: RiskConfig):
        self.limits = limits
        self.fallback_units = limits.fallback_units_per_reference
        self._trade_times: Deque[float] = deque()

    def convert_reference_to_asset(self, amount_ref: float, asset: str,
                                   reference_rate: Optional[float] = None) -> Optional[float]:
        """Convert a reference-currency amount into units of `asset`.

        `reference_rate` is the price of one unit of `asset` in the reference
        currency. Without it the static approximate table is used.
        """
        if reference_rate is not None and reference_rate > 0:
            return amount_ref / reference_rate

        units = self.fallback_units.get(asset)
        if units is None:
            return None
        logger.debug(f"Using fallback rate for {asset}: {units} per reference unit")
        return amount_ref * units

    def size_trade_amount(self, available_balance: float, asset: str,
                          reference_rate: Optional[float] = None) -> TradeSizing:
        """Recommended amount of `asset` to trade given the available balance."""
        reserve_amount = available_balance * self.limits.min_reserve_percent / 100
        balance_after_reserve = available_balance - reserve_amount
        max_by_percentage = available_balance * self.limits.max_balance_percent / 100

        max_by_absolute = self.convert_reference_to_asset(
            self.limits.max_trade_amount_ref, asset, reference_rate
        )
        if max_by_absolute is None:
            logger.warning(f"No rate for {asset}, absolute trade limit blocks trading")
            max_by_absolute = 0.0

        # Order decides ties
        candidates = [
            (BindingConstraint.RESERVE, balance_after_reserve),
            (BindingConstraint.PERCENTAGE, max_by_percentage),
            (BindingConstraint.ABSOLUTE, max_by_absolute),
        ]
        binding, smallest = min(candidates, key=lambda c: c[1])
        recommended = max(0.0, smallest)

        if recommended >= available_balance:
            binding = BindingConstraint.NONE

        return TradeSizing(
            recommended_amount=recommended,
            binding_constraint=binding,
            available_balance=available_balance,
            reserve_amount=reserve_amount,
            balance_after_reserve=balance_after_reserve,
            max_by_percentage=max_by_percentage,
            max_by_absolute=max_by_absolute,
        )

    def _prune(self, now: float):
        day_start = datetime.fromtimestamp(now, tz=timezone.utc).replace(
            hour=0, minute=0, second=0, microsecond=0
        ).timestamp()
        while self._trade_times and self._trade_times[0] < day_start:
            self._trade_times.popleft()

    def record_trade(self, ts: Optional[float] = None):
        """Count a started trade towards today's limit."""
        ts = ts if ts is not None else time.time()
        self._trade_times.append(ts)
        self._prune(ts)

    def daily_trade_count(self, now: Optional[float] = None) -> int:
        self._prune(now if now is not None else time.time())
        return len(self._trade_times)

    def check_daily_limit(self, now: Optional[float] = None) -> LimitCheck:
        """Trades started since 00:00 UTC against max_daily_trades."""
        count = self.daily_trade_count(now)
        limit = self.limits.max_daily_trades
        if count >= limit:
            return LimitCheck(False, count, limit, f"Daily trade limit reached ({count}/{limit})")
        return LimitCheck(True, count, limit)

    def check_concurrency(self, active_trades: int) -> LimitCheck:
        """Trades in flight (not counting the new one) against max_concurrent_trades."""
        limit = self.limits.max_concurrent_trades
        if active_trades >= limit:
            return LimitCheck(False, active_trades, limit,
                              f"Concurrent trade limit reached ({active_trades}/{limit})")
        return LimitCheck(True, active_trades, limit)

    def get_status(self) -> Dict[str, object]:
        return {
            "daily_trades": self.daily_trade_count(),
            "max_daily_trades": self.limits.max_daily_trades,
            "max_concurrent_trades": self.limits.max_concurrent_trades,
            "max_balance_percent": self.limits.max_balance_percent,
            "max_trade_amount_ref": self.limits.max_trade_amount_ref,
            "min_reserve_percent": self.limits.min_reserve_percent,
        }
