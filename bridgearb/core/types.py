"""
Shared types for quotes, paths and profit estimates.
Kept separate from the services to avoid circular imports.
"""

import time
from typing import Dict, List, Optional, Any, Tuple
from dataclasses import dataclass, field

# Profit percent reported for paths that could not be evaluated or are not viable
SENTINEL_PROFIT_PERCENT = -100.0


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class PriceQuote:
    """Validated top-of-book quote for one pair on one venue."""
    venue: str
    pair: str
    bid: float
    ask: float
    last: float
    captured_at_ms: int
    synthetic: bool = False  # bid/ask derived from last price

    def age_ms(self, now: Optional[int] = None) -> int:
        return (now if now is not None else now_ms()) - self.captured_at_ms

    def is_stale(self, poll_interval_ms: int, now: Optional[int] = None) -> bool:
        return self.age_ms(now) > 2 * poll_interval_ms

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2

    @property
    def spread_pct(self) -> float:
        return (self.ask - self.bid) / self.mid * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bid": self.bid,
            "ask": self.ask,
            "last": self.last,
            "captured_at_ms": self.captured_at_ms,
            "synthetic": self.synthetic,
        }


@dataclass
class VenueSnapshot:
    """Latest accepted quotes for a venue."""
    venue: str
    quotes: Dict[str, PriceQuote]
    fetched_at_ms: int
    poll_interval_ms: int
    rejected: Dict[str, str] = field(default_factory=dict)

    def age_ms(self, now: Optional[int] = None) -> int:
        return (now if now is not None else now_ms()) - self.fetched_at_ms

    def is_stale(self, now: Optional[int] = None) -> bool:
        return self.age_ms(now) > 2 * self.poll_interval_ms

    def get(self, pair: str) -> Optional[PriceQuote]:
        return self.quotes.get(pair)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "venue": self.venue,
            "prices": {pair: q.to_dict() for pair, q in self.quotes.items()},
            "rejected": dict(self.rejected),
            "last_updated": self.fetched_at_ms,
            "age_ms": self.age_ms(),
            "stale": self.is_stale(),
        }


@dataclass(frozen=True)
class PathLeg:
    """One step of an arbitrage path."""
    index: int
    action: str  # buy | transfer | sell
    venue: str
    asset: str
    pair: Optional[str] = None
    to_venue: Optional[str] = None

    @property
    def description(self) -> str:
        if self.action == "transfer":
            return f"Transfer {self.asset} from {self.venue} to {self.to_venue}"
        base, _, quote = self.pair.partition("/")
        if self.action == "buy":
            return f"Buy {base} with {quote} on {self.venue}"
        return f"Sell {base} for {quote} on {self.venue}"


@dataclass(frozen=True)
class ArbitragePath:
    """Buy the bridge asset on one venue, move it, sell it on another."""
    id: str
    source_venue: str
    dest_venue: str
    source_asset: str
    dest_asset: str
    bridge_asset: str
    legs: Tuple[PathLeg, ...]

    @classmethod
    def build(cls, source_venue: str, dest_venue: str, source_asset: str,
              dest_asset: str, bridge_asset: str) -> "ArbitragePath":
        legs = (
            PathLeg(1, "buy", source_venue, bridge_asset, pair=f"{bridge_asset}/{source_asset}"),
            PathLeg(2, "transfer", source_venue, bridge_asset, to_venue=dest_venue),
            PathLeg(3, "sell", dest_venue, bridge_asset, pair=f"{bridge_asset}/{dest_asset}"),
        )
        return cls(
            id=f"{source_venue}-{source_asset}-{dest_venue}-{dest_asset}",
            source_venue=source_venue,
            dest_venue=dest_venue,
            source_asset=source_asset,
            dest_asset=dest_asset,
            bridge_asset=bridge_asset,
            legs=legs,
        )

    @property
    def buy_pair(self) -> str:
        return self.legs[0].pair

    @property
    def sell_pair(self) -> str:
        return self.legs[2].pair

    @property
    def description(self) -> str:
        return (f"{self.source_asset} on {self.source_venue} → {self.dest_asset} "
                f"on {self.dest_venue} via {self.bridge_asset}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_venue": self.source_venue,
            "dest_venue": self.dest_venue,
            "source_asset": self.source_asset,
            "dest_asset": self.dest_asset,
            "bridge_asset": self.bridge_asset,
            "description": self.description,
            "legs": [
                {"leg": leg.index, "action": leg.action, "venue": leg.venue,
                 "pair": leg.pair, "asset": leg.asset, "to_venue": leg.to_venue}
                for leg in self.legs
            ],
        }


@dataclass
class FeeBreakdown:
    """Fees of one path. trading is in quote units, withdrawal/network in bridge units."""
    trading: float = 0.0
    withdrawal: float = 0.0
    network: float = 0.0


@dataclass
class PathProfitEstimate:
    """Modeled outcome of running a path with a given input amount."""
    path: ArbitragePath
    input_amount: float
    output_amount: float
    profit_percent: float
    profit_amount: float
    fees: FeeBreakdown = field(default_factory=FeeBreakdown)
    bridge_bought: float = 0.0
    bridge_after_withdrawal: float = 0.0
    source_ask: Optional[float] = None
    dest_bid: Optional[float] = None
    evaluated: bool = True
    skip_reason: Optional[str] = None

    @property
    def is_viable(self) -> bool:
        return self.evaluated and self.profit_percent > SENTINEL_PROFIT_PERCENT

    @classmethod
    def sentinel(cls, path: ArbitragePath, amount: float, reason: str,
                 evaluated: bool = False, **kwargs) -> "PathProfitEstimate":
        return cls(
            path=path,
            input_amount=amount,
            output_amount=0.0,
            profit_percent=SENTINEL_PROFIT_PERCENT,
            profit_amount=-amount,
            evaluated=evaluated,
            skip_reason=reason,
            **kwargs,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path.to_dict(),
            "input_amount": self.input_amount,
            "output_amount": self.output_amount,
            "profit_percent": self.profit_percent,
            "profit_amount": self.profit_amount,
            "fees": {
                "trading": self.fees.trading,
                "withdrawal": self.fees.withdrawal,
                "network": self.fees.network,
            },
            "bridge_bought": self.bridge_bought,
            "bridge_after_withdrawal": self.bridge_after_withdrawal,
            "source_ask": self.source_ask,
            "dest_bid": self.dest_bid,
            "evaluated": self.evaluated,
            "skip_reason": self.skip_reason,
        }


@dataclass
class ScanResult:
    """Outcome of scanning every path for one bridge asset."""
    bridge_asset: str
    ranked: List[PathProfitEstimate]
    skipped: List[PathProfitEstimate]
    total_possible: int
    scanned_at_ms: int
    duration_ms: int = 0

    @property
    def evaluated_count(self) -> int:
        return len(self.ranked)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    @property
    def best(self) -> Optional[PathProfitEstimate]:
        for estimate in self.ranked:
            if estimate.is_viable:
                return estimate
        return None

    def profitable(self, min_profit_percent: float) -> List[PathProfitEstimate]:
        return [e for e in self.ranked if e.is_viable and e.profit_percent >= min_profit_percent]

    def to_dict(self, min_profit_percent: Optional[float] = None,
                limit: Optional[int] = None) -> Dict[str, Any]:
        ranked = self.ranked if min_profit_percent is None else self.profitable(min_profit_percent)
        if limit is not None:
            ranked = ranked[:limit]
        return {
            "bridge_asset": self.bridge_asset,
            "opportunities": [e.to_dict() for e in ranked],
            "evaluated_count": self.evaluated_count,
            "skipped_count": self.skipped_count,
            "total_possible": self.total_possible,
            "scanned_at_ms": self.scanned_at_ms,
            "duration_ms": self.duration_ms,
        }
