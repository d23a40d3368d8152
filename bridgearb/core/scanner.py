"""Bridge-asset path generation, profit model and ranking."""

import math
import time
from collections import defaultdict
from typing import Dict, List, Optional, Any
from loguru import logger

from ..config import Config
from ..venues import INTERNATIONAL_ASSETS, ZAR_ASSETS
from .quotes import PriceCache
from .types import (
    ArbitragePath, FeeBreakdown, PathProfitEstimate, PriceQuote, ScanResult, now_ms,
)


def is_allowed_by_category(asset: str, enabled_categories: Dict[str, bool]) -> bool:
    """Category filter: ZAR paths and international (USD/EUR/GBP/stablecoin) paths."""
    if asset in ZAR_ASSETS and not enabled_categories.get("ZAR", True):
        return False
    if asset in INTERNATIONAL_ASSETS and not enabled_categories.get("INTERNATIONAL", True):
        return False
    return True


def generate_paths(venues: List[str], assets: List[str], bridge_asset: str,
                   enabled_categories: Optional[Dict[str, bool]] = None) -> List[ArbitragePath]:
    """Every ordered pair of distinct venues crossed with every tradable asset.

    Paths start and end in the same asset, so the profit is the bridge-rate
    difference between the two venues. The bridge asset itself is not tradable.
    """
    venues = list(dict.fromkeys(venues))
    tradable = [a for a in dict.fromkeys(assets) if a != bridge_asset]
    if enabled_categories:
        tradable = [a for a in tradable if is_allowed_by_category(a, enabled_categories)]

    paths = []
    for source in venues:
        for dest in venues:
            if dest == source:
                continue
            for asset in tradable:
                paths.append(ArbitragePath.build(source, dest, asset, asset, bridge_asset))
    return paths


def calculate_path_profit(path: ArbitragePath, source_quote: Optional[PriceQuote],
                          dest_quote: Optional[PriceQuote], amount: float,
                          source_fee: float, dest_fee: float, withdrawal_fee: float,
                          network_fee: float = 0.0) -> PathProfitEstimate:
    """Model buy -> withdraw -> sell for `amount` of the source asset.

    Missing or invalid prices and non-finite results give the -100% sentinel
    with evaluated=False. A withdrawal fee that eats the whole position gives
    the sentinel with evaluated=True.
    """
    if source_quote is None:
        return PathProfitEstimate.sentinel(path, amount, f"no price for {path.buy_pair} on {path.source_venue}")
    if dest_quote is None:
        return PathProfitEstimate.sentinel(path, amount, f"no price for {path.sell_pair} on {path.dest_venue}")

    ask = source_quote.ask
    bid = dest_quote.bid
    if not (math.isfinite(ask) and ask > 0 and math.isfinite(bid) and bid > 0):
        return PathProfitEstimate.sentinel(path, amount, "non-positive price",
                                           source_ask=ask, dest_bid=bid)
    if not (math.isfinite(amount) and amount > 0):
        return PathProfitEstimate.sentinel(path, amount, "invalid input amount")

    bridge_bought = (amount / ask) * (1 - source_fee)
    after_withdrawal = bridge_bought - withdrawal_fee - network_fee

    fees = FeeBreakdown(
        trading=amount * source_fee,
        withdrawal=withdrawal_fee,
        network=network_fee,
    )

    if after_withdrawal <= 0:
        return PathProfitEstimate.sentinel(
            path, amount, "withdrawal fee exceeds bridge amount", evaluated=True,
            fees=fees, bridge_bought=bridge_bought, bridge_after_withdrawal=after_withdrawal,
            source_ask=ask, dest_bid=bid,
        )

    output = after_withdrawal * bid * (1 - dest_fee)
    fees.trading += after_withdrawal * bid * dest_fee
    profit_amount = output - amount
    profit_percent = profit_amount / amount * 100

    if not all(math.isfinite(v) for v in (bridge_bought, output, profit_amount, profit_percent)):
        return PathProfitEstimate.sentinel(path, amount, "non-finite result",
                                           source_ask=ask, dest_bid=bid)

    return PathProfitEstimate(
        path=path,
        input_amount=amount,
        output_amount=output,
        profit_percent=profit_percent,
        profit_amount=profit_amount,
        fees=fees,
        bridge_bought=bridge_bought,
        bridge_after_withdrawal=after_withdrawal,
        source_ask=ask,
        dest_bid=bid,
    )


def group_by_venue_pair(paths: List[ArbitragePath]) -> Dict[str, List[ArbitragePath]]:
    """Paths keyed by 'source-dest'."""
    grouped: Dict[str, List[ArbitragePath]] = defaultdict(list)
    for path in paths:
        grouped[f"{path.source_venue}-{path.dest_venue}"].append(path)
    return dict(grouped)


def path_statistics(paths: List[ArbitragePath]) -> Dict[str, Any]:
    """Counts by source venue, destination venue and asset."""
    by_source: Dict[str, int] = defaultdict(int)
    by_dest: Dict[str, int] = defaultdict(int)
    by_asset: Dict[str, int] = defaultdict(int)
    for path in paths:
        by_source[path.source_venue] += 1
        by_dest[path.dest_venue] += 1
        by_asset[path.source_asset] += 1
    return {
        "total_paths": len(paths),
        "by_source_venue": dict(by_source),
        "by_dest_venue": dict(by_dest),
        "by_asset": dict(by_asset),
    }


class PathScanner:
    """Ranks every bridge path using the latest cached prices."""

    def __init__(self, config: Config, price_cache: PriceCache):
        self.config = config
        self.price_cache = price_cache
        self.default_amount = config.risk.max_trade_amount_ref
        self.enabled_categories = config.scan.enabled_categories

    def estimate(self, path: ArbitragePath, amount: float,
                 source_quote: Optional[PriceQuote] = None,
                 dest_quote: Optional[PriceQuote] = None) -> PathProfitEstimate:
        """Profit estimate for one path, from the cache unless quotes are given."""
        if source_quote is None:
            source_quote = self.price_cache.get_quote(path.source_venue, path.buy_pair)
        if dest_quote is None:
            dest_quote = self.price_cache.get_quote(path.dest_venue, path.sell_pair)
        return calculate_path_profit(
            path,
            source_quote,
            dest_quote,
            amount,
            source_fee=self.config.get_taker_fee(path.source_venue),
            dest_fee=self.config.get_taker_fee(path.dest_venue),
            withdrawal_fee=self.config.get_withdrawal_fee(path.bridge_asset),
            network_fee=self.config.get_network_fee(path.bridge_asset),
        )

    def scan(self, venues: List[str], assets: List[str], bridge_asset: str,
             amount: Optional[float] = None) -> ScanResult:
        """Evaluate and rank all paths. Never raises on bad prices."""
        started = time.time()
        amount = amount or self.default_amount
        paths = generate_paths(venues, assets, bridge_asset, self.enabled_categories)

        ranked: List[PathProfitEstimate] = []
        skipped: List[PathProfitEstimate] = []
        for path in paths:
            try:
                estimate = self.estimate(path, amount)
            except Exception as e:
                logger.error(f"Path {path.id} failed: {e}")
                estimate = PathProfitEstimate.sentinel(path, amount, f"error: {e}")

            if estimate.evaluated:
                ranked.append(estimate)
            else:
                skipped.append(estimate)

        # Stable sort keeps generation order for ties
        ranked.sort(key=lambda e: e.profit_percent, reverse=True)

        result = ScanResult(
            bridge_asset=bridge_asset,
            ranked=ranked,
            skipped=skipped,
            total_possible=len(paths),
            scanned_at_ms=now_ms(),
            duration_ms=int((time.time() - started) * 1000),
        )

        best = result.best
        if best:
            logger.info(f"✅ {bridge_asset} scan: {result.evaluated_count}/{result.total_possible} "
                        f"evaluated, best {best.path.id} {best.profit_percent:+.3f}%")
        else:
            logger.info(f"❌ {bridge_asset} scan: {result.evaluated_count}/{result.total_possible} "
                        f"evaluated, no viable path ({result.skipped_count} skipped)")
        return result
