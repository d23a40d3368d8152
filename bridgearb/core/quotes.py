"""Polled price cache shared by the scanner and the validator."""

import asyncio
import math
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from loguru import logger

from ..config import Config
from ..errors import PriceUnavailableError
from ..exchanges.base import ExchangeAdapter, Ticker, split_pair
from .types import PriceQuote, VenueSnapshot, now_ms


def watch_pairs(bridges: Iterable[str], currencies: Iterable[str], reference: str) -> List[str]:
    """Pairs each venue is polled for.

    Every bridge against every currency, plus the reference-quoted legs needed
    to cross-check rates that are not quoted against the reference currency.
    """
    pairs: List[str] = []

    def add(pair: str):
        if pair not in pairs:
            pairs.append(pair)

    currencies = list(currencies)
    for bridge in bridges:
        for currency in currencies:
            if currency == bridge:
                continue
            add(f"{bridge}/{currency}")
        add(f"{bridge}/{reference}")

    for currency in currencies:
        if currency != reference:
            # Fiat books are usually quoted as USDT/ZAR rather than ZAR/USDT
            add(f"{reference}/{currency}")
            add(f"{currency}/{reference}")

    return pairs


def _finite_positive(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value) and value > 0


def normalize_ticker(venue: str, pair: str, ticker: Ticker, captured_at_ms: int,
                     synthetic_spread_pct: float = 0.05) -> Tuple[Optional[PriceQuote], Optional[str]]:
    """Turn a raw ticker into a PriceQuote, or return the reason it was rejected."""
    bid, ask, last = ticker.bid, ticker.ask, ticker.last
    synthetic = False

    if (bid is None or ask is None) and _finite_positive(last):
        half_spread = synthetic_spread_pct / 100
        bid = last * (1 - half_spread)
        ask = last * (1 + half_spread)
        synthetic = True

    if not _finite_positive(bid) or not _finite_positive(ask):
        return None, f"no liquidity (bid={bid}, ask={ask})"

    if bid > ask:
        return None, f"crossed book (bid={bid} > ask={ask})"

    if not _finite_positive(last):
        last = (bid + ask) / 2

    return PriceQuote(
        venue=venue,
        pair=pair,
        bid=float(bid),
        ask=float(ask),
        last=float(last),
        captured_at_ms=captured_at_ms,
        synthetic=synthetic,
    ), None


def reference_price(asset: str, quotes: Dict[str, PriceQuote], reference: str) -> Optional[float]:
    """Price of one unit of `asset` in the reference currency, from direct or inverse pairs."""
    if asset == reference:
        return 1.0
    direct = quotes.get(f"{asset}/{reference}")
    if direct:
        return direct.mid
    inverse = quotes.get(f"{reference}/{asset}")
    if inverse:
        return 1.0 / inverse.mid
    return None


def apply_cross_rate_guard(quotes: Dict[str, PriceQuote], reference: str,
                           max_deviation_pct: float) -> Tuple[Dict[str, PriceQuote], Dict[str, str]]:
    """Drop quotes that disagree with the rate implied through the reference currency.

    For a pair B/Q with neither side being the reference, the implied rate is
    price(B) / price(Q), both in reference units. Pairs whose reference legs are
    missing are accepted unchecked.
    """
    accepted: Dict[str, PriceQuote] = {}
    rejected: Dict[str, str] = {}

    for pair, quote in quotes.items():
        base, quote_ccy = split_pair(pair)
        if reference in (base, quote_ccy):
            accepted[pair] = quote
            continue

        base_ref = reference_price(base, quotes, reference)
        quote_ref = reference_price(quote_ccy, quotes, reference)
        if base_ref is None or quote_ref is None or quote_ref <= 0:
            accepted[pair] = quote
            continue

        implied = base_ref / quote_ref
        deviation_pct = abs(quote.mid - implied) / implied * 100
        if deviation_pct > max_deviation_pct:
            rejected[pair] = (f"deviates {deviation_pct:.1f}% from implied cross-rate "
                              f"{implied:.6g} via {reference}")
            logger.warning(f"❌ {quote.venue} {pair}: mid {quote.mid:.6g} {rejected[pair]}")
            continue

        accepted[pair] = quote

    return accepted, rejected


class PriceCache:
    """Polls every venue on a fixed interval and keeps the latest validated quotes.

    A venue that fails a cycle keeps its previous snapshot, which ages until the
    next successful fetch. Readers treat missing or stale quotes as no data.
    """

    def __init__(self, config: Config, exchanges: Dict[str, ExchangeAdapter],
                 pairs: Optional[List[str]] = None, clock: Callable[[], int] = now_ms):
        settings = config.price_cache
        self.exchanges = exchanges
        self.poll_interval_ms = settings.poll_interval_ms
        self.fetch_timeout_s = settings.fetch_timeout_ms / 1000
        self.reference = settings.reference_quote
        self.synthetic_spread_pct = settings.synthetic_spread_pct
        self.max_deviation_pct = settings.max_cross_rate_deviation_pct
        self.log_quotes = config.logging.log_quotes
        self.pairs = pairs or watch_pairs(config.scan.bridge_assets, config.scan.currencies,
                                          self.reference)
        self.clock = clock

        self._snapshots: Dict[str, VenueSnapshot] = {}
        self._last_errors: Dict[str, str] = {}
        self._failures: Dict[str, int] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.cycles = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start polling. Calling twice is a no-op."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"Price cache started: {len(self.exchanges)} venues, "
                    f"{len(self.pairs)} pairs, every {self.poll_interval_ms}ms")

    async def stop(self):
        """Stop polling. Calling twice is a no-op."""
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Price cache stopped")

    async def _poll_loop(self):
        while self._running:
            await self.refresh()
            await asyncio.sleep(self.poll_interval_ms / 1000)

    async def refresh(self) -> int:
        """Run one fetch cycle across all venues in parallel. Returns venues updated."""
        names = list(self.exchanges)
        results = await asyncio.gather(
            *(self._refresh_venue(name, self.exchanges[name]) for name in names),
            return_exceptions=True,
        )
        updated = sum(1 for result in results if result is True)
        self.cycles += 1
        logger.debug(f"Price cache cycle {self.cycles}: {updated}/{len(names)} venues updated")
        return updated

    async def _refresh_venue(self, name: str, exchange: ExchangeAdapter) -> bool:
        try:
            tickers = await asyncio.wait_for(exchange.fetch_tickers(self.pairs),
                                             timeout=self.fetch_timeout_s)
        except asyncio.TimeoutError:
            self._record_failure(name, f"timed out after {self.fetch_timeout_s:.1f}s")
            return False
        except Exception as e:
            self._record_failure(name, str(e))
            return False

        snapshot = self.build_snapshot(name, tickers, self.clock())
        self._snapshots[name] = snapshot
        self._last_errors.pop(name, None)

        if self.log_quotes:
            for pair, quote in snapshot.quotes.items():
                logger.debug(f"{name} {pair}: {quote.bid:.6g}/{quote.ask:.6g}")
        return True

    def _record_failure(self, name: str, message: str):
        self._failures[name] = self._failures.get(name, 0) + 1
        self._last_errors[name] = message
        logger.warning(f"Price fetch failed for {name}: {message}")

    def build_snapshot(self, venue: str, tickers: Dict[str, Ticker],
                       captured_at_ms: int) -> VenueSnapshot:
        """Normalize and validate raw tickers into a snapshot."""
        quotes: Dict[str, PriceQuote] = {}
        rejected: Dict[str, str] = {}

        for pair, ticker in tickers.items():
            quote, reason = normalize_ticker(venue, pair, ticker, captured_at_ms,
                                             self.synthetic_spread_pct)
            if quote is None:
                rejected[pair] = reason
                continue
            quotes[pair] = quote

        quotes, cross_rejected = apply_cross_rate_guard(quotes, self.reference,
                                                        self.max_deviation_pct)
        rejected.update(cross_rejected)

        return VenueSnapshot(
            venue=venue,
            quotes=quotes,
            fetched_at_ms=captured_at_ms,
            poll_interval_ms=self.poll_interval_ms,
            rejected=rejected,
        )

    def get_prices(self, venue: str, pairs: Optional[List[str]] = None) -> Optional[VenueSnapshot]:
        """Latest snapshot for a venue, optionally narrowed to `pairs`. None if never fetched."""
        snapshot = self._snapshots.get(venue)
        if snapshot is None:
            return None

        now = self.clock()
        if snapshot.is_stale(now):
            logger.warning(f"Price cache for {venue} is stale ({snapshot.age_ms(now) / 1000:.1f}s old)")

        if pairs is None:
            return snapshot

        return VenueSnapshot(
            venue=venue,
            quotes={p: q for p, q in snapshot.quotes.items() if p in pairs},
            fetched_at_ms=snapshot.fetched_at_ms,
            poll_interval_ms=snapshot.poll_interval_ms,
            rejected={p: r for p, r in snapshot.rejected.items() if p in pairs},
        )

    def get_quote(self, venue: str, pair: str) -> Optional[PriceQuote]:
        """A usable quote, or None when missing or stale."""
        snapshot = self._snapshots.get(venue)
        if snapshot is None:
            return None
        quote = snapshot.get(pair)
        if quote is None or quote.is_stale(self.poll_interval_ms, self.clock()):
            return None
        return quote

    def reference_rate(self, venue: str, asset: str) -> Optional[float]:
        """Price of one unit of `asset` in the reference currency on a venue."""
        snapshot = self._snapshots.get(venue)
        if snapshot is None or snapshot.is_stale(self.clock()):
            return None
        return reference_price(asset, snapshot.quotes, self.reference)

    async def fetch_fresh(self, venue: str, pairs: List[str]) -> Dict[str, PriceQuote]:
        """Fetch quotes directly from the venue, bypassing the cache."""
        exchange = self.exchanges.get(venue)
        if exchange is None:
            raise PriceUnavailableError(f"{venue} is not configured")

        try:
            tickers = await asyncio.wait_for(exchange.fetch_tickers(pairs),
                                             timeout=self.fetch_timeout_s)
        except asyncio.TimeoutError as e:
            raise PriceUnavailableError(f"{venue}: price fetch timed out") from e
        except Exception as e:
            raise PriceUnavailableError(f"{venue}: price fetch failed: {e}") from e

        snapshot = self.build_snapshot(venue, tickers, self.clock())
        missing = [pair for pair in pairs if pair not in snapshot.quotes]
        if missing:
            reasons = ", ".join(f"{p} ({snapshot.rejected.get(p, 'not quoted')})" for p in missing)
            raise PriceUnavailableError(f"{venue}: no valid price for {reasons}")
        return snapshot.quotes

    def get_status(self) -> Dict[str, object]:
        """Cache status per venue."""
        now = self.clock()
        venues = {}
        for name in self.exchanges:
            snapshot = self._snapshots.get(name)
            venues[name] = {
                "price_count": len(snapshot.quotes) if snapshot else 0,
                "rejected_count": len(snapshot.rejected) if snapshot else 0,
                "last_updated": snapshot.fetched_at_ms if snapshot else None,
                "age_ms": snapshot.age_ms(now) if snapshot else None,
                "stale": snapshot.is_stale(now) if snapshot else True,
                "failures": self._failures.get(name, 0),
                "last_error": self._last_errors.get(name),
            }
        return {
            "running": self._running,
            "cycles": self.cycles,
            "poll_interval_ms": self.poll_interval_ms,
            "pairs": len(self.pairs),
            "venues": venues,
        }
