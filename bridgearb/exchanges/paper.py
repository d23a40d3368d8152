"""Simulated venues for paper trading."""

import asyncio
import itertools
import logging
import time
from typing import Dict, List, Optional

from .base import (
    ExchangeAdapter, Ticker, Balance, OrderResult, WithdrawalResult, VenueStatus, split_pair,
)
from ..errors import ExchangeAPIError, InsufficientBalanceError

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


class PaperNetwork:
    """Routes paper withdrawals to whichever paper venue owns the address."""

    def __init__(self, transfer_delay_s: float = 3.0):
        self.transfer_delay_s = transfer_delay_s
        self._owners: Dict[tuple, "PaperExchange"] = {}

    def register_address(self, venue: "PaperExchange", asset: str, address: str,
                         tag: Optional[str] = None):
        self._owners[(asset, address, tag)] = venue
        venue.network = self

    def deliver(self, asset: str, amount: float, address: str, tag: Optional[str]):
        target = self._owners.get((asset, address, tag))
        if target is None:
            # Funds sent to an unknown address or with the wrong tag never arrive
            logger.warning(f"Paper transfer of {amount} {asset} to {address} (tag={tag}) lost")
            return

        if self.transfer_delay_s <= 0:
            target.credit(asset, amount)
            return

        loop = asyncio.get_running_loop()
        loop.call_later(self.transfer_delay_s, target.credit, asset, amount)


class PaperExchange(ExchangeAdapter):
    """In-memory venue that fills market orders at the current ticker.

    Prices come from `market` (a real adapter used read-only) when given,
    otherwise from tickers set with `set_ticker`.
    """

    def __init__(self, name: str, balances: Optional[Dict[str, float]] = None,
                 taker_fee: float = 0.001, market: Optional[ExchangeAdapter] = None,
                 withdrawal_fees: Optional[Dict[str, float]] = None):
        super().__init__(name)
        self.balances: Dict[str, float] = dict(balances or {})
        self.taker_fee = taker_fee
        self.market = market
        self.withdrawal_fees = dict(withdrawal_fees or {})
        self.network: Optional[PaperNetwork] = None
        self.status = VenueStatus.OK
        self.tickers: Dict[str, Ticker] = {}
        self.orders: List[OrderResult] = []
        self.withdrawals: List[WithdrawalResult] = []

    async def connect(self) -> None:
        if self.market:
            await self.market.connect()
        self._connected = True

    async def disconnect(self) -> None:
        if self.market:
            await self.market.disconnect()
        self._connected = False

    def set_ticker(self, pair: str, bid: Optional[float], ask: Optional[float],
                   last: Optional[float] = None):
        if last is None and bid and ask:
            last = (bid + ask) / 2
        self.tickers[pair] = Ticker(symbol=pair, bid=bid, ask=ask, last=last,
                                    ts_exchange=int(time.time() * 1000))

    def set_balance(self, asset: str, amount: float):
        self.balances[asset] = amount

    def credit(self, asset: str, amount: float):
        self.balances[asset] = self.balances.get(asset, 0.0) + amount
        logger.info(f"Paper {self.name}: credited {amount} {asset}")

    def supports_pair(self, pair: str) -> bool:
        if self.market:
            return self.market.supports_pair(pair)
        return pair in self.tickers

    async def fetch_ticker(self, pair: str) -> Ticker:
        if self.market:
            return await self.market.fetch_ticker(pair)
        if pair not in self.tickers:
            raise ExchangeAPIError(self.name, f"unknown pair {pair}")
        return self.tickers[pair]

    async def fetch_tickers(self, pairs: List[str]) -> Dict[str, Ticker]:
        if self.market:
            return await self.market.fetch_tickers(pairs)
        return {pair: self.tickers[pair] for pair in pairs if pair in self.tickers}

    def _debit(self, asset: str, amount: float):
        available = self.balances.get(asset, 0.0)
        if amount > available:
            raise InsufficientBalanceError(
                f"{self.name}: need {amount} {asset}, have {available}",
                required=amount, available=available,
            )
        self.balances[asset] = available - amount

    async def place_market_order(self, side: str, pair: str, amount: float,
                                 quote_amount: bool = False) -> OrderResult:
        ticker = await self.fetch_ticker(pair)
        base, quote = split_pair(pair)

        if side == "buy":
            price = ticker.ask or ticker.last
            if not price or price <= 0:
                raise ExchangeAPIError(self.name, f"no ask for {pair}")
            spend = amount if quote_amount else amount * price
            qty = spend / price
            fee = qty * self.taker_fee
            self._debit(quote, spend)
            self.credit(base, qty - fee)
            result = OrderResult(
                order_id=f"paper-{next(_ids)}", side=side, pair=pair,
                filled_qty=qty, avg_price=price, cost=spend,
                fee_asset=base, fee_amount=fee, latency_ms=0,
            )
        elif side == "sell":
            price = ticker.bid or ticker.last
            if not price or price <= 0:
                raise ExchangeAPIError(self.name, f"no bid for {pair}")
            qty = amount / price if quote_amount else amount
            proceeds = qty * price
            fee = proceeds * self.taker_fee
            self._debit(base, qty)
            self.credit(quote, proceeds - fee)
            result = OrderResult(
                order_id=f"paper-{next(_ids)}", side=side, pair=pair,
                filled_qty=qty, avg_price=price, cost=proceeds,
                fee_asset=quote, fee_amount=fee, latency_ms=0,
            )
        else:
            raise ExchangeAPIError(self.name, f"unknown side {side}")

        self.orders.append(result)
        return result

    async def withdraw(self, asset: str, amount: float, address: str,
                       tag: Optional[str] = None) -> WithdrawalResult:
        self._debit(asset, amount)
        fee = self.withdrawal_fees.get(asset, 0.0)
        result = WithdrawalResult(
            withdrawal_id=f"paper-wd-{next(_ids)}",
            asset=asset, amount=amount, address=address, tag=tag, fee=fee,
        )
        self.withdrawals.append(result)

        if self.network:
            self.network.deliver(asset, max(0.0, amount - fee), address, tag)
        return result

    async def fetch_balance(self, asset: str) -> Balance:
        amount = self.balances.get(asset, 0.0)
        return Balance(asset=asset, free=amount, total=amount, ts=int(time.time() * 1000))

    async def fetch_status(self) -> VenueStatus:
        return self.status
