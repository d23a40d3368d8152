"""ccxt-backed adapter covering every venue ccxt supports."""

import time
import logging
from typing import Dict, List, Optional, Any

import ccxt.async_support as ccxt

from .base import (
    ExchangeAdapter, Ticker, Balance, OrderResult, WithdrawalResult, VenueStatus,
)
from ..errors import ExchangeAPIError, InsufficientBalanceError
from ..venues import CCXT_IDS

logger = logging.getLogger(__name__)


class CcxtExchange(ExchangeAdapter):
    """Exchange adapter built on a ccxt async client."""

    def __init__(self, name: str, account=None, timeout_ms: int = 10000,
                 ccxt_id: Optional[str] = None):
        super().__init__(name)
        self.ccxt_id = ccxt_id or CCXT_IDS.get(name, name)
        self.account = account
        self.timeout_ms = timeout_ms

        # Separate clients for public vs private operations
        self.rest_public: Optional[ccxt.Exchange] = None
        self.rest_private: Optional[ccxt.Exchange] = None

    def _client_options(self) -> Dict[str, Any]:
        return {
            "enableRateLimit": True,
            "timeout": self.timeout_ms,
            "options": {"defaultType": "spot"},
        }

    def _client_class(self):
        if not hasattr(ccxt, self.ccxt_id):
            raise ExchangeAPIError(self.name, f"ccxt has no exchange '{self.ccxt_id}'")
        return getattr(ccxt, self.ccxt_id)

    def _init_public_rest(self):
        """Initialize public REST client (no keys)."""
        self.rest_public = self._client_class()(self._client_options())

    def _init_private_rest(self):
        """Initialize private REST client (with keys)."""
        if not self.account or not self.account.has_credentials:
            logger.info(f"{self.name}: no API credentials, private calls disabled")
            return

        options = self._client_options()
        options["apiKey"] = self.account.key
        options["secret"] = self.account.secret
        if self.account.password:
            options["password"] = self.account.password

        self.rest_private = self._client_class()(options)
        if self.account.sandbox:
            self.rest_private.set_sandbox_mode(True)

    async def connect(self) -> None:
        """Create clients and load markets."""
        try:
            self._init_public_rest()
            self._init_private_rest()

            await self.rest_public.load_markets()
            if self.rest_private:
                await self.rest_private.load_markets()

            self._connected = True
            logger.info(f"{self.name} connected ({len(self.rest_public.markets)} markets)")
        except ccxt.BaseError as e:
            raise ExchangeAPIError(self.name, f"connect failed: {e}") from e

    async def disconnect(self) -> None:
        try:
            if self.rest_public:
                await self.rest_public.close()
            if self.rest_private:
                await self.rest_private.close()
        except Exception as e:
            logger.error(f"Error disconnecting from {self.name}: {e}")
        finally:
            self._connected = False
            logger.info(f"{self.name} disconnected")

    def supports_pair(self, pair: str) -> bool:
        if not self.rest_public or not self.rest_public.markets:
            return False
        return pair in self.rest_public.markets

    def _private(self) -> "ccxt.Exchange":
        if not self.rest_private:
            raise ExchangeAPIError(self.name, "no API credentials configured")
        return self.rest_private

    def _public(self) -> "ccxt.Exchange":
        if not self.rest_public:
            raise ExchangeAPIError(self.name, "not connected")
        return self.rest_public

    @staticmethod
    def _to_ticker(pair: str, raw: Dict[str, Any]) -> Ticker:
        return Ticker(
            symbol=pair,
            bid=raw.get("bid"),
            ask=raw.get("ask"),
            last=raw.get("last") or raw.get("close"),
            ts_exchange=raw.get("timestamp"),
        )

    async def fetch_ticker(self, pair: str) -> Ticker:
        try:
            raw = await self._public().fetch_ticker(pair)
        except ccxt.BaseError as e:
            raise ExchangeAPIError(self.name, f"fetch_ticker {pair}: {e}") from e
        return self._to_ticker(pair, raw)

    async def fetch_tickers(self, pairs: List[str]) -> Dict[str, Ticker]:
        client = self._public()
        symbols = [p for p in pairs if self.supports_pair(p)]
        if not symbols:
            return {}

        if not client.has.get("fetchTickers"):
            return await super().fetch_tickers(symbols)

        try:
            raw = await client.fetch_tickers(symbols)
        except ccxt.BaseError as e:
            raise ExchangeAPIError(self.name, f"fetch_tickers: {e}") from e

        return {
            symbol: self._to_ticker(symbol, data)
            for symbol, data in raw.items()
            if symbol in symbols
        }

    async def place_market_order(self, side: str, pair: str, amount: float,
                                 quote_amount: bool = False) -> OrderResult:
        client = self._private()
        start = time.time()

        try:
            if side == "buy" and quote_amount:
                if client.has.get("createMarketBuyOrderWithCost"):
                    order = await client.create_market_buy_order_with_cost(pair, amount)
                else:
                    ticker = await self.fetch_ticker(pair)
                    price = ticker.ask or ticker.last
                    if not price:
                        raise ExchangeAPIError(self.name, f"no price to size buy on {pair}")
                    qty = float(client.amount_to_precision(pair, amount / price))
                    order = await client.create_order(pair, "market", "buy", qty)
            else:
                qty = float(client.amount_to_precision(pair, amount))
                order = await client.create_order(pair, "market", side, qty)

            # Some venues only acknowledge; pull the fill details
            if not order.get("filled") and client.has.get("fetchOrder"):
                order = await client.fetch_order(order["id"], pair)

        except ccxt.InsufficientFunds as e:
            raise InsufficientBalanceError(f"{self.name}: {e}") from e
        except ccxt.BaseError as e:
            raise ExchangeAPIError(self.name, f"{side} {pair}: {e}") from e

        latency_ms = int((time.time() - start) * 1000)
        filled = float(order.get("filled") or 0.0)
        average = float(order.get("average") or order.get("price") or 0.0)
        cost = float(order.get("cost") or filled * average)
        fee = order.get("fee") or {}

        if filled <= 0:
            raise ExchangeAPIError(self.name, f"{side} {pair} order {order.get('id')} not filled")

        logger.info(f"{self.name} {side} {pair}: filled {filled} @ {average} ({latency_ms}ms)")

        return OrderResult(
            order_id=str(order.get("id")),
            side=side,
            pair=pair,
            filled_qty=filled,
            avg_price=average,
            cost=cost,
            fee_asset=fee.get("currency") or "",
            fee_amount=float(fee.get("cost") or 0.0),
            latency_ms=latency_ms,
            metadata={"status": order.get("status")},
        )

    async def withdraw(self, asset: str, amount: float, address: str,
                       tag: Optional[str] = None) -> WithdrawalResult:
        client = self._private()
        # Bridge assets are withdrawn on their native chain
        params = {"network": asset}

        try:
            result = await client.withdraw(asset, amount, address, tag, params)
        except ccxt.InsufficientFunds as e:
            raise InsufficientBalanceError(f"{self.name}: {e}") from e
        except ccxt.BaseError as e:
            raise ExchangeAPIError(self.name, f"withdraw {amount} {asset}: {e}") from e

        withdrawal_id = result.get("id") or result.get("txid")
        if not withdrawal_id:
            raise ExchangeAPIError(self.name, f"withdraw {asset} returned no id")

        fee = result.get("fee") or {}
        logger.info(f"{self.name} withdrawal {withdrawal_id}: {amount} {asset} -> {address}")
        return WithdrawalResult(
            withdrawal_id=str(withdrawal_id),
            asset=asset,
            amount=amount,
            address=address,
            tag=tag,
            fee=fee.get("cost"),
            status=result.get("status") or "pending",
        )

    async def fetch_balance(self, asset: str) -> Balance:
        client = self._private()
        try:
            raw = await client.fetch_balance()
        except ccxt.BaseError as e:
            raise ExchangeAPIError(self.name, f"fetch_balance: {e}") from e

        entry = raw.get(asset) or {}
        return Balance(
            asset=asset,
            free=float(entry.get("free") or 0.0),
            total=float(entry.get("total") or 0.0),
            ts=int(time.time() * 1000),
        )

    async def fetch_status(self) -> VenueStatus:
        client = self._public()
        if not client.has.get("fetchStatus"):
            return VenueStatus.UNKNOWN
        try:
            raw = await client.fetch_status()
        except ccxt.BaseError as e:
            raise ExchangeAPIError(self.name, f"fetch_status: {e}") from e

        status = (raw or {}).get("status")
        try:
            return VenueStatus(status)
        except ValueError:
            return VenueStatus.UNKNOWN
