"""Test the exchange adapters."""

import ccxt.async_support as ccxt
import pytest
from unittest.mock import AsyncMock, Mock

from bridgearb.config import ExchangeAccount
from bridgearb.errors import ExchangeAPIError, InsufficientBalanceError
from bridgearb.exchanges.base import OrderResult, VenueStatus
from bridgearb.exchanges.ccxt_exchange import CcxtExchange
from bridgearb.exchanges.paper import PaperExchange, PaperNetwork
from tests.sample_data import XRP_ADDRESS, XRP_TAG


class TestOrderResult:
    """Test fee-adjusted fill amounts."""

    def test_net_amounts(self):
        buy = OrderResult("1", "buy", "XRP/USDT", filled_qty=200.0, avg_price=0.5, cost=100.0,
                          fee_asset="XRP", fee_amount=0.2)
        sell = OrderResult("2", "sell", "XRP/USDT", filled_qty=200.0, avg_price=0.5, cost=100.0,
                           fee_asset="USDT", fee_amount=0.1)

        assert buy.net_base("XRP") == pytest.approx(199.8)
        assert buy.net_quote("USDT") == 100.0
        assert sell.net_quote("USDT") == pytest.approx(99.9)


class TestPaperExchange:
    """Test simulated fills and transfers."""

    def setup_method(self):
        self.source = PaperExchange("binance", {"USDT": 1000.0}, taker_fee=0.001,
                                    withdrawal_fees={"XRP": 0.1})
        self.source.set_ticker("XRP/USDT", 0.499, 0.50)
        self.dest = PaperExchange("kraken", {}, taker_fee=0.001)
        self.dest.set_ticker("XRP/USDT", 0.52, 0.521)

    @pytest.mark.asyncio
    async def test_quote_amount_buy(self):
        result = await self.source.place_market_order("buy", "XRP/USDT", 100.0, quote_amount=True)

        assert result.filled_qty == pytest.approx(200.0)
        assert self.source.balances["USDT"] == pytest.approx(900.0)
        assert self.source.balances["XRP"] == pytest.approx(199.8)

    @pytest.mark.asyncio
    async def test_insufficient_balance(self):
        with pytest.raises(InsufficientBalanceError):
            await self.source.place_market_order("buy", "XRP/USDT", 5000.0, quote_amount=True)

    @pytest.mark.asyncio
    async def test_withdrawal_delivered_net_of_fee(self):
        network = PaperNetwork(transfer_delay_s=0)
        network.register_address(self.dest, "XRP", XRP_ADDRESS, XRP_TAG)
        self.source.network = network
        self.source.set_balance("XRP", 50.0)

        result = await self.source.withdraw("XRP", 50.0, XRP_ADDRESS, XRP_TAG)

        assert result.fee == 0.1
        assert self.dest.balances["XRP"] == pytest.approx(49.9)

    @pytest.mark.asyncio
    async def test_wrong_tag_is_lost(self):
        network = PaperNetwork(transfer_delay_s=0)
        network.register_address(self.dest, "XRP", XRP_ADDRESS, XRP_TAG)
        self.source.network = network
        self.source.set_balance("XRP", 50.0)

        await self.source.withdraw("XRP", 50.0, XRP_ADDRESS, "1")

        assert self.dest.balances.get("XRP", 0.0) == 0.0

    @pytest.mark.asyncio
    async def test_unknown_pair(self):
        with pytest.raises(ExchangeAPIError):
            await self.source.fetch_ticker("LTC/USDT")


class TestCcxtExchange:
    """Test error wrapping and order handling with a mocked ccxt client."""

    def setup_method(self):
        account = ExchangeAccount(key="k", secret="s")
        self.exchange = CcxtExchange("binance", account)
        self.client = Mock()
        self.client.has = {"createMarketBuyOrderWithCost": True, "fetchOrder": True,
                           "fetchTickers": True, "fetchStatus": True}
        self.client.markets = {"XRP/USDT": {}}
        self.client.amount_to_precision = Mock(side_effect=lambda pair, qty: str(qty))
        self.exchange.rest_public = self.client
        self.exchange.rest_private = self.client

    @pytest.mark.asyncio
    async def test_buy_with_cost(self):
        self.client.create_market_buy_order_with_cost = AsyncMock(return_value={
            "id": "o1", "filled": 200.0, "average": 0.5, "cost": 100.0,
            "fee": {"currency": "XRP", "cost": 0.2}, "status": "closed",
        })
        result = await self.exchange.place_market_order("buy", "XRP/USDT", 100.0, quote_amount=True)

        assert result.order_id == "o1"
        assert result.net_base("XRP") == pytest.approx(199.8)

    @pytest.mark.asyncio
    async def test_unfilled_ack_fetches_order(self):
        self.client.create_order = AsyncMock(return_value={"id": "o2", "filled": None})
        self.client.fetch_order = AsyncMock(return_value={
            "id": "o2", "filled": 10.0, "average": 0.52, "cost": 5.2, "fee": None,
        })
        result = await self.exchange.place_market_order("sell", "XRP/USDT", 10.0)

        self.client.fetch_order.assert_awaited_once_with("o2", "XRP/USDT")
        assert result.cost == pytest.approx(5.2)

    @pytest.mark.asyncio
    async def test_insufficient_funds_wrapped(self):
        self.client.create_order = AsyncMock(side_effect=ccxt.InsufficientFunds("not enough"))
        with pytest.raises(InsufficientBalanceError):
            await self.exchange.place_market_order("sell", "XRP/USDT", 10.0)

    @pytest.mark.asyncio
    async def test_network_error_wrapped(self):
        self.client.withdraw = AsyncMock(side_effect=ccxt.NetworkError("socket hang up"))
        with pytest.raises(ExchangeAPIError) as exc_info:
            await self.exchange.withdraw("XRP", 10.0, XRP_ADDRESS, XRP_TAG)
        assert exc_info.value.venue == "binance"

    @pytest.mark.asyncio
    async def test_withdraw_passes_tag_and_network(self):
        self.client.withdraw = AsyncMock(return_value={"id": "w1", "fee": {"cost": 0.25}})
        result = await self.exchange.withdraw("XRP", 10.0, XRP_ADDRESS, XRP_TAG)

        self.client.withdraw.assert_awaited_once_with("XRP", 10.0, XRP_ADDRESS, XRP_TAG,
                                                      {"network": "XRP"})
        assert result.withdrawal_id == "w1"
        assert result.fee == 0.25

    @pytest.mark.asyncio
    async def test_fetch_tickers_filters_unsupported(self):
        self.client.fetch_tickers = AsyncMock(return_value={
            "XRP/USDT": {"bid": 0.5, "ask": 0.51, "last": 0.505, "timestamp": 1},
        })
        tickers = await self.exchange.fetch_tickers(["XRP/USDT", "XLM/USDT"])

        self.client.fetch_tickers.assert_awaited_once_with(["XRP/USDT"])
        assert tickers["XRP/USDT"].bid == 0.5

    @pytest.mark.asyncio
    async def test_status_mapping(self):
        self.client.fetch_status = AsyncMock(return_value={"status": "maintenance"})
        assert await self.exchange.fetch_status() is VenueStatus.MAINTENANCE

        self.client.fetch_status = AsyncMock(return_value={"status": "weird"})
        assert await self.exchange.fetch_status() is VenueStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_private_call_without_credentials(self):
        exchange = CcxtExchange("kraken")
        with pytest.raises(ExchangeAPIError):
            await exchange.fetch_balance("XRP")
