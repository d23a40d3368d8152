"""Exchange adapter interface shared by every venue."""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from enum import Enum


@dataclass
class Ticker:
    """Raw top-of-book ticker as returned by a venue. bid/ask may be missing."""
    symbol: str
    bid: Optional[float]
    ask: Optional[float]
    last: Optional[float]
    ts_exchange: Optional[int] = None


@dataclass
class Balance:
    """Account balance for one asset."""
    asset: str
    free: float
    total: float
    ts: int

    @property
    def available(self) -> float:
        return self.free


@dataclass
class OrderResult:
    """Filled market order."""
    order_id: str
    side: str
    pair: str
    filled_qty: float
    avg_price: float
    cost: float  # Quote currency spent or received, before fees
    fee_asset: str = ""
    fee_amount: float = 0.0
    latency_ms: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def net_quote(self, quote_asset: str) -> float:
        """Quote amount after fees charged in the quote asset."""
        if self.fee_asset == quote_asset:
            if self.side == "buy":
                return self.cost + self.fee_amount
            return self.cost - self.fee_amount
        return self.cost

    def net_base(self, base_asset: str) -> float:
        """Base quantity after fees charged in the base asset."""
        if self.fee_asset == base_asset:
            if self.side == "buy":
                return self.filled_qty - self.fee_amount
            return self.filled_qty + self.fee_amount
        return self.filled_qty


@dataclass
class WithdrawalResult:
    """Submitted on-chain withdrawal."""
    withdrawal_id: str
    asset: str
    amount: float
    address: str
    tag: Optional[str] = None
    fee: Optional[float] = None
    status: str = "pending"


class VenueStatus(Enum):
    """Operational status reported by a venue."""
    OK = "ok"
    MAINTENANCE = "maintenance"
    SHUTDOWN = "shutdown"
    UNKNOWN = "unknown"


def split_pair(pair: str) -> tuple[str, str]:
    """'XRP/USDT' -> ('XRP', 'USDT')."""
    base, _, quote = pair.partition("/")
    return base, quote


class ExchangeAdapter(ABC):
    """Uniform capability surface over one venue.

    Authentication and request signing stay inside each implementation.
    Upstream failures are raised as ExchangeAPIError.
    """

    def __init__(self, name: str):
        self.name = name
        self._connected = False

    @abstractmethod
    async def connect(self) -> None:
        """Open clients and load markets."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def fetch_ticker(self, pair: str) -> Ticker:
        """Fetch the current ticker for a pair."""
        pass

    async def fetch_tickers(self, pairs: List[str]) -> Dict[str, Ticker]:
        """Fetch tickers for several pairs; pairs the venue does not list are omitted."""
        results = await asyncio.gather(
            *(self.fetch_ticker(pair) for pair in pairs), return_exceptions=True
        )
        tickers = {}
        for pair, result in zip(pairs, results):
            if isinstance(result, Ticker):
                tickers[pair] = result
        return tickers

    @abstractmethod
    async def place_market_order(self, side: str, pair: str, amount: float,
                                 quote_amount: bool = False) -> OrderResult:
        """Place a market order.

        With quote_amount=True, `amount` is the quote currency to spend (buy side).
        Otherwise it is the base quantity.
        """
        pass

    @abstractmethod
    async def withdraw(self, asset: str, amount: float, address: str,
                       tag: Optional[str] = None) -> WithdrawalResult:
        """Withdraw an asset to an external address."""
        pass

    @abstractmethod
    async def fetch_balance(self, asset: str) -> Balance:
        """Fetch the balance of one asset."""
        pass

    async def fetch_status(self) -> VenueStatus:
        """Operational status. Venues without a status endpoint report UNKNOWN."""
        return VenueStatus.UNKNOWN

    def supports_pair(self, pair: str) -> bool:
        return True

    def is_connected(self) -> bool:
        """Check if exchange is connected."""
        return self._connected
