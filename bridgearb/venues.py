"""Static venue and asset metadata."""

import re
from typing import Dict, FrozenSet, Optional

# Venue name -> ccxt exchange id
CCXT_IDS: Dict[str, str] = {
    "binance": "binance",
    "bybit": "bybit",
    "okx": "okx",
    "kraken": "kraken",
    "kucoin": "kucoin",
    "mexc": "mexc",
    "htx": "htx",
    "gateio": "gate",
    "bitget": "bitget",
    "coinbase": "coinbase",
    "gemini": "gemini",
    "cryptocom": "cryptocom",
    "bitfinex": "bitfinex",
    "bitstamp": "bitstamp",
    "bitmart": "bitmart",
    "bingx": "bingx",
    "ascendex": "ascendex",
    "luno": "luno",
    "poloniex": "poloniex",
    "whitebit": "whitebit",
}

# Minimum spacing between private calls per venue, milliseconds.
DEFAULT_MIN_INTERVAL_MS: Dict[str, int] = {
    "binance": 50,
    "bybit": 100,
    "okx": 100,
    "kucoin": 100,
    "htx": 100,
    "bitget": 100,
    "gateio": 100,
    "mexc": 150,
    "kraken": 200,
    "gemini": 200,
    "luno": 200,
    "default": 200,
}

# Assets where every venue pools deposits on a shared address, so a
# destination tag/memo is always needed.
ALWAYS_TAGGED_ASSETS = frozenset({"XRP", "XLM", "EOS", "HBAR"})

# Per-venue tag requirements for assets that only some venues pool.
# Config may extend this, never shrink it.
TAG_REQUIRED_VENUES: Dict[str, FrozenSet[str]] = {
    "ATOM": frozenset({"binance", "kraken", "okx", "kucoin", "bybit", "gateio", "htx", "bitget"}),
    "TON": frozenset({"binance", "okx", "bybit", "kucoin", "gateio", "bitget", "mexc"}),
}

_BASE58 = "[1-9A-HJ-NP-Za-km-z]"

ADDRESS_PATTERNS: Dict[str, "re.Pattern"] = {
    "XRP": re.compile(rf"^r{_BASE58}{{24,34}}$"),
    "XLM": re.compile(r"^G[A-Z2-7]{55}$"),
    "TRX": re.compile(rf"^T{_BASE58}{{33}}$"),
    "LTC": re.compile(rf"^([LM3]{_BASE58}{{26,33}}|ltc1[02-9ac-hj-np-z]{{20,80}})$"),
}

# Withdrawal fee charged by the source venue, in bridge-asset units.
DEFAULT_WITHDRAWAL_FEES: Dict[str, float] = {
    "XRP": 0.1,
    "XLM": 0.01,
    "TRX": 1.0,
    "LTC": 0.001,
}

# Approximate units of each currency per 1 USDT.
FALLBACK_UNITS_PER_REFERENCE: Dict[str, float] = {
    "USDT": 1.0,
    "USDC": 1.0,
    "USD": 1.0,
    "ZAR": 19.0,
    "EUR": 0.92,
    "GBP": 0.79,
}

ZAR_ASSETS = frozenset({"ZAR"})
INTERNATIONAL_ASSETS = frozenset({"USD", "EUR", "GBP", "USDT", "USDC"})


def requires_tag(venue: str, asset: str, extra: Optional[Dict[str, list]] = None) -> bool:
    """Whether deposits of `asset` into `venue` need a destination tag/memo."""
    venue = venue.lower()
    asset = asset.upper()
    if asset in ALWAYS_TAGGED_ASSETS:
        return True
    if venue in TAG_REQUIRED_VENUES.get(asset, frozenset()):
        return True
    if extra and venue in {v.lower() for v in extra.get(asset, [])}:
        return True
    return False


def is_valid_address(asset: str, address: Optional[str]) -> bool:
    """Format check for a deposit address. Unknown assets need a plausible length."""
    if not address or not address.strip():
        return False
    address = address.strip()
    pattern = ADDRESS_PATTERNS.get(asset.upper())
    if pattern is None:
        return 20 <= len(address) <= 120 and " " not in address
    return bool(pattern.match(address))
