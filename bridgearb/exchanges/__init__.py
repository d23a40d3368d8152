"""Exchange adapters."""

from .base import (
    ExchangeAdapter, Ticker, Balance, OrderResult, WithdrawalResult, VenueStatus, split_pair,
)
from .ccxt_exchange import CcxtExchange
from .paper import PaperExchange, PaperNetwork

__all__ = [
    'ExchangeAdapter',
    'Ticker',
    'Balance',
    'OrderResult',
    'WithdrawalResult',
    'VenueStatus',
    'split_pair',
    'CcxtExchange',
    'PaperExchange',
    'PaperNetwork',
]
