"""Alerting for bridge arbitrage executions."""

from .telegram import TelegramNotifier

__all__ = [
    'TelegramNotifier'
]
