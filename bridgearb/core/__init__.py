"""Core scanning and execution logic for bridge-asset arbitrage."""

from .types import (
    PriceQuote, VenueSnapshot, ArbitragePath, PathLeg, FeeBreakdown,
    PathProfitEstimate, ScanResult, SENTINEL_PROFIT_PERCENT,
)
from .quotes import PriceCache
from .scanner import PathScanner, generate_paths, calculate_path_profit
from .scheduler import MultiBridgeScheduler
from .risk import RiskCalculator, TradeSizing, BindingConstraint
from .rate_limiter import RateLimiter, AdmissionControl, ExecutionQueue
from .validator import PreFlightValidator, ValidationResult, ValidationOptions, DepositCredentials
from .saga import ExecutionSaga, SagaState
from .executor import ExecutionOrchestrator, ExecutionResult, DepositMonitor

__all__ = [
    'PriceQuote',
    'VenueSnapshot',
    'ArbitragePath',
    'PathLeg',
    'FeeBreakdown',
    'PathProfitEstimate',
    'ScanResult',
    'SENTINEL_PROFIT_PERCENT',
    'PriceCache',
    'PathScanner',
    'generate_paths',
    'calculate_path_profit',
    'MultiBridgeScheduler',
    'RiskCalculator',
    'TradeSizing',
    'BindingConstraint',
    'RateLimiter',
    'AdmissionControl',
    'ExecutionQueue',
    'PreFlightValidator',
    'ValidationResult',
    'ValidationOptions',
    'DepositCredentials',
    'ExecutionSaga',
    'SagaState',
    'ExecutionOrchestrator',
    'ExecutionResult',
    'DepositMonitor',
]
