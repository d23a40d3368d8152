"""Error types raised by the scanning and execution engine."""

from typing import Optional


class ArbError(Exception):
    """Base class for all engine errors."""
    code = "ARB_ERROR"
    fund_loss_risk = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {
            "error": self.message,
            "code": self.code,
            "fund_loss_risk": self.fund_loss_risk,
        }


class ValidationError(ArbError):
    """Malformed input or a failed pre-flight check."""
    code = "VALIDATION_ERROR"


class BusyError(ArbError):
    """An admission slot for the requested venue is already held."""
    code = "BUSY"

    def __init__(self, key: str, holder: Optional[str] = None):
        message = f"Execution already in progress on {key}"
        if holder:
            message += f" (saga {holder})"
        super().__init__(message)
        self.key = key
        self.holder = holder


class InsufficientBalanceError(ArbError):
    """Available balance does not cover the requested amount."""
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, message: str, required: float = 0.0, available: float = 0.0):
        super().__init__(message)
        self.required = required
        self.available = available


class PriceUnavailableError(ArbError):
    """No fresh price for a venue/pair."""
    code = "PRICE_UNAVAILABLE"


class DepositTimeoutError(ArbError):
    """A withdrawal was sent but the deposit was not confirmed in time.

    Funds are in flight, not lost. The withdrawal id is kept so the operator
    can reconcile manually.
    """
    code = "DEPOSIT_TIMEOUT"

    def __init__(self, withdrawal_id: Optional[str], asset: str, venue: str, timeout_s: float):
        message = (
            f"Deposit of {asset} to {venue} not confirmed after {timeout_s:.0f}s. "
            f"Funds are in flight (withdrawal id: {withdrawal_id or 'unknown'}). "
            f"Check the withdrawal on the source venue and the deposit history on {venue} "
            f"before trading the funds manually."
        )
        super().__init__(message)
        self.withdrawal_id = withdrawal_id
        self.asset = asset
        self.venue = venue
        self.timeout_s = timeout_s


class ExchangeAPIError(ArbError):
    """Wraps any upstream venue failure."""
    code = "EXCHANGE_API_ERROR"

    def __init__(self, venue: str, message: str):
        super().__init__(f"{venue}: {message}")
        self.venue = venue
        self.raw_message = message


class FatalSafetyError(ArbError):
    """A safety rule that can never be bypassed, e.g. a missing destination tag."""
    code = "FATAL_SAFETY"
    fund_loss_risk = True


class SagaStateError(ArbError):
    """Illegal saga state transition."""
    code = "SAGA_STATE_ERROR"
