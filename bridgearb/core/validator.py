"""Pre-flight safety checks run immediately before capital is committed."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from loguru import logger

from ..config import Config
from ..errors import (
    ArbError, FatalSafetyError, InsufficientBalanceError, PriceUnavailableError, ValidationError,
)
from ..exchanges.base import ExchangeAdapter, VenueStatus
from ..venues import is_valid_address, requires_tag
from .quotes import PriceCache
from .risk import RiskCalculator, TradeSizing
from .scanner import PathScanner
from .types import PathProfitEstimate

XRP_MAX_TAG = 2 ** 32 - 1


class CheckName(str, Enum):
    BALANCE = "balance"
    ADDRESS = "address"
    TAG = "tag"
    PROFIT = "profit"
    AMOUNT = "amount"
    TRADE_LIMITS = "trade_limits"
    CONFIRMATION = "confirmation"
    PRICE_RECHECK = "price_recheck"
    VENUE_STATUS = "venue_status"


@dataclass
class DepositCredentials:
    """Where the bridge asset is sent on the destination venue."""
    address: Optional[str]
    tag: Optional[str] = None


@dataclass
class ValidationOptions:
    """Per-request thresholds; defaults come from config.validation."""
    min_profit_percent: float = 0.5
    max_trade_amount: float = 5000.0
    min_trade_amount: float = 10.0
    portfolio_percent: Optional[float] = None
    fee_buffer_percent: float = 0.2
    require_confirmation: bool = True
    confirmed: bool = False

    @classmethod
    def from_config(cls, config: Config, **overrides) -> "ValidationOptions":
        settings = config.validation
        options = cls(
            min_profit_percent=settings.min_profit_percent,
            max_trade_amount=settings.max_trade_amount,
            min_trade_amount=settings.min_trade_amount,
            portfolio_percent=(settings.portfolio_percent
                               if settings.portfolio_percent is not None
                               else config.risk.max_balance_percent),
            fee_buffer_percent=settings.fee_buffer_percent,
            # Paper trades never need the confirmation flag
            require_confirmation=settings.require_confirmation and config.is_live,
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(options, key, value)
        return options


@dataclass
class CheckResult:
    """Outcome of one check."""
    name: CheckName
    passed: bool
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    fund_loss_risk: bool = False
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"passed": self.passed, "message": self.message, **self.details}
        if self.fund_loss_risk:
            data["fund_loss_risk"] = True
        if self.error_code:
            data["error_code"] = self.error_code
        return data


@dataclass
class ValidationResult:
    """Every check attempted, in order, up to the first failure."""
    passed: bool = False
    checks: Dict[str, CheckResult] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    refreshed: Optional[PathProfitEstimate] = None
    sizing: Optional[TradeSizing] = None

    @property
    def failed_check(self) -> Optional[CheckResult]:
        for check in self.checks.values():
            if not check.passed:
                return check
        return None

    @property
    def fund_loss_risk(self) -> bool:
        return any(check.fund_loss_risk for check in self.checks.values())

    def to_error(self) -> Optional[ArbError]:
        """The typed error behind the first failed check."""
        failed = self.failed_check
        if failed is None:
            return None
        message = f"{failed.name.value} check failed: {failed.message}"
        if failed.fund_loss_risk:
            return FatalSafetyError(message)
        if failed.error_code == InsufficientBalanceError.code:
            return InsufficientBalanceError(message, failed.details.get("required", 0.0),
                                            failed.details.get("available", 0.0))
        if failed.error_code == PriceUnavailableError.code:
            return PriceUnavailableError(message)
        return ValidationError(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "checks": {name: check.to_dict() for name, check in self.checks.items()},
            "warnings": list(self.warnings),
            "fund_loss_risk": self.fund_loss_risk,
            "sizing": self.sizing.to_dict() if self.sizing else None,
        }


def check_destination(asset: str, venue: str, credentials: DepositCredentials,
                      extra_tag_required: Optional[Dict[str, List[str]]] = None):
    """Raise unless the destination address and tag are safe to send to.

    A missing required tag raises FatalSafetyError; nothing can override it.
    """
    if not is_valid_address(asset, credentials.address):
        raise ValidationError(f"Invalid or missing {asset} deposit address for {venue}")

    tag = (credentials.tag or "").strip()
    if requires_tag(venue, asset, extra_tag_required):
        if not tag:
            raise FatalSafetyError(
                f"⚠️ {venue.upper()} REQUIRES a {asset} destination tag/memo. "
                f"Missing tag will result in PERMANENT FUND LOSS!"
            )
        if asset == "XRP" and (not tag.isdigit() or int(tag) > XRP_MAX_TAG):
            raise FatalSafetyError(
                f"⚠️ XRP destination tag '{tag}' for {venue} is not a valid 32-bit number. "
                f"A wrong tag will result in PERMANENT FUND LOSS!"
            )


@dataclass
class _Context:
    opportunity: PathProfitEstimate
    amount: float
    credentials: DepositCredentials
    options: ValidationOptions
    active_trades: int
    result: ValidationResult
    available: float = 0.0


class PreFlightValidator:
    """Independent safety checks, fail-fast, in a fixed order. Never places orders."""

    def __init__(self, config: Config, exchanges: Dict[str, ExchangeAdapter],
                 price_cache: PriceCache, scanner: PathScanner, risk: RiskCalculator):
        self.config = config
        self.exchanges = exchanges
        self.price_cache = price_cache
        self.scanner = scanner
        self.risk = risk
        self.extra_tag_required = config.validation.extra_tag_required

    async def validate(self, opportunity: PathProfitEstimate, amount: float,
                       credentials: DepositCredentials,
                       options: Optional[ValidationOptions] = None,
                       active_trades: int = 0) -> ValidationResult:
        """Run all checks. Returns at the first failure with every attempted check reported."""
        options = options or ValidationOptions.from_config(self.config)
        result = ValidationResult()
        ctx = _Context(opportunity, amount, credentials, options, active_trades, result)
        path = opportunity.path

        logger.info(f"Pre-flight for {path.id} via {path.bridge_asset}, amount {amount:.2f}")

        steps = [
            (CheckName.BALANCE, self._check_balance),
            (CheckName.ADDRESS, self._check_address),
            (CheckName.TAG, self._check_tag),
            (CheckName.PROFIT, self._check_profit),
            (CheckName.AMOUNT, self._check_amount),
            (CheckName.TRADE_LIMITS, self._check_trade_limits),
            (CheckName.CONFIRMATION, self._check_confirmation),
            (CheckName.PRICE_RECHECK, self._check_fresh_price),
            (CheckName.VENUE_STATUS, self._check_venue_status),
        ]

        for name, check in steps:
            try:
                outcome = await check(ctx)
            except ArbError as e:
                outcome = CheckResult(name, False, e.message,
                                      fund_loss_risk=e.fund_loss_risk, error_code=e.code)

            result.checks[name.value] = outcome
            if not outcome.passed:
                if outcome.fund_loss_risk:
                    logger.critical(f"❌ Pre-flight {name.value} FAILED (fund-loss risk): {outcome.message}")
                else:
                    logger.warning(f"❌ Pre-flight {name.value} failed: {outcome.message}")
                return result
            logger.debug(f"✅ Pre-flight {name.value} passed")

        result.passed = True
        logger.info(f"✅ All pre-flight checks passed for {path.id}")
        return result

    async def _check_balance(self, ctx: _Context) -> CheckResult:
        path = ctx.opportunity.path
        exchange = self.exchanges.get(path.source_venue)
        if exchange is None:
            raise ValidationError(f"{path.source_venue} is not configured")

        balance = await exchange.fetch_balance(path.source_asset)
        ctx.available = balance.available
        required = ctx.amount * (1 + ctx.options.fee_buffer_percent / 100)
        details = {"available": balance.available, "required": required}

        if balance.available < required:
            return CheckResult(
                CheckName.BALANCE, False,
                f"Insufficient {path.source_asset} on {path.source_venue}: "
                f"required {required:.2f}, available {balance.available:.2f}",
                details, error_code=InsufficientBalanceError.code,
            )
        return CheckResult(CheckName.BALANCE, True, "Balance sufficient",
                           {**details, "remaining": balance.available - required})

    async def _check_address(self, ctx: _Context) -> CheckResult:
        path = ctx.opportunity.path
        address = ctx.credentials.address
        if not address or not address.strip():
            raise ValidationError(f"No {path.bridge_asset} deposit address configured for {path.dest_venue}")
        if not is_valid_address(path.bridge_asset, address):
            raise ValidationError(f"{path.bridge_asset} deposit address looks invalid: {address[:10]}...")
        return CheckResult(CheckName.ADDRESS, True, f"{path.bridge_asset} deposit address validated")

    async def _check_tag(self, ctx: _Context) -> CheckResult:
        path = ctx.opportunity.path
        check_destination(path.bridge_asset, path.dest_venue, ctx.credentials,
                          self.extra_tag_required)
        if requires_tag(path.dest_venue, path.bridge_asset, self.extra_tag_required):
            return CheckResult(CheckName.TAG, True, "Destination tag present")
        return CheckResult(CheckName.TAG, True, "No destination tag required")

    async def _check_profit(self, ctx: _Context) -> CheckResult:
        profit = ctx.opportunity.profit_percent
        minimum = ctx.options.min_profit_percent
        details = {"current_profit": profit, "min_required": minimum}
        if not ctx.opportunity.is_viable or profit < minimum:
            return CheckResult(CheckName.PROFIT, False,
                               f"Profit {profit:.3f}% below minimum {minimum}%", details)
        if profit < minimum * 1.5:
            ctx.result.warnings.append(
                f"⚠️ Low profit margin: {profit:.2f}% (close to minimum {minimum}%)"
            )
        return CheckResult(CheckName.PROFIT, True, f"Profit {profit:.3f}% meets minimum", details)

    async def _check_amount(self, ctx: _Context) -> CheckResult:
        amount = ctx.amount
        options = ctx.options
        if amount < options.min_trade_amount:
            return CheckResult(CheckName.AMOUNT, False,
                               f"Amount {amount:.2f} below minimum {options.min_trade_amount:.2f}")
        if amount > options.max_trade_amount:
            return CheckResult(CheckName.AMOUNT, False,
                               f"Amount {amount:.2f} exceeds maximum {options.max_trade_amount:.2f}")
        if options.portfolio_percent is not None and ctx.available > 0:
            limit = ctx.available * options.portfolio_percent / 100
            if amount > limit:
                return CheckResult(
                    CheckName.AMOUNT, False,
                    f"Amount {amount:.2f} exceeds {options.portfolio_percent}% of balance ({limit:.2f})",
                    {"portfolio_limit": limit},
                )

        path = ctx.opportunity.path
        sizing = self.risk.size_trade_amount(
            ctx.available, path.source_asset,
            self.price_cache.reference_rate(path.source_venue, path.source_asset),
        )
        ctx.result.sizing = sizing
        if amount > sizing.recommended_amount + 1e-9:
            return CheckResult(
                CheckName.AMOUNT, False,
                f"Amount {amount:.2f} exceeds recommended {sizing.recommended_amount:.2f} "
                f"({sizing.binding_constraint.value} limit)",
                sizing.to_dict(),
            )
        return CheckResult(CheckName.AMOUNT, True, "Amount within limits",
                           {"recommended_amount": sizing.recommended_amount})

    async def _check_trade_limits(self, ctx: _Context) -> CheckResult:
        daily = self.risk.check_daily_limit()
        if not daily.allowed:
            return CheckResult(CheckName.TRADE_LIMITS, False, daily.reason,
                               {"daily_trades": daily.current, "max_daily_trades": daily.limit})
        concurrent = self.risk.check_concurrency(ctx.active_trades)
        if not concurrent.allowed:
            return CheckResult(CheckName.TRADE_LIMITS, False, concurrent.reason,
                               {"active_trades": concurrent.current,
                                "max_concurrent_trades": concurrent.limit})
        return CheckResult(CheckName.TRADE_LIMITS, True,
                           f"{daily.remaining} trades left today")

    async def _check_confirmation(self, ctx: _Context) -> CheckResult:
        if ctx.options.require_confirmation and not ctx.options.confirmed:
            return CheckResult(CheckName.CONFIRMATION, False,
                               "Live trading requires explicit confirmation",
                               error_code="CONFIRMATION_REQUIRED")
        return CheckResult(CheckName.CONFIRMATION, True, "Confirmation received")

    async def _check_fresh_price(self, ctx: _Context) -> CheckResult:
        path = ctx.opportunity.path
        source_quotes, dest_quotes = await asyncio.gather(
            self.price_cache.fetch_fresh(path.source_venue, [path.buy_pair]),
            self.price_cache.fetch_fresh(path.dest_venue, [path.sell_pair]),
        )
        refreshed = self.scanner.estimate(
            path, ctx.amount,
            source_quote=source_quotes[path.buy_pair],
            dest_quote=dest_quotes[path.sell_pair],
        )
        ctx.result.refreshed = refreshed
        details = {
            "scan_profit": ctx.opportunity.profit_percent,
            "current_profit": refreshed.profit_percent,
        }

        if not refreshed.is_viable:
            raise PriceUnavailableError(f"Re-check could not price {path.id}: {refreshed.skip_reason}")
        if refreshed.profit_percent < ctx.options.min_profit_percent:
            return CheckResult(
                CheckName.PRICE_RECHECK, False,
                f"Profit fell to {refreshed.profit_percent:.3f}% "
                f"(minimum {ctx.options.min_profit_percent}%)",
                details,
            )
        return CheckResult(CheckName.PRICE_RECHECK, True,
                           f"Fresh profit {refreshed.profit_percent:.3f}%", details)

    async def _check_venue_status(self, ctx: _Context) -> CheckResult:
        path = ctx.opportunity.path
        statuses = {}
        for venue in (path.source_venue, path.dest_venue):
            exchange = self.exchanges.get(venue)
            if exchange is None:
                continue
            try:
                status = await exchange.fetch_status()
            except Exception as e:
                # Only an explicit not-operational answer blocks trading
                ctx.result.warnings.append(f"Could not check {venue} status: {e}")
                statuses[venue] = VenueStatus.UNKNOWN.value
                continue

            statuses[venue] = status.value
            if status in (VenueStatus.MAINTENANCE, VenueStatus.SHUTDOWN):
                return CheckResult(CheckName.VENUE_STATUS, False,
                                   f"{venue} is not operational ({status.value})",
                                   {"statuses": statuses})

        return CheckResult(CheckName.VENUE_STATUS, True, "Venues operational",
                           {"statuses": statuses})
