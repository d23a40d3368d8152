"""Drives one buy -> withdraw -> deposit -> sell execution end to end."""

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional
from loguru import logger

from ..config import Config
from ..errors import (
    ArbError, DepositTimeoutError, ExchangeAPIError, ValidationError,
)
from ..exchanges.base import ExchangeAdapter, split_pair
from .rate_limiter import AdmissionControl, AdmissionToken, ExecutionQueue
from .risk import RiskCalculator
from .saga import ExecutionSaga, LegRecord, SagaState
from .types import PathProfitEstimate
from .validator import (
    DepositCredentials, PreFlightValidator, ValidationOptions, ValidationResult, check_destination,
)


@dataclass
class DepositArrival:
    """Outcome of waiting for a deposit."""
    arrived: bool
    baseline: float
    current: Optional[float]
    received: float
    expected: float
    waited_s: float
    polls: int
    errors: int


class DepositMonitor:
    """Polls the destination balance until the transfer shows up or time runs out."""

    def __init__(self, poll_interval_s: float = 5.0, timeout_s: float = 600.0,
                 arrival_ratio: float = 0.95,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.poll_interval_s = poll_interval_s
        self.timeout_s = timeout_s
        self.arrival_ratio = arrival_ratio
        self.clock = clock
        self.sleep = sleep

    async def snapshot(self, exchange: ExchangeAdapter, asset: str) -> float:
        """Balance before the withdrawal. Arrival is measured as an increase over it."""
        try:
            balance = await exchange.fetch_balance(asset)
        except Exception as e:
            raise ExchangeAPIError(
                exchange.name, f"could not snapshot {asset} balance before withdrawal: {e}"
            ) from e
        return balance.available

    async def wait_for_arrival(self, exchange: ExchangeAdapter, asset: str,
                               baseline: float, expected: float) -> DepositArrival:
        """Poll until the balance rises by arrival_ratio × expected over `baseline`.

        Poll errors are logged and polling continues. Gives up exactly when
        timeout_s has elapsed.
        """
        threshold = expected * self.arrival_ratio
        start = self.clock()
        polls = 0
        errors = 0
        current: Optional[float] = None
        received = 0.0

        logger.info(f"Waiting for {expected:.6f} {asset} on {exchange.name} "
                    f"(baseline {baseline}, threshold {threshold:.6f})")

        while True:
            try:
                balance = await exchange.fetch_balance(asset)
                polls += 1
                current = balance.available
                received = current - baseline
                if received >= threshold:
                    waited = self.clock() - start
                    logger.info(f"✅ Deposit confirmed on {exchange.name}: +{received:.6f} {asset} "
                                f"after {waited:.0f}s")
                    return DepositArrival(True, baseline, current, received, expected,
                                          waited, polls, errors)
            except Exception as e:
                errors += 1
                logger.warning(f"Deposit poll on {exchange.name} failed: {e}")

            elapsed = self.clock() - start
            if elapsed >= self.timeout_s:
                logger.error(f"❌ Deposit of {asset} on {exchange.name} not confirmed after "
                             f"{elapsed:.0f}s (received {received:.6f} of {expected:.6f})")
                return DepositArrival(False, baseline, current, received, expected,
                                      elapsed, polls, errors)

            await self.sleep(min(self.poll_interval_s, self.timeout_s - elapsed))


@dataclass
class ExecutionResult:
    """What the caller gets back from an execution."""
    success: bool
    saga_id: str
    state: SagaState
    actual_profit: Optional[float] = None
    slippage: Optional[float] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    fund_loss_risk: bool = False
    withdrawal_id: Optional[str] = None
    leg_log: List[Dict[str, Any]] = field(default_factory=list)
    validation: Optional[Dict[str, Any]] = None

    @classmethod
    def from_saga(cls, saga: ExecutionSaga,
                  validation: Optional[ValidationResult] = None) -> "ExecutionResult":
        return cls(
            success=saga.state is SagaState.COMPLETED,
            saga_id=saga.id,
            state=saga.state,
            actual_profit=saga.actual_profit,
            slippage=saga.slippage,
            error=saga.error,
            error_code=saga.error_code,
            fund_loss_risk=saga.fund_loss_risk,
            withdrawal_id=saga.withdrawal_id,
            leg_log=[entry.to_dict() for entry in saga.leg_log],
            validation=validation.to_dict() if validation else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "saga_id": self.saga_id,
            "state": self.state.value,
            "actual_profit": self.actual_profit,
            "slippage": self.slippage,
            "error": self.error,
            "error_code": self.error_code,
            "fund_loss_risk": self.fund_loss_risk,
            "withdrawal_id": self.withdrawal_id,
            "leg_log": self.leg_log,
            "validation": self.validation,
        }


def _leg_for(state: SagaState) -> int:
    if state in (SagaState.BUY_PENDING, SagaState.BUY_DONE):
        return 1
    if state in (SagaState.WITHDRAW_PENDING, SagaState.WITHDRAW_DONE, SagaState.MONITOR_DEPOSIT):
        return 2
    if state in (SagaState.DEPOSIT_CONFIRMED, SagaState.SELL_PENDING, SagaState.SELL_DONE):
        return 3
    return 0


class ExecutionOrchestrator:
    """Runs execution sagas. No retries and no rollback of completed legs."""

    def __init__(self, config: Config, exchanges: Dict[str, ExchangeAdapter],
                 validator: PreFlightValidator, admission: AdmissionControl,
                 queue: ExecutionQueue, risk: RiskCalculator,
                 monitor: Optional[DepositMonitor] = None,
                 history_store=None, notifier=None):
        self.config = config
        self.exchanges = exchanges
        self.validator = validator
        self.admission = admission
        self.queue = queue
        self.risk = risk
        self.monitor = monitor or DepositMonitor(
            poll_interval_s=config.execution.deposit_poll_interval_s,
            timeout_s=config.execution.deposit_timeout_s,
            arrival_ratio=config.execution.deposit_arrival_ratio,
        )
        self.history_store = history_store
        self.notifier = notifier
        self.leg_timeout_s = config.execution.leg_timeout_s
        self.extra_tag_required = config.validation.extra_tag_required

        self._active: Dict[str, ExecutionSaga] = {}
        self._history: Deque[ExecutionSaga] = deque(maxlen=config.execution.history_limit)

    async def execute(self, opportunity: PathProfitEstimate, amount: float,
                      credentials: DepositCredentials,
                      options: Optional[ValidationOptions] = None) -> ExecutionResult:
        """Execute one opportunity.

        Raises ValidationError for malformed input and BusyError when either
        venue already has a saga in flight. Every other outcome, including
        failures, comes back as an ExecutionResult.
        """
        path = opportunity.path
        if not (isinstance(amount, (int, float)) and math.isfinite(amount) and amount > 0):
            raise ValidationError(f"Invalid amount: {amount}")
        for venue in (path.source_venue, path.dest_venue):
            if venue not in self.exchanges:
                raise ValidationError(f"{venue} is not configured")

        saga = ExecutionSaga(
            path=path,
            amount=amount,
            estimated_profit=opportunity.profit_percent / 100 * amount,
        )
        active_trades = self.admission.active_count
        token = self.admission.acquire([path.source_venue, path.dest_venue], saga.id)
        self._active[saga.id] = saga

        logger.info(f"Saga {saga.id}: {path.description}, amount {amount:.2f} {path.source_asset}, "
                    f"estimated {opportunity.profit_percent:+.3f}%")

        task = asyncio.create_task(
            self._run(saga, token, opportunity, credentials, options, active_trades)
        )
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if saga.is_pre_trade:
                task.cancel()
                logger.warning(f"Saga {saga.id} abandoned before trading")
            else:
                logger.warning(f"Saga {saga.id} is past its first trade and keeps running")
            raise

    async def _run(self, saga: ExecutionSaga, token: AdmissionToken,
                   opportunity: PathProfitEstimate, credentials: DepositCredentials,
                   options: Optional[ValidationOptions], active_trades: int) -> ExecutionResult:
        validation: Optional[ValidationResult] = None
        try:
            saga.advance(SagaState.VALIDATING)
            validation = await self.validator.validate(
                opportunity, saga.amount, credentials, options, active_trades
            )
            if not validation.passed:
                saga.fail(validation.to_error(), terminal=SagaState.VALIDATION_FAILED)
                logger.warning(f"Saga {saga.id} blocked by pre-flight: {saga.error}")
                if saga.fund_loss_risk:
                    await self._alert_fund_loss(saga)
            else:
                self.risk.record_trade()
                await self._run_legs(saga, credentials)

        except DepositTimeoutError as e:
            self._record_failure(saga, e)
            saga.fail(e, terminal=SagaState.DEPOSIT_TIMEOUT)
            logger.critical(f"⚠️ Saga {saga.id}: {e.message}")
            await self._notify("notify_deposit_timeout", saga)

        except ArbError as e:
            self._record_failure(saga, e)
            saga.fail(e)
            logger.error(f"❌ Saga {saga.id} failed at {saga.failed_step.value}: {e.message}")
            if e.fund_loss_risk:
                await self._alert_fund_loss(saga)

        except asyncio.CancelledError:
            if saga.is_terminal:
                raise
            if saga.is_pre_trade:
                saga.fail(ValidationError("Cancelled before any trade was placed"))
            else:
                saga.fail(ArbError(f"Cancelled during {saga.state.value}; manual reconciliation required"))
            raise

        except Exception as e:
            error = ArbError(f"Unexpected error during {saga.state.value}: {e}")
            self._record_failure(saga, error)
            saga.fail(error)
            logger.error(f"❌ Saga {saga.id} failed unexpectedly: {e}")

        finally:
            self.admission.release(token)
            self._active.pop(saga.id, None)
            self._history.append(saga)
            await self._persist(saga)

        if saga.state is SagaState.COMPLETED:
            await self._notify("notify_execution", saga)
        return ExecutionResult.from_saga(saga, validation)

    async def _call(self, venue: str, operation: Callable[[], Awaitable[Any]], label: str) -> Any:
        """One adapter call through the venue's queue, bounded by the leg timeout."""
        try:
            return await asyncio.wait_for(
                self.queue.submit(venue, operation, label), timeout=self.leg_timeout_s
            )
        except asyncio.TimeoutError as e:
            raise ExchangeAPIError(
                venue, f"{label} timed out after {self.leg_timeout_s:.0f}s; check the venue for its outcome"
            ) from e

    async def _run_legs(self, saga: ExecutionSaga, credentials: DepositCredentials):
        path = saga.path
        bridge = path.bridge_asset
        source = self.exchanges[path.source_venue]
        dest = self.exchanges[path.dest_venue]

        # Leg 1: buy the bridge asset
        saga.record(LegRecord(1, "buy", path.source_venue, SagaState.BUY_PENDING, "started",
                              pair=path.buy_pair, input_amount=saga.amount))
        saga.advance(SagaState.BUY_PENDING)
        buy = await self._call(
            path.source_venue,
            lambda: source.place_market_order("buy", path.buy_pair, saga.amount, quote_amount=True),
            "buy",
        )
        bought = buy.net_base(bridge)
        saga.record(LegRecord(1, "buy", path.source_venue, SagaState.BUY_DONE, "done",
                              pair=path.buy_pair, input_amount=saga.amount, output_amount=bought,
                              reference_id=buy.order_id))
        saga.advance(SagaState.BUY_DONE)
        logger.info(f"Saga {saga.id}: bought {bought:.6f} {bridge} @ {buy.avg_price:.6g}")

        # Leg 2: withdraw to the destination, re-checking address and tag first
        check_destination(bridge, path.dest_venue, credentials, self.extra_tag_required)
        baseline = await self.monitor.snapshot(dest, bridge)

        saga.record(LegRecord(2, "withdraw", path.source_venue, SagaState.WITHDRAW_PENDING,
                              "started", asset=bridge, input_amount=bought))
        saga.advance(SagaState.WITHDRAW_PENDING)
        withdrawal = await self._call(
            path.source_venue,
            lambda: source.withdraw(bridge, bought, credentials.address, credentials.tag),
            "withdraw",
        )
        saga.withdrawal_id = withdrawal.withdrawal_id
        withdrawal_fee = (withdrawal.fee if withdrawal.fee is not None
                          else self.config.get_withdrawal_fee(bridge))
        expected = bought - withdrawal_fee - self.config.get_network_fee(bridge)
        saga.record(LegRecord(2, "withdraw", path.source_venue, SagaState.WITHDRAW_DONE, "done",
                              asset=bridge, input_amount=bought, output_amount=expected,
                              reference_id=withdrawal.withdrawal_id))
        saga.advance(SagaState.WITHDRAW_DONE)
        logger.info(f"Saga {saga.id}: withdrawal {withdrawal.withdrawal_id} sent, "
                    f"expecting {expected:.6f} {bridge} on {path.dest_venue}")

        # Wait for the deposit
        saga.record(LegRecord(2, "deposit", path.dest_venue, SagaState.MONITOR_DEPOSIT, "started",
                              asset=bridge, input_amount=expected,
                              reference_id=withdrawal.withdrawal_id))
        saga.advance(SagaState.MONITOR_DEPOSIT)
        arrival = await self.monitor.wait_for_arrival(dest, bridge, baseline, expected)
        if not arrival.arrived:
            raise DepositTimeoutError(withdrawal.withdrawal_id, bridge, path.dest_venue,
                                      arrival.waited_s)
        saga.record(LegRecord(2, "deposit", path.dest_venue, SagaState.DEPOSIT_CONFIRMED, "done",
                              asset=bridge, input_amount=expected, output_amount=arrival.received,
                              reference_id=withdrawal.withdrawal_id))
        saga.advance(SagaState.DEPOSIT_CONFIRMED)

        # Leg 3: sell what arrived, never more than this transfer
        sell_qty = min(arrival.received, expected)
        saga.record(LegRecord(3, "sell", path.dest_venue, SagaState.SELL_PENDING, "started",
                              pair=path.sell_pair, input_amount=sell_qty))
        saga.advance(SagaState.SELL_PENDING)
        sell = await self._call(
            path.dest_venue,
            lambda: dest.place_market_order("sell", path.sell_pair, sell_qty),
            "sell",
        )
        _, dest_quote = split_pair(path.sell_pair)
        final_output = sell.net_quote(dest_quote)
        saga.record(LegRecord(3, "sell", path.dest_venue, SagaState.SELL_DONE, "done",
                              pair=path.sell_pair, input_amount=sell_qty, output_amount=final_output,
                              reference_id=sell.order_id))
        saga.advance(SagaState.SELL_DONE)

        saga.final_output = final_output
        saga.actual_profit = final_output - saga.amount
        saga.slippage = saga.actual_profit - saga.estimated_profit
        saga.advance(SagaState.COMPLETED)

        logger.info(f"✅ Saga {saga.id} completed: profit {saga.actual_profit:+.4f} {path.dest_asset} "
                    f"(slippage {saga.slippage:+.4f}) in {saga.duration_s:.0f}s")

    def _record_failure(self, saga: ExecutionSaga, error: ArbError):
        venue = getattr(error, "venue", None) or (
            saga.path.dest_venue if _leg_for(saga.state) == 3 else saga.path.source_venue
        )
        saga.record(LegRecord(_leg_for(saga.state), "error", venue, saga.state, "failed",
                              reference_id=saga.withdrawal_id, message=error.message))

    async def _alert_fund_loss(self, saga: ExecutionSaga):
        logger.critical(f"⚠️ FUND-LOSS RISK on saga {saga.id}: {saga.error}")
        await self._notify("notify_fund_loss_risk", saga)

    async def _notify(self, method: str, saga: ExecutionSaga):
        """Deliver an alert. Delivery failures are logged and never change the outcome."""
        if not self.notifier:
            return
        try:
            await getattr(self.notifier, method)(saga)
        except Exception as e:
            logger.error(f"Alert {method} for saga {saga.id} failed: {e}")

    async def _persist(self, saga: ExecutionSaga):
        if not self.history_store:
            return
        try:
            await self.history_store.append(saga)
        except Exception as e:
            logger.error(f"Failed to persist saga {saga.id}: {e}")

    def active_sagas(self) -> List[Dict[str, Any]]:
        """Sagas in flight, for the active-transfers view."""
        return [saga.to_dict() for saga in self._active.values()]

    def get_saga(self, saga_id: str) -> Optional[ExecutionSaga]:
        if saga_id in self._active:
            return self._active[saga_id]
        for saga in self._history:
            if saga.id == saga_id:
                return saga
        return None

    def history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Finished sagas, most recent first."""
        sagas = list(reversed(self._history))
        if limit is not None:
            sagas = sagas[:limit]
        return [saga.to_dict() for saga in sagas]
