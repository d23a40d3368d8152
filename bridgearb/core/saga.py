"""Execution saga state machine."""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional
from loguru import logger

from ..errors import ArbError, SagaStateError
from .types import ArbitragePath


class SagaState(Enum):
    """States of one buy -> withdraw -> sell execution."""
    INITIATED = "initiated"
    VALIDATING = "validating"
    VALIDATION_FAILED = "validation_failed"
    BUY_PENDING = "buy_pending"
    BUY_DONE = "buy_done"
    WITHDRAW_PENDING = "withdraw_pending"
    WITHDRAW_DONE = "withdraw_done"
    MONITOR_DEPOSIT = "monitor_deposit"
    DEPOSIT_CONFIRMED = "deposit_confirmed"
    DEPOSIT_TIMEOUT = "deposit_timeout"
    SELL_PENDING = "sell_pending"
    SELL_DONE = "sell_done"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES: FrozenSet[SagaState] = frozenset({
    SagaState.VALIDATION_FAILED,
    SagaState.DEPOSIT_TIMEOUT,
    SagaState.COMPLETED,
    SagaState.FAILED,
})

# States before any chargeable operation; the saga may be abandoned here
PRE_TRADE_STATES: FrozenSet[SagaState] = frozenset({
    SagaState.INITIATED,
    SagaState.VALIDATING,
})

TRANSITIONS: Dict[SagaState, FrozenSet[SagaState]] = {
    SagaState.INITIATED: frozenset({SagaState.VALIDATING}),
    SagaState.VALIDATING: frozenset({SagaState.VALIDATION_FAILED, SagaState.BUY_PENDING}),
    SagaState.BUY_PENDING: frozenset({SagaState.BUY_DONE}),
    SagaState.BUY_DONE: frozenset({SagaState.WITHDRAW_PENDING}),
    SagaState.WITHDRAW_PENDING: frozenset({SagaState.WITHDRAW_DONE}),
    SagaState.WITHDRAW_DONE: frozenset({SagaState.MONITOR_DEPOSIT}),
    SagaState.MONITOR_DEPOSIT: frozenset({SagaState.DEPOSIT_CONFIRMED, SagaState.DEPOSIT_TIMEOUT}),
    SagaState.DEPOSIT_CONFIRMED: frozenset({SagaState.SELL_PENDING}),
    SagaState.SELL_PENDING: frozenset({SagaState.SELL_DONE}),
    SagaState.SELL_DONE: frozenset({SagaState.COMPLETED}),
}


def next_state(current: SagaState, target: SagaState) -> SagaState:
    """Validate a transition. FAILED is reachable from every non-terminal state."""
    if current in TERMINAL_STATES:
        raise SagaStateError(f"Saga already terminal ({current.value}), cannot move to {target.value}")
    if target is SagaState.FAILED or target in TRANSITIONS.get(current, frozenset()):
        return target
    raise SagaStateError(f"Illegal transition {current.value} -> {target.value}")


@dataclass
class LegRecord:
    """One logged step of the saga."""
    leg: int
    action: str
    venue: str
    state: SagaState
    status: str  # started | done | failed
    pair: Optional[str] = None
    asset: Optional[str] = None
    input_amount: Optional[float] = None
    output_amount: Optional[float] = None
    reference_id: Optional[str] = None  # order id or withdrawal id
    message: Optional[str] = None
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leg": self.leg,
            "action": self.action,
            "exchange": self.venue,
            "state": self.state.value,
            "status": self.status,
            "pair": self.pair,
            "asset": self.asset,
            "input": self.input_amount,
            "output": self.output_amount,
            "reference_id": self.reference_id,
            "message": self.message,
            "ts": self.ts,
        }


def new_saga_id() -> str:
    return f"swap-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


@dataclass
class ExecutionSaga:
    """A single execution, mutated only by the orchestrator."""
    path: ArbitragePath
    amount: float
    estimated_profit: float
    id: str = field(default_factory=new_saga_id)
    state: SagaState = SagaState.INITIATED
    leg_log: List[LegRecord] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    actual_profit: Optional[float] = None
    slippage: Optional[float] = None
    final_output: Optional[float] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    fund_loss_risk: bool = False
    failed_step: Optional[SagaState] = None
    withdrawal_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_pre_trade(self) -> bool:
        return self.state in PRE_TRADE_STATES

    @property
    def duration_s(self) -> float:
        end = self.ended_at or time.time()
        return end - self.started_at

    def record(self, entry: LegRecord):
        """Log a step. Called before the state it leads to is entered."""
        self.leg_log.append(entry)

    def advance(self, target: SagaState):
        previous = self.state
        self.state = next_state(previous, target)
        if self.is_terminal:
            self.ended_at = time.time()
        logger.debug(f"Saga {self.id}: {previous.value} -> {target.value}")

    def fail(self, error: ArbError, terminal: SagaState = SagaState.FAILED):
        """Move to a failure terminal state, remembering where it happened."""
        self.failed_step = self.state
        self.error = error.message
        self.error_code = error.code
        self.fund_loss_risk = error.fund_loss_risk
        self.advance(terminal)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "path": self.path.to_dict(),
            "amount": self.amount,
            "state": self.state.value,
            "estimated_profit": self.estimated_profit,
            "actual_profit": self.actual_profit,
            "slippage": self.slippage,
            "final_output": self.final_output,
            "error": self.error,
            "error_code": self.error_code,
            "fund_loss_risk": self.fund_loss_risk,
            "failed_step": self.failed_step.value if self.failed_step else None,
            "withdrawal_id": self.withdrawal_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "leg_log": [entry.to_dict() for entry in self.leg_log],
        }
