"""
Settlement type definitions

A settlement is a causally ordered pair of transactions: the platform fee
transfer, then the primary transfer or exchange.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..errors import (
    WalletError,
    InvalidStateTransition,
    PartialSettlementFailure,
    ConfirmationTimeout,
)
from .common import BlockhashHandle
from .result import QuoteResult
from .solana_tokens import is_native_sol


class SettlementKind(Enum):
    TRANSFER = "transfer"
    EXCHANGE = "exchange"


class SettlementState(Enum):
    """
    Settlement state machine

    BUILDING -> FEE_SUBMITTED -> FEE_CONFIRMED -> PRIMARY_SUBMITTED -> PRIMARY_CONFIRMED
    Failure exits: ABORTED (nothing broadcast), FEE_FAILED, PRIMARY_FAILED (fee spent)
    """
    BUILDING = "building"
    FEE_SUBMITTED = "fee_submitted"
    FEE_CONFIRMED = "fee_confirmed"
    PRIMARY_SUBMITTED = "primary_submitted"
    PRIMARY_CONFIRMED = "primary_confirmed"
    FEE_FAILED = "fee_failed"
    PRIMARY_FAILED = "primary_failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    SettlementState.PRIMARY_CONFIRMED,
    SettlementState.FEE_FAILED,
    SettlementState.PRIMARY_FAILED,
    SettlementState.ABORTED,
})

ALLOWED_TRANSITIONS: Dict[SettlementState, Tuple[SettlementState, ...]] = {
    SettlementState.BUILDING: (SettlementState.FEE_SUBMITTED, SettlementState.FEE_FAILED, SettlementState.ABORTED),
    SettlementState.FEE_SUBMITTED: (SettlementState.FEE_CONFIRMED, SettlementState.FEE_FAILED),
    SettlementState.FEE_CONFIRMED: (SettlementState.PRIMARY_SUBMITTED, SettlementState.PRIMARY_FAILED),
    SettlementState.PRIMARY_SUBMITTED: (SettlementState.PRIMARY_CONFIRMED, SettlementState.PRIMARY_FAILED),
}


class LegStatus(Enum):
    """Status of one leg (fee or primary) of a settlement"""
    NOT_ATTEMPTED = "not_attempted"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    UNKNOWN = "unknown"  # confirmation timed out; may still land
    FAILED = "failed"


class SettlementOutcome(Enum):
    """
    What the caller shows the user

    Each terminal situation has its own value; they are never merged.
    """
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    ABORTED = "aborted"
    FEE_FAILED = "fee_failed"
    PARTIAL_FAILURE = "partial_failure"  # fee spent, primary not executed
    CONFIRMATION_TIMEOUT = "confirmation_timeout"  # ambiguous, re-check later


@dataclass(frozen=True)
class ExchangeRoute:
    """
    Exchange parameters for the quoting service

    Attributes:
        input_mint: Mint being sold
        output_mint: Mint being bought
        max_slippage_bps: Largest slippage the caller accepts
        expected_out_amount: Output the user was shown (base units), if any
    """
    input_mint: str
    output_mint: str
    max_slippage_bps: int = 100
    expected_out_amount: Optional[int] = None


@dataclass(frozen=True)
class SettlementIntent:
    """
    One user action: a primary transfer/exchange plus the platform fee

    Amounts are in base units (lamports for SOL). Immutable once created.
    """
    kind: SettlementKind
    primary_amount: int
    fee_amount: int
    fee_destination: str
    destination: Optional[str] = None
    route: Optional[ExchangeRoute] = None

    def __post_init__(self):
        if self.primary_amount <= 0:
            raise ValueError(f"primary_amount must be positive, got {self.primary_amount}")
        if self.fee_amount <= 0:
            raise ValueError(f"fee_amount must be positive, got {self.fee_amount}")
        if self.kind == SettlementKind.TRANSFER and not self.destination:
            raise ValueError("transfer intent requires a destination")
        if self.kind == SettlementKind.EXCHANGE and self.route is None:
            raise ValueError("exchange intent requires a route")

    @classmethod
    def transfer(
        cls,
        destination: str,
        lamports: int,
        fee_amount: int,
        fee_destination: str,
    ) -> "SettlementIntent":
        return cls(
            kind=SettlementKind.TRANSFER,
            primary_amount=lamports,
            fee_amount=fee_amount,
            fee_destination=fee_destination,
            destination=destination,
        )

    @classmethod
    def exchange(
        cls,
        route: ExchangeRoute,
        amount: int,
        fee_amount: int,
        fee_destination: str,
    ) -> "SettlementIntent":
        return cls(
            kind=SettlementKind.EXCHANGE,
            primary_amount=amount,
            fee_amount=fee_amount,
            fee_destination=fee_destination,
            route=route,
        )

    @property
    def spends_native_sol(self) -> bool:
        """Whether the primary amount comes out of the SOL balance"""
        if self.kind == SettlementKind.TRANSFER:
            return True
        return is_native_sol(self.route.input_mint)

    def required_lamports(self, network_cost: int) -> int:
        """SOL needed up front: primary (if paid in SOL) + fee + network cost"""
        primary = self.primary_amount if self.spends_native_sol else 0
        return primary + self.fee_amount + network_cost


@dataclass
class SettlementRecord:
    """
    Execution record for one SettlementIntent

    Attributes:
        record_id: Short id, also used as the log correlation id
        intent: The intent being executed
        state: Current state machine position
        fee_signature / primary_signature: Transaction signatures (base58)
        fee_status / primary_status: Per-leg status
        error: The error that stopped or suspended the settlement
        quote: Quote accepted for exchange intents
        fee_blockhash / primary_blockhash: Blockhash each leg was signed against;
            once it expires an unseen leg can no longer land
        timestamps: State name -> unix time it was entered
        history: Ordered (state, unix time) pairs
    """
    record_id: str
    intent: SettlementIntent
    state: SettlementState = SettlementState.BUILDING
    fee_signature: Optional[str] = None
    primary_signature: Optional[str] = None
    fee_status: LegStatus = LegStatus.NOT_ATTEMPTED
    primary_status: LegStatus = LegStatus.NOT_ATTEMPTED
    error: Optional[WalletError] = None
    quote: Optional[QuoteResult] = None
    fee_blockhash: Optional[BlockhashHandle] = None
    primary_blockhash: Optional[BlockhashHandle] = None
    created_at: float = field(default_factory=time.time)
    timestamps: Dict[str, float] = field(default_factory=dict)
    history: List[Tuple[SettlementState, float]] = field(default_factory=list)

    def __post_init__(self):
        if not self.history:
            self.history.append((self.state, self.created_at))
            self.timestamps[self.state.value] = self.created_at

    # state machine

    def transition(self, target: SettlementState, at: Optional[float] = None) -> None:
        if target not in ALLOWED_TRANSITIONS.get(self.state, ()):
            raise InvalidStateTransition(self.state.value, target.value)
        if at is None:
            # Strictly increasing so ordering survives a coarse clock
            at = max(time.time(), self.history[-1][1] + 1e-6)
        self.state = target
        self.timestamps[target.value] = at
        self.history.append((target, at))

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def awaiting_confirmation(self) -> bool:
        """Non-terminal and waiting on a signature whose fate is unknown"""
        return (
            (self.state == SettlementState.FEE_SUBMITTED and self.fee_status == LegStatus.UNKNOWN)
            or (self.state == SettlementState.PRIMARY_SUBMITTED and self.primary_status == LegStatus.UNKNOWN)
        )

    @property
    def outcome(self) -> SettlementOutcome:
        if self.state == SettlementState.PRIMARY_CONFIRMED:
            return SettlementOutcome.SUCCEEDED
        if self.state == SettlementState.ABORTED:
            return SettlementOutcome.ABORTED
        if self.state == SettlementState.FEE_FAILED:
            return SettlementOutcome.FEE_FAILED
        if self.state == SettlementState.PRIMARY_FAILED:
            return SettlementOutcome.PARTIAL_FAILURE
        if self.awaiting_confirmation:
            return SettlementOutcome.CONFIRMATION_TIMEOUT
        return SettlementOutcome.IN_PROGRESS

    @property
    def fee_spent(self) -> bool:
        return self.fee_status == LegStatus.CONFIRMED

    @property
    def fee_confirmed_at(self) -> Optional[float]:
        return self.timestamps.get(SettlementState.FEE_CONFIRMED.value)

    @property
    def primary_submitted_at(self) -> Optional[float]:
        return self.timestamps.get(SettlementState.PRIMARY_SUBMITTED.value)

    @property
    def error_message(self) -> Optional[str]:
        return self.error.message if self.error else None

    def raise_for_outcome(self) -> None:
        """
        Raise the error matching the record's outcome

        Succeeded and in-progress records return normally.
        """
        outcome = self.outcome
        if outcome == SettlementOutcome.PARTIAL_FAILURE:
            if isinstance(self.error, PartialSettlementFailure):
                raise self.error
            raise PartialSettlementFailure(self.fee_signature, self.error, self.primary_signature)
        if outcome == SettlementOutcome.CONFIRMATION_TIMEOUT:
            if isinstance(self.error, ConfirmationTimeout):
                raise self.error
            pending = self.primary_signature if self.state == SettlementState.PRIMARY_SUBMITTED else self.fee_signature
            raise ConfirmationTimeout(pending, 0)
        if outcome in (SettlementOutcome.ABORTED, SettlementOutcome.FEE_FAILED) and self.error is not None:
            raise self.error

    def summary(self) -> dict:
        """Plain dict for display; contains no key material"""
        return {
            "record_id": self.record_id,
            "kind": self.intent.kind.value,
            "state": self.state.value,
            "outcome": self.outcome.value,
            "fee_signature": self.fee_signature,
            "fee_status": self.fee_status.value,
            "primary_signature": self.primary_signature,
            "primary_status": self.primary_status.value,
            "error": str(self.error) if self.error else None,
        }

    def __str__(self) -> str:
        return f"Settlement({self.record_id}, {self.state.value}, {self.outcome.value})"
