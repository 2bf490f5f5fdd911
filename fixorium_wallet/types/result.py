"""
Result type definitions for confirmations and quotes
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional, List


class ConfirmationStatus(Enum):
    """Terminal result of a confirmation poll"""
    CONFIRMED = "confirmed"
    FAILED_ON_CHAIN = "failed_on_chain"
    TIMED_OUT = "timed_out"  # Ambiguous: status unknown, check later


# Commitment levels in increasing order of finality
COMMITMENT_ORDER = ("processed", "confirmed", "finalized")


def commitment_reached(observed: Optional[str], target: str) -> bool:
    """Check whether an observed confirmationStatus satisfies the target commitment"""
    if observed not in COMMITMENT_ORDER:
        return False
    if target not in COMMITMENT_ORDER:
        target = "confirmed"
    return COMMITMENT_ORDER.index(observed) >= COMMITMENT_ORDER.index(target)


@dataclass(frozen=True)
class ConfirmationOutcome:
    """
    Result of polling a signature for confirmation

    Attributes:
        status: CONFIRMED, FAILED_ON_CHAIN or TIMED_OUT
        signature: Transaction signature (base58)
        reason: On-chain error or last seen status for timeouts
        slot: Slot the transaction landed in, if known
        observed_at: Unix time the verdict was reached
    """
    status: ConfirmationStatus
    signature: str
    reason: Optional[str] = None
    slot: Optional[int] = None
    observed_at: Optional[float] = None

    @property
    def is_confirmed(self) -> bool:
        return self.status == ConfirmationStatus.CONFIRMED

    @property
    def is_failed(self) -> bool:
        return self.status == ConfirmationStatus.FAILED_ON_CHAIN

    @property
    def is_timeout(self) -> bool:
        return self.status == ConfirmationStatus.TIMED_OUT

    def __str__(self) -> str:
        sig_display = f"{self.signature[:16]}..." if self.signature else "no signature"
        if self.reason:
            return f"Confirmation({self.status.value}, {sig_display}, {self.reason})"
        return f"Confirmation({self.status.value}, {sig_display})"


@dataclass
class QuoteResult:
    """
    Swap quote result

    Attributes:
        from_token: Input token mint
        to_token: Output token mint
        from_amount: Input amount (raw)
        to_amount: Output amount (raw)
        price_impact: Price impact as decimal (0.01 = 1%)
        route: Swap route labels
        min_to_amount: Minimum output after slippage
        slippage_bps: Applied slippage in basis points
        raw_response: Raw API response data (for swap transaction building)
    """
    from_token: str
    to_token: str
    from_amount: int
    to_amount: int
    price_impact: Decimal = Decimal(0)
    route: List[str] = field(default_factory=list)
    min_to_amount: Optional[int] = None
    slippage_bps: int = 50
    raw_response: Optional[dict] = None

    @property
    def exchange_rate(self) -> Decimal:
        """Output per input"""
        if self.from_amount == 0:
            return Decimal(0)
        return Decimal(self.to_amount) / Decimal(self.from_amount)

    @property
    def price_impact_percent(self) -> float:
        """Price impact as percentage"""
        return float(self.price_impact * 100)

    def __str__(self) -> str:
        return f"Quote({self.from_amount} -> {self.to_amount}, impact={self.price_impact_percent:.2f}%)"
