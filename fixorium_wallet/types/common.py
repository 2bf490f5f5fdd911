"""
Common type definitions
"""

import math
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional


LAMPORTS_PER_SOL = 1_000_000_000


@dataclass(frozen=True)
class Token:
    """
    Token information

    Attributes:
        mint: Token mint address (base58)
        symbol: Token symbol (e.g., "SOL", "USDC")
        decimals: Number of decimal places
        name: Full token name (optional)
    """
    mint: str
    symbol: str
    decimals: int
    name: str = ""

    def __str__(self) -> str:
        return self.symbol

    def __repr__(self) -> str:
        return f"Token({self.symbol}, {self.mint[:8]}...)"

    @property
    def is_native_sol(self) -> bool:
        """Check if this is native SOL (wrapped mint)"""
        return self.mint == "So11111111111111111111111111111111111111112"


@dataclass
class Endpoint:
    """
    Ledger-access endpoint with mutable health metadata

    Owned by EndpointPool; mutated only under the pool's lock.

    Attributes:
        url: JSON-RPC URL
        last_latency_ms: Latency of the last successful call (None = never measured)
        last_success_at: Unix time of the last successful call
        consecutive_failures: Failures since the last success
        backoff_remaining: Selections this endpoint still sits out
    """
    url: str
    last_latency_ms: Optional[float] = None
    last_success_at: Optional[float] = None
    consecutive_failures: int = 0
    backoff_remaining: int = 0

    @property
    def latency_rank(self) -> float:
        """Latency used for ranking; unmeasured endpoints rank after measured ones"""
        return self.last_latency_ms if self.last_latency_ms is not None else math.inf

    def __str__(self) -> str:
        return self.url


class SnapshotSource(Enum):
    """Where the current balance value came from"""
    LIVE = "live"
    STALE = "stale"


@dataclass(frozen=True)
class BalanceSnapshot:
    """
    Last-known balance of the session wallet

    Attributes:
        lamports: Balance in lamports (None until the first successful poll)
        observed_at: Unix time of the successful poll that produced the value
        source: LIVE after a successful poll, STALE after a failed one
        last_error: Message of the most recent failed poll, if any
    """
    lamports: Optional[int]
    observed_at: Optional[float]
    source: SnapshotSource
    last_error: Optional[str] = None

    @property
    def has_value(self) -> bool:
        return self.lamports is not None

    @property
    def is_live(self) -> bool:
        return self.source == SnapshotSource.LIVE

    @property
    def sol(self) -> Optional[Decimal]:
        """Balance in SOL"""
        if self.lamports is None:
            return None
        return Decimal(self.lamports) / Decimal(LAMPORTS_PER_SOL)

    @classmethod
    def empty(cls) -> "BalanceSnapshot":
        return cls(lamports=None, observed_at=None, source=SnapshotSource.STALE)

    def __str__(self) -> str:
        if self.lamports is None:
            return "Balance(unknown)"
        return f"Balance({self.sol} SOL, {self.source.value})"


@dataclass(frozen=True)
class BlockhashHandle:
    """
    Recent blockhash required to build a replay-resistant transaction

    Attributes:
        blockhash: Base58 blockhash
        last_valid_block_height: Height after which the blockhash expires
        fetched_at: Unix time the handle was fetched
    """
    blockhash: str
    last_valid_block_height: Optional[int]
    fetched_at: float
