"""
Fixorium Wallet - Solana wallet session and settlement engine

Provides:
- Deterministic wallet derivation from a verified identity
- Failover across interchangeable Solana RPC endpoints
- Background SOL balance tracking that never regresses to zero
- Two-leg settlement (platform fee, then transfer or Jupiter exchange)
"""

__version__ = "0.1.0"

from .session import Session
from .types import (
    Token,
    IdentityKind,
    SigningKeypair,
    BalanceSnapshot,
    SnapshotSource,
    ConfirmationOutcome,
    ConfirmationStatus,
    QuoteResult,
    SettlementIntent,
    SettlementRecord,
    SettlementState,
    SettlementOutcome,
    ExchangeRoute,
    LegStatus,
)
from .errors import (
    WalletError,
    ErrorCode,
    InvalidCredential,
    EndpointUnavailable,
    InsufficientFunds,
    Busy,
    BroadcastRejected,
    ConfirmationTimeout,
    PartialSettlementFailure,
    SlippageExceeded,
    SessionClosed,
)
from .infra import derive, derive_for, EndpointPool, LedgerClient
from .modules import BalanceTracker, SettlementOrchestrator
from .protocols import JupiterAPI, Quoter
from .config import setup_logging

__all__ = [
    "__version__",
    # Session
    "Session",
    # Types
    "Token",
    "IdentityKind",
    "SigningKeypair",
    "BalanceSnapshot",
    "SnapshotSource",
    "ConfirmationOutcome",
    "ConfirmationStatus",
    "QuoteResult",
    "SettlementIntent",
    "SettlementRecord",
    "SettlementState",
    "SettlementOutcome",
    "ExchangeRoute",
    "LegStatus",
    # Errors
    "WalletError",
    "ErrorCode",
    "InvalidCredential",
    "EndpointUnavailable",
    "InsufficientFunds",
    "Busy",
    "BroadcastRejected",
    "ConfirmationTimeout",
    "PartialSettlementFailure",
    "SlippageExceeded",
    "SessionClosed",
    # Components
    "derive",
    "derive_for",
    "EndpointPool",
    "LedgerClient",
    "BalanceTracker",
    "SettlementOrchestrator",
    "JupiterAPI",
    "Quoter",
    "setup_logging",
]
