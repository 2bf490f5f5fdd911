"""
Type definitions for Fixorium Wallet
"""

from .common import (
    Token,
    Endpoint,
    BalanceSnapshot,
    SnapshotSource,
    BlockhashHandle,
    LAMPORTS_PER_SOL,
)
from .identity import IdentityKind, SigningKeypair
from .result import (
    ConfirmationStatus,
    ConfirmationOutcome,
    QuoteResult,
    commitment_reached,
)
from .solana_tokens import (
    NATIVE_SOL_MINT,
    SOLANA_TOKENS,
    TokenCatalog,
    StaticTokenCatalog,
    resolve_token_mint,
    get_token_decimals,
    is_native_sol,
    to_base_units,
    from_base_units,
)
from .settlement import (
    SettlementKind,
    SettlementState,
    SettlementOutcome,
    LegStatus,
    ExchangeRoute,
    SettlementIntent,
    SettlementRecord,
    TERMINAL_STATES,
)

__all__ = [
    # Common types
    "Token",
    "Endpoint",
    "BalanceSnapshot",
    "SnapshotSource",
    "BlockhashHandle",
    "LAMPORTS_PER_SOL",
    # Identity
    "IdentityKind",
    "SigningKeypair",
    # Results
    "ConfirmationStatus",
    "ConfirmationOutcome",
    "QuoteResult",
    "commitment_reached",
    # Token catalog
    "NATIVE_SOL_MINT",
    "SOLANA_TOKENS",
    "TokenCatalog",
    "StaticTokenCatalog",
    "resolve_token_mint",
    "get_token_decimals",
    "is_native_sol",
    "to_base_units",
    "from_base_units",
    # Settlement
    "SettlementKind",
    "SettlementState",
    "SettlementOutcome",
    "LegStatus",
    "ExchangeRoute",
    "SettlementIntent",
    "SettlementRecord",
    "TERMINAL_STATES",
]
