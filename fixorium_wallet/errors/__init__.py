"""
Error definitions for Fixorium Wallet
"""

from .exceptions import (
    ErrorCode,
    WalletError,
    InvalidCredential,
    RpcError,
    RpcResponseError,
    EndpointUnavailable,
    SlippageExceeded,
    QuoteError,
    InsufficientFunds,
    TransactionError,
    BroadcastRejected,
    ConfirmationTimeout,
    PartialSettlementFailure,
    Busy,
    SettlementCancelled,
    InvalidStateTransition,
    SessionClosed,
    SignerError,
    ConfigurationError,
)

__all__ = [
    "ErrorCode",
    "WalletError",
    "InvalidCredential",
    "RpcError",
    "RpcResponseError",
    "EndpointUnavailable",
    "SlippageExceeded",
    "QuoteError",
    "InsufficientFunds",
    "TransactionError",
    "BroadcastRejected",
    "ConfirmationTimeout",
    "PartialSettlementFailure",
    "Busy",
    "SettlementCancelled",
    "InvalidStateTransition",
    "SessionClosed",
    "SignerError",
    "ConfigurationError",
]
