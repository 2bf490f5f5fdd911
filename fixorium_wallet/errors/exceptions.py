"""
Exception definitions for Fixorium Wallet
"""

from enum import Enum
from typing import List, Optional


class ErrorCode(Enum):
    """
    Unified error codes for wallet operations

    1xxx - RPC / endpoint errors
    2xxx - Transaction errors
    3xxx - Quote / slippage errors
    4xxx - Settlement errors
    5xxx - Session errors
    6xxx - Identity / signer errors
    9xxx - Configuration errors
    """
    # RPC errors (recoverable)
    RPC_CONNECTION_FAILED = "1001"
    RPC_TIMEOUT = "1002"
    RPC_RATE_LIMITED = "1003"
    RPC_INVALID_RESPONSE = "1004"
    RPC_NODE_UNHEALTHY = "1005"
    RPC_ERROR_RESPONSE = "1006"
    ENDPOINT_UNAVAILABLE = "1010"

    # Transaction errors
    TX_BUILD_FAILED = "2001"
    TX_BROADCAST_REJECTED = "2002"
    TX_CONFIRMATION_TIMEOUT = "2003"
    TX_INSUFFICIENT_FUNDS = "2004"
    TX_FAILED_ON_CHAIN = "2005"
    TX_INVALID_ADDRESS = "2006"
    TX_BLOCKHASH_EXPIRED = "2007"

    # Quote errors
    SLIPPAGE_EXCEEDED = "3001"
    QUOTE_FAILED = "3002"

    # Settlement errors
    SETTLEMENT_BUSY = "4001"
    PARTIAL_SETTLEMENT_FAILURE = "4002"
    SETTLEMENT_CANCELLED = "4003"
    SETTLEMENT_INVALID_STATE = "4004"

    # Session errors
    SESSION_CLOSED = "5001"

    # Identity / signer errors
    INVALID_CREDENTIAL = "6001"
    SIGNER_FAILED = "6002"
    SIGNER_WIPED = "6003"

    # Configuration errors
    CONFIG_INVALID = "9001"
    CONFIG_MISSING = "9002"


class WalletError(Exception):
    """
    Base exception for all wallet errors

    Attributes:
        message: Human-readable error message
        code: Error code for programmatic handling
        recoverable: Whether the error might succeed on retry
        original_error: The underlying exception if any
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        recoverable: bool = False,
        original_error: Optional[Exception] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.recoverable = recoverable
        self.original_error = original_error
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code.value}, message={self.message!r})"

    @property
    def should_retry(self) -> bool:
        """Indicate if the operation should be retried"""
        return self.recoverable


class InvalidCredential(WalletError):
    """
    Identity credential is malformed - fatal, no retry

    The credential itself is never echoed back in the message.
    """

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.INVALID_CREDENTIAL, recoverable=False)

    @classmethod
    def missing(cls, field_name: str) -> "InvalidCredential":
        return cls(f"Identity credential is missing required field: {field_name}")

    @classmethod
    def malformed(cls, reason: str) -> "InvalidCredential":
        return cls(f"Identity credential is malformed: {reason}")


class RpcError(WalletError):
    """
    RPC-related errors - typically recoverable

    Raised when:
    - Connection to RPC endpoint fails
    - Request times out
    - Rate limit is hit
    - Invalid response received
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.RPC_CONNECTION_FAILED,
        original_error: Optional[Exception] = None,
        endpoint: Optional[str] = None,
        recoverable: bool = True,
    ):
        super().__init__(
            message,
            code,
            recoverable=recoverable,
            original_error=original_error,
            details={"endpoint": endpoint} if endpoint else None,
        )
        self.endpoint = endpoint

    @classmethod
    def connection_failed(cls, endpoint: str, error: Exception = None) -> "RpcError":
        return cls(
            f"Failed to connect to RPC endpoint: {endpoint}",
            ErrorCode.RPC_CONNECTION_FAILED,
            original_error=error,
            endpoint=endpoint,
        )

    @classmethod
    def timeout(cls, endpoint: str, timeout_seconds: float) -> "RpcError":
        return cls(
            f"RPC request timed out after {timeout_seconds}s",
            ErrorCode.RPC_TIMEOUT,
            endpoint=endpoint,
        )

    @classmethod
    def rate_limited(cls, endpoint: str) -> "RpcError":
        return cls(
            "RPC rate limit exceeded",
            ErrorCode.RPC_RATE_LIMITED,
            endpoint=endpoint,
        )

    @classmethod
    def invalid_response(cls, endpoint: str, reason: str) -> "RpcError":
        return cls(
            f"Invalid RPC response: {reason}",
            ErrorCode.RPC_INVALID_RESPONSE,
            endpoint=endpoint,
        )

    @classmethod
    def node_unhealthy(cls, endpoint: str, reason: str) -> "RpcError":
        return cls(
            f"RPC node unhealthy: {reason}",
            ErrorCode.RPC_NODE_UNHEALTHY,
            endpoint=endpoint,
        )


class RpcResponseError(RpcError):
    """
    JSON-RPC error answered by a healthy node - not retried on another endpoint

    Attributes:
        rpc_code: JSON-RPC error code
        rpc_data: JSON-RPC error data payload
    """

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        rpc_code: Optional[int] = None,
        rpc_data: Optional[object] = None,
    ):
        super().__init__(
            message,
            ErrorCode.RPC_ERROR_RESPONSE,
            endpoint=endpoint,
            recoverable=False,
        )
        self.rpc_code = rpc_code
        self.rpc_data = rpc_data
        self.details["rpc_error_code"] = rpc_code
        self.details["rpc_error_data"] = rpc_data


class EndpointUnavailable(RpcError):
    """
    Every attempted endpoint failed for one logical call

    Raised by the ledger client after its bounded failover retry.
    """

    def __init__(
        self,
        message: str,
        attempted: Optional[List[str]] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message,
            ErrorCode.ENDPOINT_UNAVAILABLE,
            original_error=original_error,
            endpoint=attempted[-1] if attempted else None,
        )
        self.attempted = list(attempted or [])
        self.details["attempted"] = self.attempted

    @classmethod
    def exhausted(cls, method: str, attempted: List[str], last_error: Optional[Exception]) -> "EndpointUnavailable":
        return cls(
            f"RPC call {method} failed on {len(attempted)} endpoint(s): {last_error}",
            attempted=attempted,
            original_error=last_error,
        )


class SlippageExceeded(WalletError):
    """
    Quoted output falls outside the caller's slippage tolerance
    """

    def __init__(
        self,
        message: str,
        expected: Optional[int] = None,
        actual: Optional[int] = None,
        slippage_bps: Optional[int] = None,
    ):
        super().__init__(
            message,
            ErrorCode.SLIPPAGE_EXCEEDED,
            recoverable=True,
            details={
                "expected": expected,
                "actual": actual,
                "slippage_bps": slippage_bps,
            },
        )
        self.expected = expected
        self.actual = actual
        self.slippage_bps = slippage_bps

    @classmethod
    def output_too_low(cls, expected: int, actual: int, slippage_bps: int) -> "SlippageExceeded":
        if expected == 0:
            diff_bps = 0.0
        else:
            diff_bps = (expected - actual) / expected * 10000
        return cls(
            f"Quoted output {actual} below expected {expected} (diff: {diff_bps:.0f} bps, limit: {slippage_bps} bps)",
            expected=expected,
            actual=actual,
            slippage_bps=slippage_bps,
        )

    @classmethod
    def tolerance_too_wide(cls, quoted_bps: int, max_bps: int) -> "SlippageExceeded":
        return cls(
            f"Quote slippage {quoted_bps} bps exceeds maximum {max_bps} bps",
            slippage_bps=max_bps,
        )


class QuoteError(WalletError):
    """Quoting service could not produce a route or swap transaction"""

    def __init__(self, message: str, original_error: Optional[Exception] = None, recoverable: bool = True):
        super().__init__(
            message,
            ErrorCode.QUOTE_FAILED,
            recoverable=recoverable,
            original_error=original_error,
        )

    @classmethod
    def no_route(cls, input_mint: str, output_mint: str, reason: str = "Unable to find route") -> "QuoteError":
        return cls(f"{reason} ({input_mint} -> {output_mint})", recoverable=False)


class InsufficientFunds(WalletError):
    """
    Insufficient balance - user-facing, aborts before submission
    """

    def __init__(
        self,
        message: str,
        required: Optional[int] = None,
        available: Optional[int] = None,
    ):
        super().__init__(
            message,
            ErrorCode.TX_INSUFFICIENT_FUNDS,
            recoverable=False,
            details={
                "required_lamports": required,
                "available_lamports": available,
            },
        )
        self.required = required
        self.available = available

    @classmethod
    def for_settlement(cls, required_lamports: int, available_lamports: int) -> "InsufficientFunds":
        return cls(
            f"Insufficient SOL: need {required_lamports / 1e9:.6f} SOL (including fees), "
            f"have {available_lamports / 1e9:.6f} SOL",
            required=required_lamports,
            available=available_lamports,
        )

    @classmethod
    def for_token(cls, mint: str, required: int, available: int) -> "InsufficientFunds":
        error = cls(
            f"Insufficient token balance for {mint}: need {required}, have {available} (base units)",
            required=required,
            available=available,
        )
        error.details["mint"] = mint
        return error


class TransactionError(WalletError):
    """
    Transaction construction and execution errors
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.TX_BUILD_FAILED,
        signature: Optional[str] = None,
        logs: Optional[list] = None,
        recoverable: bool = False,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message,
            code,
            recoverable=recoverable,
            original_error=original_error,
            details={"signature": signature, "logs": logs},
        )
        self.signature = signature
        self.logs = logs or []

    @classmethod
    def build_failed(cls, reason: str, error: Exception = None) -> "TransactionError":
        return cls(f"Failed to build transaction: {reason}", original_error=error)

    @classmethod
    def invalid_address(cls, address: str) -> "TransactionError":
        return cls(f"Invalid account address: {address}", ErrorCode.TX_INVALID_ADDRESS)

    @classmethod
    def failed_on_chain(cls, signature: str, reason: str) -> "TransactionError":
        return cls(
            f"Transaction failed on-chain: {reason}",
            ErrorCode.TX_FAILED_ON_CHAIN,
            signature=signature,
        )

    @classmethod
    def expired(cls, signature: str, last_valid_block_height: Optional[int] = None) -> "TransactionError":
        limit = f" (last valid block height {last_valid_block_height})" if last_valid_block_height is not None else ""
        return cls(
            f"Transaction {signature} expired without landing{limit}",
            ErrorCode.TX_BLOCKHASH_EXPIRED,
            signature=signature,
        )


class BroadcastRejected(TransactionError):
    """
    Ledger rejected the transaction outright - terminal for that leg
    """

    def __init__(
        self,
        message: str,
        rpc_code: Optional[int] = None,
        logs: Optional[list] = None,
        signature: Optional[str] = None,
    ):
        super().__init__(
            message,
            ErrorCode.TX_BROADCAST_REJECTED,
            signature=signature,
            logs=logs,
            recoverable=False,
        )
        self.rpc_code = rpc_code
        self.details["rpc_error_code"] = rpc_code

    @classmethod
    def from_rpc(cls, error: RpcResponseError) -> "BroadcastRejected":
        data = error.rpc_data if isinstance(error.rpc_data, dict) else {}
        return cls(
            f"Transaction rejected by ledger: {error.message}",
            rpc_code=error.rpc_code,
            logs=data.get("logs"),
        )


class ConfirmationTimeout(TransactionError):
    """
    Confirmation window elapsed without a verdict - ambiguous, re-check later
    """

    def __init__(self, signature: str, timeout_seconds: float):
        super().__init__(
            f"Transaction {signature} not confirmed within {timeout_seconds}s; status unknown, check again later",
            ErrorCode.TX_CONFIRMATION_TIMEOUT,
            signature=signature,
            recoverable=True,
        )
        self.timeout_seconds = timeout_seconds


class PartialSettlementFailure(WalletError):
    """
    Fee leg confirmed, primary leg did not execute - fee is not refunded

    Attributes:
        fee_signature: Signature of the confirmed fee transfer
        primary_signature: Signature of the primary leg if it was broadcast
        cause: Error that stopped the primary leg
    """

    def __init__(
        self,
        fee_signature: Optional[str],
        cause: Optional[WalletError],
        primary_signature: Optional[str] = None,
    ):
        super().__init__(
            f"Platform fee was charged ({fee_signature}) but the primary operation failed: {cause}",
            ErrorCode.PARTIAL_SETTLEMENT_FAILURE,
            recoverable=False,
            original_error=cause,
            details={
                "fee_signature": fee_signature,
                "primary_signature": primary_signature,
            },
        )
        self.fee_signature = fee_signature
        self.primary_signature = primary_signature
        self.cause = cause


class Busy(WalletError):
    """A settlement is already in flight for this session"""

    def __init__(self, record_id: Optional[str] = None):
        super().__init__(
            f"Settlement {record_id} is still in progress",
            ErrorCode.SETTLEMENT_BUSY,
            recoverable=True,
            details={"record_id": record_id},
        )
        self.record_id = record_id


class SettlementCancelled(WalletError):
    """Settlement was cancelled before anything was broadcast"""

    def __init__(self, record_id: Optional[str] = None):
        super().__init__(
            f"Settlement {record_id} cancelled before submission",
            ErrorCode.SETTLEMENT_CANCELLED,
            recoverable=False,
        )


class InvalidStateTransition(WalletError):
    """Settlement record asked to move along an edge the state machine does not have"""

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Illegal settlement transition: {current} -> {target}",
            ErrorCode.SETTLEMENT_INVALID_STATE,
        )


class SessionClosed(WalletError):
    """Session was closed; its key material is gone"""

    def __init__(self, message: str = "Session is closed"):
        super().__init__(message, ErrorCode.SESSION_CLOSED, recoverable=False)


class SignerError(WalletError):
    """
    Signing-related errors

    Raised when:
    - Seed has the wrong length for the key scheme
    - Signing operation fails
    - Key material was wiped
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.SIGNER_FAILED,
        recoverable: bool = False,
    ):
        super().__init__(message, code, recoverable=recoverable)

    @classmethod
    def failed(cls, reason: str) -> "SignerError":
        return cls(f"Signing failed: {reason}", ErrorCode.SIGNER_FAILED)

    @classmethod
    def bad_seed_length(cls, actual: int, expected: int) -> "SignerError":
        return cls(f"Key seed must be {expected} bytes, got {actual}", ErrorCode.SIGNER_FAILED)

    @classmethod
    def wiped(cls) -> "SignerError":
        return cls("Signing key material has been wiped", ErrorCode.SIGNER_WIPED)


class ConfigurationError(WalletError):
    """
    Configuration-related errors

    Raised when:
    - Required configuration is missing
    - Configuration values are invalid
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
    ):
        super().__init__(message, code, recoverable=False)

    @classmethod
    def missing(cls, param: str) -> "ConfigurationError":
        return cls(f"Missing required configuration: {param}", ErrorCode.CONFIG_MISSING)

    @classmethod
    def invalid(cls, param: str, reason: str) -> "ConfigurationError":
        return cls(f"Invalid configuration '{param}': {reason}", ErrorCode.CONFIG_INVALID)
