"""
Infrastructure layer: key derivation, signing, endpoint pool, ledger client
"""

from .key_deriver import (
    derive,
    derive_for,
    derive_seed,
    keypair_from_seed,
    normalize_identity,
    validate_identity,
    validate_email,
    validate_gmail_address,
    validate_phone_number,
)
from .solana_signer import Signer, LocalSigner
from .endpoint_pool import EndpointPool
from .rpc import LedgerClient, LedgerClientConfig
from .tx_builder import TxBuilder, TxBuilderConfig, parse_pubkey, is_valid_address, recent_blockhash_of
from .retry import (
    CorrelationContext,
    classify_error,
    generate_correlation_id,
    get_correlation_id,
    log_with_correlation,
)

__all__ = [
    "derive",
    "derive_for",
    "derive_seed",
    "keypair_from_seed",
    "normalize_identity",
    "validate_identity",
    "validate_email",
    "validate_gmail_address",
    "validate_phone_number",
    "Signer",
    "LocalSigner",
    "EndpointPool",
    "LedgerClient",
    "LedgerClientConfig",
    "TxBuilder",
    "TxBuilderConfig",
    "parse_pubkey",
    "is_valid_address",
    "recent_blockhash_of",
    "CorrelationContext",
    "classify_error",
    "generate_correlation_id",
    "get_correlation_id",
    "log_with_correlation",
]
