"""
Transaction signing abstractions

Provides the session signer backed by a derived keypair.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol, Tuple, runtime_checkable

from solders.keypair import Keypair
from solders.message import MessageV0
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from ..errors import SignerError
from ..types import SigningKeypair

logger = logging.getLogger(__name__)


@runtime_checkable
class Signer(Protocol):
    """
    Protocol for transaction signers

    Implementations must provide:
    - pubkey: The signer's public key (base58)
    - sign(): Sign a message/transaction
    """

    @property
    def pubkey(self) -> str:
        """Signer's public key (base58)"""
        ...

    def sign(self, message: bytes) -> bytes:
        ...

    def sign_transaction(self, unsigned_tx: bytes) -> Tuple[bytes, str]:
        """
        Sign a transaction

        Returns:
            (signed_tx_bytes, signature_base58)
        """
        ...


class LocalSigner:
    """
    Local signer holding the session keypair in memory

    Usage:
        keypair = derive("user@example.com", salt)
        signer = LocalSigner.from_signing_keypair(keypair)

        signed_tx, sig = signer.sign_transaction(unsigned_tx_bytes)
        signer.wipe()  # on sign-out
    """

    def __init__(self, keypair: Keypair):
        self._keypair: Optional[Keypair] = keypair
        self._pubkey = str(keypair.pubkey())

    def __repr__(self) -> str:
        return f"LocalSigner({self._pubkey})"

    @property
    def pubkey(self) -> str:
        """Public key as base58 string"""
        return self._pubkey

    @property
    def is_wiped(self) -> bool:
        return self._keypair is None

    def _require_keypair(self) -> Keypair:
        if self._keypair is None:
            raise SignerError.wiped()
        return self._keypair

    def sign(self, message: bytes) -> bytes:
        """Sign message bytes"""
        sig = self._require_keypair().sign_message(message)
        return bytes(sig)

    def sign_transaction(self, unsigned_tx: bytes) -> Tuple[bytes, str]:
        """
        Sign versioned transaction

        Args:
            unsigned_tx: Unsigned VersionedTransaction bytes

        Returns:
            (signed_tx_bytes, signature_base58)
        """
        keypair = self._require_keypair()

        try:
            tx = VersionedTransaction.from_bytes(unsigned_tx)
        except Exception as e:
            raise SignerError.failed(f"cannot parse transaction: {e}") from e
        message = tx.message

        # Versioned messages are signed with their 0x80 version prefix
        message_bytes = bytes(message)
        if isinstance(message, MessageV0):
            message_bytes = bytes([0x80]) + message_bytes

        signature = keypair.sign_message(message_bytes)

        num_required_signatures = message.header.num_required_signatures
        account_keys = message.account_keys
        our_pubkey = keypair.pubkey()

        signer_index = None
        for i in range(num_required_signatures):
            if i < len(account_keys) and account_keys[i] == our_pubkey:
                signer_index = i
                break

        if signer_index is None:
            raise SignerError.failed(
                f"Wallet {our_pubkey} is not in the required signers list. "
                f"Expected signers: {[str(account_keys[i]) for i in range(min(num_required_signatures, len(account_keys)))]}"
            )

        # Keep any signatures already present for other signers
        existing = list(tx.signatures)
        null_sig = Signature.default()
        signatures = [
            existing[i] if i < len(existing) else null_sig
            for i in range(num_required_signatures)
        ]
        signatures[signer_index] = signature

        signed_tx = VersionedTransaction.populate(message, signatures)

        return bytes(signed_tx), str(signature)

    def wipe(self) -> None:
        """Drop the keypair; further signing raises SignerError"""
        if self._keypair is not None:
            logger.debug(f"Wiping signer for {self._pubkey}")
        self._keypair = None

    @classmethod
    def from_signing_keypair(cls, signing_keypair: SigningKeypair) -> "LocalSigner":
        """Create signer from a derived SigningKeypair"""
        if signing_keypair.is_wiped:
            raise SignerError.wiped()
        keypair = Keypair.from_bytes(signing_keypair.secret_bytes())
        if str(keypair.pubkey()) != signing_keypair.public_address:
            raise SignerError.failed("secret material does not match public address")
        return cls(keypair)
