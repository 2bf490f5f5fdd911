"""
Transaction builder

Provides utilities for:
- Building versioned SOL transfer transactions
- Adding compute budget instructions
- Validating account addresses
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from ..errors import TransactionError
from ..types import BlockhashHandle
from ..config import config as global_config

logger = logging.getLogger(__name__)


def parse_pubkey(address: str) -> Pubkey:
    """
    Parse a base58 account address

    Raises:
        TransactionError: If the address is not a valid public key
    """
    if not isinstance(address, str) or not address:
        raise TransactionError.invalid_address(str(address))
    try:
        return Pubkey.from_string(address)
    except ValueError as e:
        raise TransactionError.invalid_address(address) from e


def is_valid_address(address: str) -> bool:
    try:
        parse_pubkey(address)
    except TransactionError:
        return False
    return True


def recent_blockhash_of(tx_bytes: bytes) -> str:
    """
    Blockhash a serialized transaction was built against

    Raises:
        TransactionError: If the bytes are not a versioned transaction
    """
    try:
        tx = VersionedTransaction.from_bytes(tx_bytes)
    except Exception as e:
        raise TransactionError.build_failed(f"cannot decode transaction: {e}", e) from e
    return str(tx.message.recent_blockhash)


@dataclass
class TxBuilderConfig:
    """
    Transaction builder runtime configuration

    Pulls defaults from the global config (fixorium_wallet.config.TxConfig).

    Usage:
        config = TxBuilderConfig(compute_unit_price=5_000)
        builder = TxBuilder(payer, config=config)
    """
    compute_units: int = None
    compute_unit_price: int = None

    def __post_init__(self):
        """Apply defaults from global config for any unset values"""
        if self.compute_units is None:
            self.compute_units = global_config.tx.compute_units
        if self.compute_unit_price is None:
            self.compute_unit_price = global_config.tx.compute_unit_price


class TxBuilder:
    """
    Builds unsigned versioned transactions paid for by one wallet

    Usage:
        builder = TxBuilder(signer.pubkey)
        handle = ledger.get_latest_blockhash()

        unsigned = builder.build_transfer(fee_address, 500_000, handle)
        signed_tx, sig = signer.sign_transaction(unsigned)
    """

    def __init__(
        self,
        payer: str,
        config: Optional[TxBuilderConfig] = None,
    ):
        """
        Initialize transaction builder

        Args:
            payer: Fee payer and transfer source address
            config: Builder configuration
        """
        self._payer = parse_pubkey(payer)
        self._config = config or TxBuilderConfig()

    @property
    def payer(self) -> str:
        return str(self._payer)

    def build(
        self,
        instructions: List[Instruction],
        blockhash: BlockhashHandle,
        compute_units: Optional[int] = None,
        compute_unit_price: Optional[int] = None,
    ) -> bytes:
        """
        Build unsigned versioned transaction

        Args:
            instructions: List of instructions
            blockhash: Recent blockhash the transaction is valid against
            compute_units: Compute unit limit
            compute_unit_price: Priority fee in microlamports per CU

        Returns:
            Unsigned transaction bytes
        """
        all_instructions = []

        cu_limit = compute_units if compute_units is not None else self._config.compute_units
        cu_price = compute_unit_price if compute_unit_price is not None else self._config.compute_unit_price

        if cu_limit > 0:
            all_instructions.append(set_compute_unit_limit(cu_limit))

        if cu_price > 0:
            all_instructions.append(set_compute_unit_price(cu_price))

        all_instructions.extend(instructions)

        if not blockhash or not blockhash.blockhash:
            raise TransactionError.build_failed("missing recent blockhash")

        try:
            message = MessageV0.try_compile(
                self._payer,
                all_instructions,
                [],  # Address lookup tables
                Hash.from_string(blockhash.blockhash),
            )
        except Exception as e:
            raise TransactionError.build_failed(str(e), e) from e

        # Signature slots must match num_required_signatures
        num_signers = message.header.num_required_signatures
        tx = VersionedTransaction.populate(message, [Signature.default()] * num_signers)

        return bytes(tx)

    def build_transfer(
        self,
        destination: str,
        lamports: int,
        blockhash: BlockhashHandle,
    ) -> bytes:
        """
        Build an unsigned native SOL transfer from the payer

        Args:
            destination: Recipient address
            lamports: Amount in lamports
            blockhash: Recent blockhash

        Returns:
            Unsigned transaction bytes
        """
        if lamports <= 0:
            raise TransactionError.build_failed(f"transfer amount must be positive, got {lamports}")

        ix = transfer(TransferParams(
            from_pubkey=self._payer,
            to_pubkey=parse_pubkey(destination),
            lamports=lamports,
        ))

        logger.debug(f"Building transfer of {lamports} lamports to {destination}")
        return self.build([ix], blockhash)
