"""
Session - Unified entry point for one signed-in identity

Owns the derived keypair, the balance tracker and the settlement
orchestrator, and tears all of them down on sign-out.
"""

from __future__ import annotations

import logging
import threading
from decimal import Decimal
from typing import Optional, Union

from .config import config as global_config
from .errors import ConfigurationError, QuoteError, SessionClosed
from .infra import (
    EndpointPool,
    LedgerClient,
    LocalSigner,
    derive_for,
    normalize_identity,
    validate_identity,
)
from .modules import BalanceTracker, SettlementOrchestrator
from .protocols import JupiterAPI, Quoter
from .types import (
    BalanceSnapshot,
    ExchangeRoute,
    IdentityKind,
    SettlementIntent,
    SettlementRecord,
    StaticTokenCatalog,
    TokenCatalog,
    resolve_token_mint,
    to_base_units,
)

logger = logging.getLogger(__name__)


class Session:
    """
    Wallet session for one authenticated identity

    Provides:
    - address: Derived wallet address
    - balance(): Last-known SOL balance (never blocks on the network)
    - transfer(): Send SOL with the platform fee
    - exchange(): Swap tokens with the platform fee
    - recheck(): Resume a settlement left ambiguous by a timeout

    Usage:
        with Session.open("user@example.com", salt=APP_SALT) as session:
            print(session.address, session.balance().sol)

            record = session.transfer("Recipient...", lamports=10_000_000)
            print(record.outcome)

        # Or with a shared ledger client
        ledger = LedgerClient(EndpointPool(["https://rpc-a", "https://rpc-b"]))
        session = Session.open("+15551234567", kind=IdentityKind.MOBILE, ledger=ledger)
        ...
        session.close()
    """

    def __init__(
        self,
        signer: LocalSigner,
        ledger: LedgerClient,
        tracker: BalanceTracker,
        orchestrator: SettlementOrchestrator,
        quoter: Optional[Quoter] = None,
        catalog: Optional[TokenCatalog] = None,
        owns_ledger: bool = False,
        owns_quoter: bool = False,
        keypair=None,
    ):
        """
        Wire a session from parts; most callers want Session.open()

        Args:
            signer: Session signer
            ledger: Ledger client
            tracker: Started balance tracker for the signer's address
            orchestrator: Settlement orchestrator bound to the signer
            quoter: Quoting service for exchanges
            catalog: Token catalog for display-to-base-unit conversion
            owns_ledger: Close the ledger client with the session
            owns_quoter: Close the quoter with the session
            keypair: Derived SigningKeypair to wipe on close
        """
        self._signer = signer
        self._ledger = ledger
        self._tracker = tracker
        self._orchestrator = orchestrator
        self._quoter = quoter
        self._catalog = catalog or StaticTokenCatalog()
        self._owns_ledger = owns_ledger
        self._owns_quoter = owns_quoter
        self._keypair = keypair
        self._address = signer.pubkey
        self._close_lock = threading.Lock()
        self._closed = False

    @classmethod
    def open(
        cls,
        identity: str,
        salt: Optional[str] = None,
        kind: IdentityKind = IdentityKind.EMAIL,
        ledger: Optional[LedgerClient] = None,
        quoter: Optional[Quoter] = None,
        catalog: Optional[TokenCatalog] = None,
        poll_interval_ms: Optional[int] = None,
        validate: bool = True,
    ) -> "Session":
        """
        Derive the wallet for an identity and start tracking it

        Args:
            identity: Verified identity credential
            salt: Application secret salt (default WALLET_SECRET_SALT)
            kind: Kind of credential; selects normalization and domain tag
            ledger: Shared ledger client (default: new one on configured endpoints)
            quoter: Quoting service (default: JupiterAPI)
            catalog: Token catalog (default: built-in list)
            poll_interval_ms: Balance poll interval
            validate: Check the credential's shape for its kind

        Returns:
            Open Session

        Raises:
            InvalidCredential: Credential empty or malformed
            ConfigurationError: No salt given or configured
        """
        if salt is None:
            salt = global_config.identity.secret_salt
            if not salt:
                raise ConfigurationError.missing("WALLET_SECRET_SALT")

        normalized = normalize_identity(identity, kind)
        if validate:
            validate_identity(normalized, kind)

        keypair = derive_for(normalized, salt, kind)
        signer = LocalSigner.from_signing_keypair(keypair)

        owns_ledger = ledger is None
        if ledger is None:
            ledger = LedgerClient(EndpointPool())
            ledger.pool.start_probing()

        owns_quoter = quoter is None
        if quoter is None:
            quoter = JupiterAPI()

        tracker = BalanceTracker(ledger)
        orchestrator = SettlementOrchestrator(ledger, signer, tracker, quoter=quoter)
        tracker.start(signer.pubkey, poll_interval_ms)

        logger.info(f"Session opened for {signer.pubkey} ({kind.name.lower()})")
        return cls(
            signer,
            ledger,
            tracker,
            orchestrator,
            quoter=quoter,
            catalog=catalog,
            owns_ledger=owns_ledger,
            owns_quoter=owns_quoter,
            keypair=keypair,
        )

    # ========== Accessors ==========

    @property
    def address(self) -> str:
        """Wallet address (base58)"""
        return self._address

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def ledger(self) -> LedgerClient:
        return self._ledger

    @property
    def tracker(self) -> BalanceTracker:
        return self._tracker

    @property
    def orchestrator(self) -> SettlementOrchestrator:
        return self._orchestrator

    @property
    def last_record(self) -> Optional[SettlementRecord]:
        return self._orchestrator.last_record

    def balance(self) -> BalanceSnapshot:
        """Last-known balance snapshot"""
        self._check_open()
        return self._tracker.current()

    def refresh_balance(self) -> BalanceSnapshot:
        """Poll the balance now"""
        self._check_open()
        return self._tracker.force_refresh()

    # ========== Settlement ==========

    def settle(
        self,
        intent: SettlementIntent,
        confirmation_timeout: Optional[float] = None,
    ) -> SettlementRecord:
        """Execute a prepared settlement intent"""
        self._check_open()
        return self._orchestrator.execute(intent, confirmation_timeout=confirmation_timeout)

    def transfer(
        self,
        destination: str,
        lamports: Optional[int] = None,
        amount_sol: Optional[Union[Decimal, str, float]] = None,
        fee_lamports: Optional[int] = None,
        confirmation_timeout: Optional[float] = None,
    ) -> SettlementRecord:
        """
        Send SOL, paying the platform fee first

        Args:
            destination: Recipient address
            lamports: Amount in lamports
            amount_sol: Amount in SOL (alternative to lamports)
            fee_lamports: Fee override (default PLATFORM_FEE_LAMPORTS)
            confirmation_timeout: Seconds per confirmation poll window

        Returns:
            Settlement record
        """
        if (lamports is None) == (amount_sol is None):
            raise ValueError("Specify exactly one of lamports or amount_sol")
        if lamports is None:
            lamports = to_base_units(amount_sol, 9)

        intent = SettlementIntent.transfer(
            destination,
            lamports,
            fee_amount=fee_lamports if fee_lamports is not None else global_config.settlement.fee_lamports,
            fee_destination=global_config.settlement.fee_address,
        )
        return self.settle(intent, confirmation_timeout=confirmation_timeout)

    def exchange(
        self,
        input_token: str,
        output_token: str,
        amount: Union[Decimal, str, float, int],
        max_slippage_bps: Optional[int] = None,
        expected_out_amount: Optional[int] = None,
        fee_lamports: Optional[int] = None,
        confirmation_timeout: Optional[float] = None,
    ) -> SettlementRecord:
        """
        Swap tokens through the quoting service, paying the platform fee first

        Args:
            input_token: Symbol or mint to sell
            output_token: Symbol or mint to buy
            amount: Display amount of the input token
            max_slippage_bps: Slippage tolerance (default DEFAULT_SLIPPAGE_BPS)
            expected_out_amount: Output the user was shown, in base units
            fee_lamports: Fee override (default PLATFORM_FEE_LAMPORTS)
            confirmation_timeout: Seconds per confirmation poll window

        Returns:
            Settlement record
        """
        input_mint = resolve_token_mint(input_token)
        output_mint = resolve_token_mint(output_token)

        token = self._catalog.get_token(input_mint)
        if token is None:
            raise QuoteError(f"Unknown token decimals for {input_mint}", recoverable=False)

        route = ExchangeRoute(
            input_mint=input_mint,
            output_mint=output_mint,
            max_slippage_bps=(
                max_slippage_bps if max_slippage_bps is not None
                else global_config.jupiter.default_slippage_bps
            ),
            expected_out_amount=expected_out_amount,
        )
        intent = SettlementIntent.exchange(
            route,
            to_base_units(amount, token.decimals),
            fee_amount=fee_lamports if fee_lamports is not None else global_config.settlement.fee_lamports,
            fee_destination=global_config.settlement.fee_address,
        )
        return self.settle(intent, confirmation_timeout=confirmation_timeout)

    def recheck(self, confirmation_timeout: Optional[float] = None) -> Optional[SettlementRecord]:
        """Follow up on a settlement that timed out waiting for confirmation"""
        self._check_open()
        return self._orchestrator.recheck(confirmation_timeout=confirmation_timeout)

    def cancel(self) -> bool:
        """Cancel a settlement that has not broadcast anything yet"""
        self._check_open()
        return self._orchestrator.cancel()

    def dismiss(self) -> bool:
        """Clear a terminal settlement record"""
        self._check_open()
        return self._orchestrator.dismiss()

    # ========== Lifecycle ==========

    def close(self, timeout: Optional[float] = None) -> None:
        """
        Sign out

        Idempotent. Cancels a settlement still building, waits for one in
        flight, stops balance polling and wipes the key material. If the
        wait times out the key is wiped only once that settlement returns,
        so a primary leg owed after a paid fee can still be signed.
        """
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        self._orchestrator.cancel()
        self._orchestrator.close(timeout=timeout)
        self._tracker.stop()
        if self._owns_ledger:
            self._ledger.pool.stop_probing()

        self._orchestrator.when_idle(self._release)

    def _release(self) -> None:
        """Wipe key material and close owned clients"""
        self._signer.wipe()
        if self._keypair is not None:
            self._keypair.wipe()
            self._keypair = None

        if self._owns_quoter and hasattr(self._quoter, "close"):
            self._quoter.close()
        if self._owns_ledger:
            self._ledger.close()

        logger.info(f"Session closed for {self._address}")

    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosed()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"Session({self._address}, {state})"
