"""
Settlement Module

Executes a settlement: the platform fee transfer first, then the primary
transfer or exchange, strictly after the fee is confirmed.

State machine:
    BUILDING -> FEE_SUBMITTED -> FEE_CONFIRMED -> PRIMARY_SUBMITTED -> PRIMARY_CONFIRMED
    BUILDING -> ABORTED            nothing was broadcast
    BUILDING | FEE_SUBMITTED -> FEE_FAILED
    FEE_CONFIRMED | PRIMARY_SUBMITTED -> PRIMARY_FAILED    fee already spent

A confirmation timeout is not a failure: the record stays in its
*_SUBMITTED state and can be resumed with recheck(). A broadcast that got
no answer is tracked the same way, by its locally known signature. A leg
that is still unseen once its blockhash has expired can no longer land and
is failed.
"""

import logging
import threading
import time
from typing import Callable, List, Optional, Tuple

from ..errors import (
    WalletError,
    Busy,
    SessionClosed,
    SettlementCancelled,
    InsufficientFunds,
    SlippageExceeded,
    QuoteError,
    RpcError,
    TransactionError,
    BroadcastRejected,
    ConfirmationTimeout,
    PartialSettlementFailure,
)
from ..types import (
    SettlementIntent,
    SettlementKind,
    SettlementRecord,
    SettlementState,
    LegStatus,
    ExchangeRoute,
    QuoteResult,
    BlockhashHandle,
)
from ..config import config as global_config
from ..infra.rpc import LedgerClient
from ..infra.solana_signer import Signer
from ..infra.tx_builder import TxBuilder, parse_pubkey, recent_blockhash_of
from ..infra.retry import CorrelationContext, generate_correlation_id, log_with_correlation
from ..protocols import Quoter
from .balance import BalanceTracker

logger = logging.getLogger(__name__)


class SettlementOrchestrator:
    """
    Runs one settlement at a time for a session's signing key

    Failures are mapped onto the record's state rather than raised; only
    Busy and SessionClosed escape execute().

    Usage:
        orchestrator = SettlementOrchestrator(ledger, signer, tracker, quoter=JupiterAPI())

        intent = SettlementIntent.transfer(dest, 10_000_000, fee_amount=500_000, fee_destination=fee_addr)
        record = orchestrator.execute(intent)

        if record.outcome == SettlementOutcome.CONFIRMATION_TIMEOUT:
            record = orchestrator.recheck()
    """

    def __init__(
        self,
        ledger: LedgerClient,
        signer: Signer,
        tracker: BalanceTracker,
        quoter: Optional[Quoter] = None,
        tx_builder: Optional[TxBuilder] = None,
        confirmation_timeout: Optional[float] = None,
        fee_confirm_attempts: Optional[int] = None,
        commitment: Optional[str] = None,
    ):
        """
        Initialize settlement orchestrator

        Args:
            ledger: Ledger client (shared endpoint pool)
            signer: Session signer
            tracker: Balance tracker of the same wallet
            quoter: Quoting service, required for exchange intents
            tx_builder: Transfer builder (defaults to one paid by the signer)
            confirmation_timeout: Seconds per confirmation poll window
            fee_confirm_attempts: Poll windows for the fee before giving up as ambiguous
            commitment: Commitment a leg must reach to count as confirmed
        """
        self._ledger = ledger
        self._signer = signer
        self._tracker = tracker
        self._quoter = quoter
        self._builder = tx_builder or TxBuilder(signer.pubkey)
        self._confirmation_timeout = (
            confirmation_timeout if confirmation_timeout is not None
            else global_config.tx.confirmation_timeout
        )
        self._fee_confirm_attempts = max(1, (
            fee_confirm_attempts if fee_confirm_attempts is not None
            else global_config.settlement.fee_confirm_attempts
        ))
        self._commitment = commitment

        # Held for the whole of execute()/recheck(); acquired without blocking
        self._in_flight = threading.Lock()
        # Guards the record slot, the cancel flag and the closed flags
        self._state_lock = threading.Lock()
        self._record: Optional[SettlementRecord] = None
        self._cancel_requested = False
        self._committed = False
        self._closing = False
        self._closed = False
        # Run once the in-flight settlement returns
        self._idle_callbacks: List[Callable[[], None]] = []

    # ========== Accessors ==========

    @property
    def active_record(self) -> Optional[SettlementRecord]:
        """Record that is not yet terminal, if any"""
        with self._state_lock:
            record = self._record
        if record is not None and not record.is_terminal:
            return record
        return None

    @property
    def last_record(self) -> Optional[SettlementRecord]:
        """Most recent record, terminal or not, until dismissed"""
        with self._state_lock:
            return self._record

    @property
    def is_closed(self) -> bool:
        return self._closed

    # ========== Operations ==========

    def execute(
        self,
        intent: SettlementIntent,
        confirmation_timeout: Optional[float] = None,
    ) -> SettlementRecord:
        """
        Execute a settlement intent to a terminal or ambiguous state

        Args:
            intent: What to settle
            confirmation_timeout: Override for each confirmation poll window

        Returns:
            The settlement record

        Raises:
            Busy: A settlement is already in flight (nothing is sent)
            SessionClosed: The orchestrator was closed
        """
        self._check_open()
        if not self._in_flight.acquire(blocking=False):
            raise Busy(self._pending_record_id())

        try:
            with self._state_lock:
                if self._closing or self._closed:
                    raise SessionClosed()
                if self._record is not None and not self._record.is_terminal:
                    raise Busy(self._record.record_id)
                record = SettlementRecord(record_id=generate_correlation_id(), intent=intent)
                self._record = record
                self._cancel_requested = False
                self._committed = False

            timeout = confirmation_timeout if confirmation_timeout is not None else self._confirmation_timeout
            with CorrelationContext("settle", correlation_id=f"settle_{record.record_id}"):
                log_with_correlation(
                    logging.INFO,
                    f"Settlement started: {intent.kind.value} {intent.primary_amount} "
                    f"+ fee {intent.fee_amount}",
                    "execute",
                    log=logger,
                )
                self._run(record, timeout)
                log_with_correlation(logging.INFO, f"Settlement finished: {record}", "execute", log=logger)
            return record
        finally:
            self._release()

    def recheck(self, confirmation_timeout: Optional[float] = None) -> Optional[SettlementRecord]:
        """
        Resume a record left ambiguous by a confirmation timeout

        Polls the known signature again; nothing is rebroadcast. If the fee
        now confirms, the primary leg runs.

        Returns:
            The (possibly advanced) record, or None if there is none
        """
        self._check_open()
        if not self._in_flight.acquire(blocking=False):
            raise Busy(self._pending_record_id())

        try:
            with self._state_lock:
                if self._closing or self._closed:
                    raise SessionClosed()
                record = self._record
            if record is None or not record.awaiting_confirmation:
                return record

            timeout = confirmation_timeout if confirmation_timeout is not None else self._confirmation_timeout
            with CorrelationContext(correlation_id=f"settle_{record.record_id}"):
                log_with_correlation(logging.INFO, f"Re-checking {record}", "recheck", log=logger)
                if record.state == SettlementState.FEE_SUBMITTED:
                    self._await_fee(record, timeout, attempts=1)
                    if record.state == SettlementState.FEE_CONFIRMED:
                        self._run_primary(record, timeout)
                elif record.state == SettlementState.PRIMARY_SUBMITTED:
                    self._await_primary(record, timeout)
                log_with_correlation(logging.INFO, f"Re-check finished: {record}", "recheck", log=logger)
            return record
        finally:
            self._release()

    def cancel(self) -> bool:
        """
        Abort the settlement if it has not broadcast anything yet

        Returns:
            True if the settlement will end ABORTED, False if it is past
            the point of no return (or there is nothing to cancel)
        """
        with self._state_lock:
            record = self._record
            if record is None or record.state != SettlementState.BUILDING or self._committed:
                return False
            self._cancel_requested = True
        logger.info(f"Cancellation requested for settlement {record.record_id}")
        return True

    def dismiss(self) -> bool:
        """Forget a terminal record once the user has seen it"""
        with self._state_lock:
            if self._record is None or not self._record.is_terminal:
                return False
            self._record = None
        return True

    def close(self, timeout: Optional[float] = None) -> None:
        """
        Wait for an in-flight settlement, then reject further calls

        Args:
            timeout: Max seconds to wait (None waits until it finishes)
        """
        with self._state_lock:
            if self._closed:
                return
            self._closing = True

        acquired = self._in_flight.acquire(timeout=-1 if timeout is None else timeout)
        try:
            if not acquired:
                logger.warning(f"Closing while settlement {self._pending_record_id()} is still running")
            with self._state_lock:
                self._closed = True
        finally:
            if acquired:
                self._in_flight.release()

    def when_idle(self, callback: Callable[[], None]) -> bool:
        """
        Run callback once no settlement is in flight

        Runs it now on the caller's thread when idle; otherwise it runs on
        the settling thread right after execute()/recheck() returns.

        Returns:
            True if the callback ran immediately
        """
        with self._state_lock:
            idle = self._in_flight.acquire(blocking=False)
            if idle:
                self._in_flight.release()
            else:
                self._idle_callbacks.append(callback)
        if idle:
            callback()
        else:
            logger.info(f"Deferring release until settlement {self._pending_record_id()} returns")
        return idle

    def _release(self) -> None:
        with self._state_lock:
            callbacks, self._idle_callbacks = self._idle_callbacks, []
            self._in_flight.release()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Idle callback raised")

    # ========== Execution ==========

    def _run(self, record: SettlementRecord, timeout: float) -> None:
        try:
            signed_fee_tx, fee_signature = self._build(record)
        except WalletError as e:
            self._abort(record, e)
            return
        except Exception as e:
            self._abort(record, TransactionError.build_failed(str(e), e))
            return

        if not self._submit_fee(record, signed_fee_tx, fee_signature):
            return

        self._await_fee(record, timeout, attempts=self._fee_confirm_attempts)
        if record.state == SettlementState.FEE_CONFIRMED:
            self._run_primary(record, timeout)

    def _build(self, record: SettlementRecord) -> Tuple[bytes, str]:
        """Pre-flight checks and the signed fee transaction; no broadcast"""
        intent = record.intent

        parse_pubkey(intent.fee_destination)
        if intent.kind == SettlementKind.TRANSFER:
            parse_pubkey(intent.destination)
            network_cost = global_config.settlement.transfer_network_cost_lamports
        else:
            network_cost = global_config.settlement.exchange_network_cost_lamports

        snapshot = self._tracker.current()
        if not snapshot.has_value:
            snapshot = self._tracker.force_refresh()
        if not snapshot.has_value:
            raise RpcError(f"Balance unavailable: {snapshot.last_error or 'never fetched'}")

        required = intent.required_lamports(network_cost)
        if required > snapshot.lamports:
            raise InsufficientFunds.for_settlement(required, snapshot.lamports)

        if not intent.spends_native_sol:
            # Token input: the amount comes out of the token account, the fee out of SOL
            mint = intent.route.input_mint
            available = self._ledger.get_token_balance(self._signer.pubkey, mint)
            if intent.primary_amount > available:
                raise InsufficientFunds.for_token(mint, intent.primary_amount, available)

        if intent.kind == SettlementKind.EXCHANGE:
            record.quote = self._fetch_quote(intent.route, intent.primary_amount)

        self._check_cancelled(record)

        handle = self._ledger.get_latest_blockhash()
        unsigned = self._builder.build_transfer(intent.fee_destination, intent.fee_amount, handle)
        signed_tx, signature = self._signer.sign_transaction(unsigned)
        record.fee_blockhash = handle

        self._check_cancelled(record)
        return signed_tx, signature

    def _submit_fee(self, record: SettlementRecord, signed_tx: bytes, signature: str) -> bool:
        # Past this point the settlement can no longer be cancelled
        with self._state_lock:
            if self._cancel_requested:
                cancelled = True
            else:
                cancelled = False
                self._committed = True
        if cancelled:
            self._abort(record, SettlementCancelled(record.record_id))
            return False

        try:
            accepted = self._ledger.broadcast(signed_tx)
        except BroadcastRejected as e:
            # Rejected outright; the primary leg is never attempted
            record.fee_signature = signature
            record.fee_status = LegStatus.FAILED
            record.error = e
            self._transition(record, SettlementState.FEE_FAILED)
            return False
        except RpcError as e:
            # Unanswered, not rejected: the fee may still land
            log_with_correlation(
                logging.WARNING,
                f"Fee broadcast got no answer, following {signature} by signature: {e}",
                "fee_submit",
                log=logger,
            )
            accepted = None

        record.fee_signature = accepted or signature
        record.fee_status = LegStatus.SUBMITTED
        self._transition(record, SettlementState.FEE_SUBMITTED)
        return True

    def _await_fee(self, record: SettlementRecord, timeout: float, attempts: int) -> None:
        signature = record.fee_signature

        for attempt in range(attempts):
            outcome = self._ledger.confirm(signature, commitment=self._commitment, timeout_seconds=timeout)

            if outcome.is_confirmed:
                record.fee_status = LegStatus.CONFIRMED
                record.error = None
                self._transition(record, SettlementState.FEE_CONFIRMED)
                return

            if outcome.is_failed:
                record.fee_status = LegStatus.FAILED
                record.error = TransactionError.failed_on_chain(signature, outcome.reason or "unknown")
                self._transition(record, SettlementState.FEE_FAILED)
                return

            log_with_correlation(
                logging.WARNING,
                f"Fee {signature} not confirmed after poll window {attempt + 1}/{attempts}",
                "fee_confirm",
                log=logger,
            )

        if self._leg_expired(signature, record.fee_blockhash):
            record.fee_status = LegStatus.FAILED
            record.error = TransactionError.expired(signature, record.fee_blockhash.last_valid_block_height)
            self._transition(record, SettlementState.FEE_FAILED)
            return

        # Ambiguous: never resubmit, it could still land
        record.fee_status = LegStatus.UNKNOWN
        record.error = ConfirmationTimeout(signature, timeout * attempts)

    def _run_primary(self, record: SettlementRecord, timeout: float) -> None:
        intent = record.intent

        try:
            if intent.kind == SettlementKind.TRANSFER:
                handle = self._ledger.get_latest_blockhash()
                unsigned = self._builder.build_transfer(intent.destination, intent.primary_amount, handle)
            else:
                # The Building-phase quote is the baseline when the caller gave no expected output
                quote = self._fetch_quote(intent.route, intent.primary_amount, baseline=record.quote)
                record.quote = quote
                unsigned = self._quoter.get_swap_transaction(quote, self._signer.pubkey)
                handle = BlockhashHandle(
                    blockhash=recent_blockhash_of(unsigned),
                    last_valid_block_height=None,
                    fetched_at=time.time(),
                )

            signed_tx, signature = self._signer.sign_transaction(unsigned)
        except WalletError as e:
            self._fail_primary(record, e)
            return
        except Exception as e:
            self._fail_primary(record, TransactionError.build_failed(str(e), e))
            return

        record.primary_blockhash = handle
        try:
            accepted = self._ledger.broadcast(signed_tx)
        except BroadcastRejected as e:
            self._fail_primary(record, e)
            return
        except RpcError as e:
            # Unanswered, not rejected: the primary may still execute
            log_with_correlation(
                logging.WARNING,
                f"Primary broadcast got no answer, following {signature} by signature: {e}",
                "primary_submit",
                log=logger,
            )
            accepted = None

        record.primary_signature = accepted or signature
        record.primary_status = LegStatus.SUBMITTED
        self._transition(record, SettlementState.PRIMARY_SUBMITTED)
        self._await_primary(record, timeout)

    def _await_primary(self, record: SettlementRecord, timeout: float) -> None:
        signature = record.primary_signature
        outcome = self._ledger.confirm(signature, commitment=self._commitment, timeout_seconds=timeout)

        if outcome.is_confirmed:
            record.primary_status = LegStatus.CONFIRMED
            record.error = None
            self._transition(record, SettlementState.PRIMARY_CONFIRMED)
            self._tracker.force_refresh()
            return

        if outcome.is_failed:
            self._fail_primary(
                record,
                TransactionError.failed_on_chain(signature, outcome.reason or "unknown"),
                primary_signature=signature,
            )
            return

        if self._leg_expired(signature, record.primary_blockhash):
            self._fail_primary(
                record,
                TransactionError.expired(signature, record.primary_blockhash.last_valid_block_height),
                primary_signature=signature,
            )
            return

        record.primary_status = LegStatus.UNKNOWN
        record.error = ConfirmationTimeout(signature, timeout)
        log_with_correlation(
            logging.WARNING,
            f"Primary {signature} not confirmed within {timeout}s; status unknown",
            "primary_confirm",
            log=logger,
        )

    # ========== Helpers ==========

    def _fetch_quote(
        self,
        route: ExchangeRoute,
        amount: int,
        baseline: Optional[QuoteResult] = None,
    ) -> QuoteResult:
        if self._quoter is None:
            raise QuoteError("No quoting service configured for exchanges", recoverable=False)

        quote = self._quoter.get_quote(
            route.input_mint,
            route.output_mint,
            amount,
            slippage_bps=route.max_slippage_bps,
        )
        self._validate_quote(route, quote, baseline)
        return quote

    @staticmethod
    def _validate_quote(
        route: ExchangeRoute,
        quote: QuoteResult,
        baseline: Optional[QuoteResult] = None,
    ) -> None:
        """
        Reject a quote outside the caller's slippage tolerance

        The output is measured against route.expected_out_amount, or against
        the baseline quote's output when the route has none.

        Raises:
            SlippageExceeded
        """
        if quote.slippage_bps > route.max_slippage_bps:
            raise SlippageExceeded.tolerance_too_wide(quote.slippage_bps, route.max_slippage_bps)

        expected = route.expected_out_amount
        if expected is None and baseline is not None:
            expected = baseline.to_amount

        if expected is not None:
            floor = expected * (10_000 - route.max_slippage_bps) // 10_000
            if quote.to_amount < floor:
                raise SlippageExceeded.output_too_low(expected, quote.to_amount, route.max_slippage_bps)

    def _leg_expired(self, signature: str, handle: Optional[BlockhashHandle]) -> bool:
        """
        Whether an unconfirmed leg can no longer land

        True only when its blockhash has expired and the ledger has no status
        for the signature. A failed lookup counts as not expired.
        """
        if handle is None:
            return False

        try:
            if handle.last_valid_block_height is not None:
                expired = self._ledger.get_block_height() > handle.last_valid_block_height
            else:
                expired = not self._ledger.is_blockhash_valid(handle.blockhash)
            if not expired:
                return False
            # Landed just before expiry
            return self._ledger.get_signature_status(signature) is None
        except RpcError as e:
            log_with_correlation(
                logging.WARNING,
                f"Expiry check for {signature} failed, leaving it unresolved: {e}",
                "expiry_check",
                log=logger,
            )
            return False

    def _check_cancelled(self, record: SettlementRecord) -> None:
        with self._state_lock:
            if self._cancel_requested:
                raise SettlementCancelled(record.record_id)

    def _abort(self, record: SettlementRecord, error: WalletError) -> None:
        record.error = error
        self._transition(record, SettlementState.ABORTED)

    def _fail_primary(
        self,
        record: SettlementRecord,
        cause: WalletError,
        primary_signature: Optional[str] = None,
    ) -> None:
        record.primary_status = LegStatus.FAILED
        record.error = PartialSettlementFailure(record.fee_signature, cause, primary_signature)
        self._transition(record, SettlementState.PRIMARY_FAILED)

    def _transition(self, record: SettlementRecord, target: SettlementState) -> None:
        previous = record.state
        record.transition(target)
        level = logging.INFO
        if target in (SettlementState.ABORTED, SettlementState.FEE_FAILED, SettlementState.PRIMARY_FAILED):
            level = logging.WARNING
        detail = f": {record.error}" if record.error is not None and level == logging.WARNING else ""
        log_with_correlation(
            level,
            f"{previous.value} -> {target.value}{detail}",
            "transition",
            log=logger,
            record_id=record.record_id,
        )

    def _pending_record_id(self) -> Optional[str]:
        with self._state_lock:
            return self._record.record_id if self._record is not None else None

    def _check_open(self) -> None:
        if self._closed or self._closing:
            raise SessionClosed()
