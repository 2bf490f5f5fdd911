"""
Test Settlement Orchestrator

Tests for the fee-then-primary state machine with a scripted ledger.
"""

import sys
import base64
import threading
import time
from pathlib import Path
from unittest.mock import Mock, patch

import httpx
import pytest

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from solders.transaction import VersionedTransaction

from fixorium_wallet.errors import (
    Busy,
    BroadcastRejected,
    ConfirmationTimeout,
    EndpointUnavailable,
    ErrorCode,
    InsufficientFunds,
    PartialSettlementFailure,
    SessionClosed,
    SettlementCancelled,
    SlippageExceeded,
    TransactionError,
)
from fixorium_wallet.infra.endpoint_pool import EndpointPool
from fixorium_wallet.infra.key_deriver import derive
from fixorium_wallet.infra.rpc import LedgerClient, LedgerClientConfig
from fixorium_wallet.infra.solana_signer import LocalSigner
from fixorium_wallet.infra.tx_builder import TxBuilder
from fixorium_wallet.modules.settlement import SettlementOrchestrator
from fixorium_wallet.types import (
    BalanceSnapshot,
    BlockhashHandle,
    ConfirmationOutcome,
    ConfirmationStatus,
    ExchangeRoute,
    LegStatus,
    QuoteResult,
    SettlementIntent,
    SettlementOutcome,
    SettlementState,
    SnapshotSource,
    NATIVE_SOL_MINT,
)

BLOCKHASH = "11111111111111111111111111111111"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
ONE_SOL = 1_000_000_000
FEE = 500_000

WALLET = derive("user@example.com", "S")
FEE_ADDRESS = derive("fees@example.com", "S").public_address
RECIPIENT = derive("friend@example.com", "S").public_address


class ScriptedLedger:
    """
    Ledger stand-in that records broadcasts and replays confirmation outcomes

    Confirmation outcomes are popped per call; once the script runs out
    every signature confirms. The chain sits at block height 0 with every
    blockhash valid until a test moves it.
    """

    def __init__(self, confirmations=None, broadcast_errors=None, token_balance=0):
        self.attempts = []
        self.broadcasts = []
        self.confirm_calls = []
        self.blockhash_calls = 0
        self.token_balance_calls = []
        self.block_height = 0
        self.blockhash_valid = True
        self.statuses = {}
        self.token_balance = token_balance
        self._confirmations = list(confirmations or [])
        self._broadcast_errors = list(broadcast_errors or [])
        self.on_broadcast = None
        self.on_confirm = None
        self.on_blockhash = None

    def get_token_balance(self, owner, mint, commitment=None):
        self.token_balance_calls.append((owner, mint))
        return self.token_balance

    def get_block_height(self, commitment=None):
        return self.block_height

    def is_blockhash_valid(self, blockhash, commitment=None):
        return self.blockhash_valid

    def get_signature_status(self, signature):
        return self.statuses.get(signature)

    def get_latest_blockhash(self, commitment=None):
        self.blockhash_calls += 1
        if self.on_blockhash:
            self.on_blockhash()
        return BlockhashHandle(blockhash=BLOCKHASH, last_valid_block_height=1000, fetched_at=time.time())

    def broadcast(self, signed_tx, skip_preflight=None, preflight_commitment=None):
        if self.on_broadcast:
            self.on_broadcast(signed_tx)
        self.attempts.append(signed_tx)
        error = self._broadcast_errors.pop(0) if self._broadcast_errors else None
        if error is not None:
            raise error
        self.broadcasts.append(signed_tx)
        return str(VersionedTransaction.from_bytes(signed_tx).signatures[0])

    def confirm(self, signature, commitment=None, timeout_seconds=None, poll_interval=None):
        self.confirm_calls.append((signature, time.time()))
        if self.on_confirm:
            self.on_confirm(signature)
        status = self._confirmations.pop(0) if self._confirmations else ConfirmationStatus.CONFIRMED
        reason = "InstructionError" if status == ConfirmationStatus.FAILED_ON_CHAIN else None
        return ConfirmationOutcome(status=status, signature=signature, reason=reason, observed_at=time.time())


def _tracker(lamports=ONE_SOL):
    tracker = Mock()
    tracker.current.return_value = BalanceSnapshot(
        lamports=lamports, observed_at=time.time(), source=SnapshotSource.LIVE,
    )
    tracker.force_refresh.return_value = tracker.current.return_value
    return tracker


def _orchestrator(ledger, tracker=None, quoter=None, fee_confirm_attempts=2):
    signer = LocalSigner.from_signing_keypair(derive("user@example.com", "S"))
    return SettlementOrchestrator(
        ledger,
        signer,
        tracker or _tracker(),
        quoter=quoter,
        confirmation_timeout=60,
        fee_confirm_attempts=fee_confirm_attempts,
    )


def _transfer(lamports=10_000_000, destination=RECIPIENT):
    return SettlementIntent.transfer(destination, lamports, fee_amount=FEE, fee_destination=FEE_ADDRESS)


def _quote(to_amount=150_000_000, slippage_bps=50):
    return QuoteResult(
        from_token=NATIVE_SOL_MINT,
        to_token=USDC_MINT,
        from_amount=ONE_SOL // 10,
        to_amount=to_amount,
        slippage_bps=slippage_bps,
        raw_response={"outAmount": str(to_amount)},
    )


def _signature_of(tx_bytes):
    return str(VersionedTransaction.from_bytes(tx_bytes).signatures[0])


def _swap_tx():
    """Unsigned transaction the quoting service would hand back"""
    handle = BlockhashHandle(blockhash=BLOCKHASH, last_valid_block_height=None, fetched_at=time.time())
    return TxBuilder(WALLET.public_address).build_transfer(RECIPIENT, 1, handle)


def test_transfer_succeeds_in_order():
    """Fee confirmation happens strictly before primary submission"""
    print("Testing successful transfer...")

    ledger = ScriptedLedger()
    tracker = _tracker()
    record = _orchestrator(ledger, tracker).execute(_transfer())

    assert record.state == SettlementState.PRIMARY_CONFIRMED
    assert record.outcome == SettlementOutcome.SUCCEEDED
    assert record.fee_status == LegStatus.CONFIRMED
    assert record.primary_status == LegStatus.CONFIRMED
    assert record.error is None
    assert len(ledger.broadcasts) == 2
    assert record.fee_signature != record.primary_signature
    assert record.fee_confirmed_at < record.primary_submitted_at
    assert [state for state, _ in record.history] == [
        SettlementState.BUILDING,
        SettlementState.FEE_SUBMITTED,
        SettlementState.FEE_CONFIRMED,
        SettlementState.PRIMARY_SUBMITTED,
        SettlementState.PRIMARY_CONFIRMED,
    ]
    tracker.force_refresh.assert_called_once()

    # The first broadcast is the fee leg
    fee_tx = VersionedTransaction.from_bytes(ledger.broadcasts[0])
    assert str(fee_tx.signatures[0]) == record.fee_signature

    print("  Successful transfer: PASSED")


def test_insufficient_funds_aborts_without_broadcast():
    """Balance 0.01 SOL against a 0.02 SOL total aborts with zero broadcasts"""
    print("Testing insufficient funds...")

    ledger = ScriptedLedger()
    # 0.02 SOL total: primary + 0.0005 fee + 0.00001 network estimate
    intent = _transfer(lamports=20_000_000 - FEE - 10_000)
    record = _orchestrator(ledger, _tracker(lamports=10_000_000)).execute(intent)

    assert record.state == SettlementState.ABORTED
    assert record.outcome == SettlementOutcome.ABORTED
    assert isinstance(record.error, InsufficientFunds)
    assert record.error.required == 20_000_000
    assert record.error.available == 10_000_000
    assert ledger.broadcasts == []
    assert ledger.blockhash_calls == 0
    assert [state for state, _ in record.history] == [SettlementState.BUILDING, SettlementState.ABORTED]

    with pytest.raises(InsufficientFunds):
        record.raise_for_outcome()

    print("  Insufficient funds: PASSED")


def test_unknown_balance_forces_refresh():
    tracker = _tracker()
    tracker.current.return_value = BalanceSnapshot.empty()
    tracker.force_refresh.return_value = BalanceSnapshot.empty()

    ledger = ScriptedLedger()
    record = _orchestrator(ledger, tracker).execute(_transfer())

    tracker.force_refresh.assert_called_once()
    assert record.state == SettlementState.ABORTED
    assert ledger.broadcasts == []


def test_invalid_destination_aborts():
    ledger = ScriptedLedger()
    record = _orchestrator(ledger).execute(_transfer(destination="not-a-valid-address"))

    assert record.state == SettlementState.ABORTED
    assert isinstance(record.error, TransactionError)
    assert ledger.broadcasts == []


def test_fee_broadcast_rejected_stops_settlement():
    ledger = ScriptedLedger(broadcast_errors=[BroadcastRejected("Transaction rejected by ledger: blockhash not found")])
    record = _orchestrator(ledger).execute(_transfer())

    assert record.state == SettlementState.FEE_FAILED
    assert record.outcome == SettlementOutcome.FEE_FAILED
    assert record.fee_status == LegStatus.FAILED
    assert record.primary_status == LegStatus.NOT_ATTEMPTED
    assert record.primary_signature is None
    assert ledger.broadcasts == []
    assert ledger.confirm_calls == []


def test_fee_broadcast_unanswered_is_followed_by_signature():
    """A send that got no answer may still land; it is confirmed by its local signature"""
    print("Testing unanswered fee broadcast...")

    ledger = ScriptedLedger(broadcast_errors=[EndpointUnavailable("sendTransaction timed out", attempted=["a", "b"])])
    record = _orchestrator(ledger).execute(_transfer())

    local_signature = _signature_of(ledger.attempts[0])
    assert record.fee_signature == local_signature
    assert ledger.confirm_calls[0][0] == local_signature
    assert record.outcome == SettlementOutcome.SUCCEEDED
    assert [state for state, _ in record.history][:3] == [
        SettlementState.BUILDING,
        SettlementState.FEE_SUBMITTED,
        SettlementState.FEE_CONFIRMED,
    ]
    # Only the primary was accepted; the fee was never sent twice
    assert len(ledger.attempts) == 2
    assert len(ledger.broadcasts) == 1

    print("  Unanswered fee broadcast: PASSED")


def test_fee_broadcast_unanswered_and_unseen_is_ambiguous():
    ledger = ScriptedLedger(
        confirmations=[ConfirmationStatus.TIMED_OUT, ConfirmationStatus.TIMED_OUT],
        broadcast_errors=[EndpointUnavailable("down", attempted=["a", "b"])],
    )
    record = _orchestrator(ledger).execute(_transfer())

    assert record.state == SettlementState.FEE_SUBMITTED
    assert record.outcome == SettlementOutcome.CONFIRMATION_TIMEOUT
    assert record.primary_status == LegStatus.NOT_ATTEMPTED


def test_fee_send_timeout_against_ledger_client():
    """Both endpoints time out on sendTransaction, yet the fee finalizes"""
    sends = []

    def post(url, json=None, timeout=None):
        method = json["method"]
        if method == "sendTransaction":
            sends.append(url)
            if len(sends) <= 2:
                raise httpx.ReadTimeout("timed out")
            result = _signature_of(base64.b64decode(json["params"][0]))
        elif method == "getLatestBlockhash":
            result = {"context": {"slot": 1}, "value": {"blockhash": BLOCKHASH, "lastValidBlockHeight": 1000}}
        elif method == "getSignatureStatuses":
            result = {"context": {"slot": 5}, "value": [
                {"slot": 5, "err": None, "confirmationStatus": "finalized"},
            ]}
        else:
            raise AssertionError(f"unexpected RPC call {method}")

        response = Mock()
        response.status_code = 200
        response.raise_for_status = Mock()
        response.json.return_value = {"jsonrpc": "2.0", "id": json["id"], "result": result}
        return response

    ledger = LedgerClient(
        EndpointPool(["https://rpc-a.example.com", "https://rpc-b.example.com"]),
        config=LedgerClientConfig(confirmation_poll_interval=0.01),
    )
    with patch.object(httpx.Client, "post", side_effect=post):
        record = _orchestrator(ledger).execute(_transfer(), confirmation_timeout=5)

    assert record.state == SettlementState.PRIMARY_CONFIRMED
    assert record.fee_spent
    assert len(sends) == 3


def test_fee_failed_on_chain():
    ledger = ScriptedLedger(confirmations=[ConfirmationStatus.FAILED_ON_CHAIN])
    record = _orchestrator(ledger).execute(_transfer())

    assert record.state == SettlementState.FEE_FAILED
    assert len(ledger.broadcasts) == 1
    assert record.primary_status == LegStatus.NOT_ATTEMPTED


def test_primary_rejected_is_partial_failure():
    """Fee confirms, primary broadcast rejected: fee spent, primary not executed"""
    print("Testing partial failure...")

    ledger = ScriptedLedger(broadcast_errors=[None, BroadcastRejected("Transaction rejected by ledger")])
    record = _orchestrator(ledger).execute(_transfer())

    assert record.state == SettlementState.PRIMARY_FAILED
    assert record.outcome == SettlementOutcome.PARTIAL_FAILURE
    assert record.fee_spent
    assert record.fee_status == LegStatus.CONFIRMED
    assert record.primary_status == LegStatus.FAILED
    assert record.primary_signature is None
    assert isinstance(record.error, PartialSettlementFailure)
    assert isinstance(record.error.cause, BroadcastRejected)
    assert record.error.fee_signature == record.fee_signature
    assert len(ledger.broadcasts) == 1

    with pytest.raises(PartialSettlementFailure):
        record.raise_for_outcome()

    print("  Partial failure: PASSED")


def test_primary_failed_on_chain_is_partial_failure():
    ledger = ScriptedLedger(confirmations=[ConfirmationStatus.CONFIRMED, ConfirmationStatus.FAILED_ON_CHAIN])
    record = _orchestrator(ledger).execute(_transfer())

    assert record.state == SettlementState.PRIMARY_FAILED
    assert record.outcome == SettlementOutcome.PARTIAL_FAILURE
    assert record.error.primary_signature == record.primary_signature
    assert len(ledger.broadcasts) == 2


def test_fee_timeout_is_ambiguous_and_rechecked():
    """Confirmation ceiling exceeded leaves a non-terminal, re-checkable record"""
    print("Testing fee confirmation timeout...")

    ledger = ScriptedLedger(confirmations=[ConfirmationStatus.TIMED_OUT, ConfirmationStatus.TIMED_OUT])
    orchestrator = _orchestrator(ledger, fee_confirm_attempts=2)
    record = orchestrator.execute(_transfer())

    assert record.state == SettlementState.FEE_SUBMITTED
    assert not record.is_terminal
    assert record.outcome == SettlementOutcome.CONFIRMATION_TIMEOUT
    assert record.fee_status == LegStatus.UNKNOWN
    assert isinstance(record.error, ConfirmationTimeout)
    assert len(ledger.confirm_calls) == 2
    assert len(ledger.broadcasts) == 1
    assert orchestrator.active_record is record

    with pytest.raises(Busy):
        orchestrator.execute(_transfer())

    rechecked = orchestrator.recheck()

    assert rechecked is record
    assert record.outcome == SettlementOutcome.SUCCEEDED
    # Fee was never rebroadcast
    assert len(ledger.broadcasts) == 2
    assert ledger.confirm_calls[2][0] == record.fee_signature

    print("  Fee confirmation timeout: PASSED")


def test_primary_timeout_is_ambiguous():
    ledger = ScriptedLedger(confirmations=[ConfirmationStatus.CONFIRMED, ConfirmationStatus.TIMED_OUT])
    orchestrator = _orchestrator(ledger)
    record = orchestrator.execute(_transfer(), confirmation_timeout=60)

    assert record.state == SettlementState.PRIMARY_SUBMITTED
    assert record.outcome == SettlementOutcome.CONFIRMATION_TIMEOUT
    assert record.primary_status == LegStatus.UNKNOWN

    with pytest.raises(ConfirmationTimeout):
        record.raise_for_outcome()

    orchestrator.recheck()
    assert record.outcome == SettlementOutcome.SUCCEEDED
    assert len(ledger.broadcasts) == 2


def test_primary_broadcast_unanswered_is_not_partial_failure():
    """An unanswered primary send is tracked by signature, not written off"""
    ledger = ScriptedLedger(
        confirmations=[ConfirmationStatus.CONFIRMED, ConfirmationStatus.TIMED_OUT],
        broadcast_errors=[None, EndpointUnavailable("sendTransaction timed out", attempted=["a", "b"])],
    )
    orchestrator = _orchestrator(ledger)
    record = orchestrator.execute(_transfer())

    assert record.state == SettlementState.PRIMARY_SUBMITTED
    assert record.outcome == SettlementOutcome.CONFIRMATION_TIMEOUT
    assert record.primary_signature == _signature_of(ledger.attempts[1])

    orchestrator.recheck()

    assert record.outcome == SettlementOutcome.SUCCEEDED
    assert len(ledger.attempts) == 2


def test_expired_fee_resolves_to_fee_failed():
    """An unseen fee past its last valid block height can no longer land"""
    print("Testing expired fee...")

    ledger = ScriptedLedger(confirmations=[ConfirmationStatus.TIMED_OUT] * 3)
    orchestrator = _orchestrator(ledger, fee_confirm_attempts=2)
    record = orchestrator.execute(_transfer())

    assert record.outcome == SettlementOutcome.CONFIRMATION_TIMEOUT
    assert record.fee_blockhash.last_valid_block_height == 1000
    assert not orchestrator.dismiss()

    ledger.block_height = 1001
    orchestrator.recheck()

    assert record.state == SettlementState.FEE_FAILED
    assert record.outcome == SettlementOutcome.FEE_FAILED
    assert record.fee_status == LegStatus.FAILED
    assert record.error.code == ErrorCode.TX_BLOCKHASH_EXPIRED
    assert record.primary_status == LegStatus.NOT_ATTEMPTED
    assert len(ledger.broadcasts) == 1

    # The session can settle again
    assert orchestrator.dismiss()
    assert orchestrator.execute(_transfer()).outcome == SettlementOutcome.SUCCEEDED

    print("  Expired fee: PASSED")


def test_expired_fee_that_landed_stays_ambiguous():
    ledger = ScriptedLedger(confirmations=[ConfirmationStatus.TIMED_OUT] * 2)
    ledger.block_height = 5000
    ledger.on_confirm = lambda signature: ledger.statuses.setdefault(
        signature, {"slot": 9, "err": None, "confirmationStatus": "processed"},
    )
    record = _orchestrator(ledger).execute(_transfer())

    assert record.state == SettlementState.FEE_SUBMITTED
    assert record.outcome == SettlementOutcome.CONFIRMATION_TIMEOUT


def test_expired_primary_is_partial_failure():
    ledger = ScriptedLedger(confirmations=[
        ConfirmationStatus.CONFIRMED,
        ConfirmationStatus.TIMED_OUT,
        ConfirmationStatus.TIMED_OUT,
    ])
    orchestrator = _orchestrator(ledger)
    record = orchestrator.execute(_transfer())
    assert record.state == SettlementState.PRIMARY_SUBMITTED

    ledger.block_height = 1001
    orchestrator.recheck()

    assert record.state == SettlementState.PRIMARY_FAILED
    assert record.outcome == SettlementOutcome.PARTIAL_FAILURE
    assert record.fee_spent
    assert record.error.cause.code == ErrorCode.TX_BLOCKHASH_EXPIRED
    assert record.error.primary_signature == record.primary_signature
    assert len(ledger.broadcasts) == 2


def test_expired_swap_checks_blockhash_validity():
    """Swap transactions carry no last valid height; the blockhash itself is checked"""
    ledger = ScriptedLedger(confirmations=[ConfirmationStatus.CONFIRMED, ConfirmationStatus.TIMED_OUT])
    ledger.blockhash_valid = False
    quoter = Mock()
    quoter.get_quote.return_value = _quote()
    quoter.get_swap_transaction.return_value = _swap_tx()

    route = ExchangeRoute(NATIVE_SOL_MINT, USDC_MINT, max_slippage_bps=100)
    intent = SettlementIntent.exchange(route, ONE_SOL // 10, fee_amount=FEE, fee_destination=FEE_ADDRESS)
    record = _orchestrator(ledger, quoter=quoter).execute(intent)

    assert record.primary_blockhash.blockhash == BLOCKHASH
    assert record.primary_blockhash.last_valid_block_height is None
    assert record.outcome == SettlementOutcome.PARTIAL_FAILURE
    assert record.error.cause.code == ErrorCode.TX_BLOCKHASH_EXPIRED


def test_busy_while_in_flight_sends_nothing():
    """A second settlement while one is in flight raises Busy without broadcasting"""
    print("Testing busy rejection...")

    entered = threading.Event()
    release = threading.Event()

    ledger = ScriptedLedger()

    def hold(signed_tx):
        entered.set()
        release.wait(5)

    ledger.on_broadcast = hold
    orchestrator = _orchestrator(ledger)

    results = []
    worker = threading.Thread(target=lambda: results.append(orchestrator.execute(_transfer())))
    worker.start()
    try:
        assert entered.wait(5)
        blockhash_calls = ledger.blockhash_calls

        with pytest.raises(Busy):
            orchestrator.execute(_transfer(lamports=1_000))

        assert ledger.blockhash_calls == blockhash_calls
        assert ledger.broadcasts == []
    finally:
        release.set()
        worker.join(5)

    assert results[0].outcome == SettlementOutcome.SUCCEEDED
    assert len(ledger.broadcasts) == 2

    print("  Busy rejection: PASSED")


def test_terminal_record_does_not_block_next():
    ledger = ScriptedLedger()
    orchestrator = _orchestrator(ledger)

    first = orchestrator.execute(_transfer())
    second = orchestrator.execute(_transfer())

    assert first.record_id != second.record_id
    assert orchestrator.last_record is second
    assert orchestrator.active_record is None

    assert orchestrator.dismiss()
    assert orchestrator.last_record is None
    assert not orchestrator.dismiss()


def test_cancel_while_building():
    ledger = ScriptedLedger()
    orchestrator = _orchestrator(ledger)
    cancelled = []
    ledger.on_blockhash = lambda: cancelled.append(orchestrator.cancel())

    record = orchestrator.execute(_transfer())

    assert cancelled == [True]
    assert record.state == SettlementState.ABORTED
    assert isinstance(record.error, SettlementCancelled)
    assert ledger.broadcasts == []


def test_cancel_after_fee_submitted_refused():
    ledger = ScriptedLedger()
    orchestrator = _orchestrator(ledger)
    attempts = []
    ledger.on_confirm = lambda signature: attempts.append(orchestrator.cancel())

    record = orchestrator.execute(_transfer())

    assert attempts and not any(attempts)
    assert record.outcome == SettlementOutcome.SUCCEEDED


def test_exchange_success():
    print("Testing exchange...")

    ledger = ScriptedLedger()
    quoter = Mock()
    quoter.get_quote.return_value = _quote()
    quoter.get_swap_transaction.return_value = _swap_tx()

    route = ExchangeRoute(NATIVE_SOL_MINT, USDC_MINT, max_slippage_bps=100, expected_out_amount=150_000_000)
    intent = SettlementIntent.exchange(route, ONE_SOL // 10, fee_amount=FEE, fee_destination=FEE_ADDRESS)
    record = _orchestrator(ledger, quoter=quoter).execute(intent)

    assert record.outcome == SettlementOutcome.SUCCEEDED
    assert record.quote is not None
    # Quoted once in building, re-validated after the fee confirmed
    assert quoter.get_quote.call_count == 2
    quoter.get_swap_transaction.assert_called_once()
    assert quoter.get_swap_transaction.call_args.args[1] == WALLET.public_address
    assert len(ledger.broadcasts) == 2
    assert ledger.token_balance_calls == []

    print("  Exchange: PASSED")


def test_exchange_slippage_aborts_before_fee():
    ledger = ScriptedLedger()
    quoter = Mock()
    quoter.get_quote.return_value = _quote(to_amount=140_000_000)

    route = ExchangeRoute(NATIVE_SOL_MINT, USDC_MINT, max_slippage_bps=100, expected_out_amount=150_000_000)
    intent = SettlementIntent.exchange(route, ONE_SOL // 10, fee_amount=FEE, fee_destination=FEE_ADDRESS)
    record = _orchestrator(ledger, quoter=quoter).execute(intent)

    assert record.state == SettlementState.ABORTED
    assert isinstance(record.error, SlippageExceeded)
    assert ledger.broadcasts == []
    quoter.get_swap_transaction.assert_not_called()


def test_exchange_slippage_after_fee_is_partial_failure():
    ledger = ScriptedLedger()
    quoter = Mock()
    quoter.get_quote.side_effect = [_quote(), _quote(to_amount=100_000_000)]

    route = ExchangeRoute(NATIVE_SOL_MINT, USDC_MINT, max_slippage_bps=100, expected_out_amount=150_000_000)
    intent = SettlementIntent.exchange(route, ONE_SOL // 10, fee_amount=FEE, fee_destination=FEE_ADDRESS)
    record = _orchestrator(ledger, quoter=quoter).execute(intent)

    assert record.outcome == SettlementOutcome.PARTIAL_FAILURE
    assert isinstance(record.error.cause, SlippageExceeded)
    assert len(ledger.broadcasts) == 1


def test_exchange_post_fee_quote_checked_against_first_quote():
    """Without an expected output the Building-phase quote is the baseline"""
    print("Testing post-fee quote baseline...")

    ledger = ScriptedLedger()
    quoter = Mock()
    quoter.get_quote.side_effect = [_quote(), _quote(to_amount=1)]

    route = ExchangeRoute(NATIVE_SOL_MINT, USDC_MINT, max_slippage_bps=100)
    intent = SettlementIntent.exchange(route, ONE_SOL // 10, fee_amount=FEE, fee_destination=FEE_ADDRESS)
    record = _orchestrator(ledger, quoter=quoter).execute(intent)

    assert record.outcome == SettlementOutcome.PARTIAL_FAILURE
    assert isinstance(record.error.cause, SlippageExceeded)
    assert record.error.cause.expected == 150_000_000
    assert record.error.cause.actual == 1
    quoter.get_swap_transaction.assert_not_called()
    assert len(ledger.broadcasts) == 1

    print("  Post-fee quote baseline: PASSED")


def test_exchange_post_fee_quote_within_tolerance():
    ledger = ScriptedLedger()
    quoter = Mock()
    quoter.get_quote.side_effect = [_quote(), _quote(to_amount=149_000_000)]
    quoter.get_swap_transaction.return_value = _swap_tx()

    route = ExchangeRoute(NATIVE_SOL_MINT, USDC_MINT, max_slippage_bps=100)
    intent = SettlementIntent.exchange(route, ONE_SOL // 10, fee_amount=FEE, fee_destination=FEE_ADDRESS)
    record = _orchestrator(ledger, quoter=quoter).execute(intent)

    assert record.outcome == SettlementOutcome.SUCCEEDED
    assert record.quote.to_amount == 149_000_000


def test_exchange_without_quoter_aborts():
    ledger = ScriptedLedger()
    route = ExchangeRoute(NATIVE_SOL_MINT, USDC_MINT)
    intent = SettlementIntent.exchange(route, ONE_SOL // 10, fee_amount=FEE, fee_destination=FEE_ADDRESS)
    record = _orchestrator(ledger).execute(intent)

    assert record.state == SettlementState.ABORTED
    assert ledger.broadcasts == []


def _token_quoter():
    quoter = Mock()
    quoter.get_quote.return_value = QuoteResult(
        from_token=USDC_MINT, to_token=NATIVE_SOL_MINT,
        from_amount=500_000_000, to_amount=3 * ONE_SOL, slippage_bps=50,
        raw_response={"outAmount": str(3 * ONE_SOL)},
    )
    quoter.get_swap_transaction.return_value = _swap_tx()
    return quoter


def _token_exchange(amount=500_000_000):
    route = ExchangeRoute(USDC_MINT, NATIVE_SOL_MINT, max_slippage_bps=100)
    return SettlementIntent.exchange(route, amount, fee_amount=FEE, fee_destination=FEE_ADDRESS)


def test_token_exchange_checks_token_balance():
    """Selling a token needs SOL for fee and network cost, and the token amount"""
    ledger = ScriptedLedger(token_balance=500_000_000)
    quoter = _token_quoter()
    record = _orchestrator(ledger, _tracker(lamports=2_000_000), quoter=quoter).execute(_token_exchange())

    assert record.outcome == SettlementOutcome.SUCCEEDED
    assert ledger.token_balance_calls == [(WALLET.public_address, USDC_MINT)]


def test_token_exchange_insufficient_tokens_aborts():
    """Too few tokens aborts before the fee is charged"""
    print("Testing insufficient token balance...")

    ledger = ScriptedLedger(token_balance=100_000_000)
    quoter = _token_quoter()
    record = _orchestrator(ledger, _tracker(lamports=2_000_000), quoter=quoter).execute(_token_exchange())

    assert record.state == SettlementState.ABORTED
    assert isinstance(record.error, InsufficientFunds)
    assert record.error.required == 500_000_000
    assert record.error.available == 100_000_000
    assert record.error.details["mint"] == USDC_MINT
    assert ledger.attempts == []
    quoter.get_quote.assert_not_called()

    print("  Insufficient token balance: PASSED")


def test_closed_orchestrator_rejects_calls():
    ledger = ScriptedLedger()
    orchestrator = _orchestrator(ledger)
    orchestrator.close()
    orchestrator.close()

    with pytest.raises(SessionClosed):
        orchestrator.execute(_transfer())
    with pytest.raises(SessionClosed):
        orchestrator.recheck()
    assert ledger.broadcasts == []


def test_close_waits_for_in_flight():
    entered = threading.Event()
    release = threading.Event()

    ledger = ScriptedLedger()
    ledger.on_confirm = lambda signature: (entered.set(), release.wait(5))
    orchestrator = _orchestrator(ledger)

    results = []
    worker = threading.Thread(target=lambda: results.append(orchestrator.execute(_transfer())))
    worker.start()
    assert entered.wait(5)

    closer = threading.Thread(target=orchestrator.close)
    closer.start()
    time.sleep(0.05)
    assert not orchestrator.is_closed

    release.set()
    worker.join(5)
    closer.join(5)

    assert orchestrator.is_closed
    assert results[0].outcome == SettlementOutcome.SUCCEEDED


def test_when_idle_waits_for_in_flight_settlement():
    """A close that timed out defers its cleanup until the settlement returns"""
    print("Testing deferred release...")

    entered = threading.Event()
    release = threading.Event()

    ledger = ScriptedLedger()
    ledger.on_confirm = lambda signature: (entered.set(), release.wait(5))
    orchestrator = _orchestrator(ledger)

    results = []
    worker = threading.Thread(target=lambda: results.append(orchestrator.execute(_transfer())))
    worker.start()
    released = []
    try:
        assert entered.wait(5)

        orchestrator.close(timeout=0.01)
        assert orchestrator.is_closed
        assert not orchestrator.when_idle(lambda: released.append("deferred"))
        assert released == []
    finally:
        release.set()
        worker.join(5)

    assert released == ["deferred"]
    assert results[0].outcome == SettlementOutcome.SUCCEEDED

    assert orchestrator.when_idle(lambda: released.append("now"))
    assert released == ["deferred", "now"]

    print("  Deferred release: PASSED")


def main():
    """Run all settlement tests"""
    print("=" * 60)
    print("Settlement Orchestrator Tests")
    print("=" * 60)

    tests = [
        test_transfer_succeeds_in_order,
        test_insufficient_funds_aborts_without_broadcast,
        test_unknown_balance_forces_refresh,
        test_invalid_destination_aborts,
        test_fee_broadcast_rejected_stops_settlement,
        test_fee_broadcast_unanswered_is_followed_by_signature,
        test_fee_broadcast_unanswered_and_unseen_is_ambiguous,
        test_fee_send_timeout_against_ledger_client,
        test_fee_failed_on_chain,
        test_primary_rejected_is_partial_failure,
        test_primary_failed_on_chain_is_partial_failure,
        test_fee_timeout_is_ambiguous_and_rechecked,
        test_primary_timeout_is_ambiguous,
        test_primary_broadcast_unanswered_is_not_partial_failure,
        test_expired_fee_resolves_to_fee_failed,
        test_expired_fee_that_landed_stays_ambiguous,
        test_expired_primary_is_partial_failure,
        test_expired_swap_checks_blockhash_validity,
        test_busy_while_in_flight_sends_nothing,
        test_terminal_record_does_not_block_next,
        test_cancel_while_building,
        test_cancel_after_fee_submitted_refused,
        test_exchange_success,
        test_exchange_slippage_aborts_before_fee,
        test_exchange_slippage_after_fee_is_partial_failure,
        test_exchange_post_fee_quote_checked_against_first_quote,
        test_exchange_post_fee_quote_within_tolerance,
        test_exchange_without_quoter_aborts,
        test_token_exchange_checks_token_balance,
        test_token_exchange_insufficient_tokens_aborts,
        test_closed_orchestrator_rejects_calls,
        test_close_waits_for_in_flight,
        test_when_idle_waits_for_in_flight_settlement,
    ]

    passed = 0
    failed = 0

    for test in tests:
        try:
            test()
            passed += 1
        except Exception as e:
            print(f"  FAILED: {e}")
            failed += 1

    print("=" * 60)
    print(f"Results: {passed} passed, {failed} failed")
    print("=" * 60)

    return failed == 0


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
