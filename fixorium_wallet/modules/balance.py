"""
Balance Module

Keeps an eventually-consistent view of the session wallet's SOL balance.
"""

import logging
import threading
import time
from typing import Callable, List, Optional

from ..types import BalanceSnapshot, SnapshotSource
from ..config import config as global_config
from ..infra.rpc import LedgerClient

logger = logging.getLogger(__name__)

BalanceListener = Callable[[BalanceSnapshot], None]


class BalanceTracker:
    """
    Polls the ledger for the wallet's SOL balance on a background thread

    A failed poll never clears the balance: the last good value is kept and
    marked STALE until the next successful poll.

    Usage:
        tracker = BalanceTracker(ledger)
        tracker.start(address, interval_ms=30_000)

        snapshot = tracker.current()
        print(snapshot.sol, snapshot.source)

        # After a settlement lands
        tracker.force_refresh()

        tracker.stop()
    """

    def __init__(self, ledger: LedgerClient, join_timeout: float = 5.0):
        """
        Initialize balance tracker

        Args:
            ledger: Ledger client used for getBalance
            join_timeout: Max seconds stop() waits for an in-flight poll
        """
        self._ledger = ledger
        self._join_timeout = join_timeout

        self._lock = threading.Lock()
        self._snapshot = BalanceSnapshot.empty()
        self._address: Optional[str] = None
        self._interval_ms = global_config.balance.poll_interval_ms
        self._listeners: List[BalanceListener] = []

        # Poll ordering: results of an older poll never overwrite a newer one
        self._issued_seq = 0
        self._applied_seq = 0
        # Bumped by start(); polls issued under an older generation are dropped
        self._generation = 0

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._stopped = True

    @property
    def address(self) -> Optional[str]:
        return self._address

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, address: str, interval_ms: Optional[int] = None) -> None:
        """
        Start polling an address

        Restarts the loop if already running; the snapshot is kept only when
        the address is unchanged.

        Args:
            address: Wallet address
            interval_ms: Poll interval (default BALANCE_POLL_INTERVAL_MS)
        """
        interval_ms = interval_ms if interval_ms is not None else global_config.balance.poll_interval_ms
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive, got {interval_ms}")

        if self._thread is not None:
            self.stop()

        with self._lock:
            if address != self._address:
                self._snapshot = BalanceSnapshot.empty()
            self._address = address
            self._interval_ms = interval_ms
            self._generation += 1
            self._stopped = False
            self._stop_event = threading.Event()
            self._wake_event = threading.Event()

        self._thread = threading.Thread(
            target=self._run,
            args=(self._stop_event, self._wake_event),
            name=f"balance-poll-{address[:8]}",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Balance tracking started for {address} every {interval_ms}ms")

    def stop(self) -> None:
        """
        Stop polling

        Idempotent. Once this returns no poll is started and no in-flight
        result is applied.
        """
        with self._lock:
            already_stopped = self._stopped
            self._stopped = True
        self._stop_event.set()
        self._wake_event.set()

        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._join_timeout)
            if thread.is_alive():
                logger.warning(f"Balance poll thread still finishing a request after {self._join_timeout}s")

        if not already_stopped:
            logger.info(f"Balance tracking stopped for {self._address}")

    def current(self) -> BalanceSnapshot:
        """Latest snapshot; never blocks on the network"""
        with self._lock:
            return self._snapshot

    def force_refresh(self) -> BalanceSnapshot:
        """
        Poll now on the caller's thread

        Applies the same success/failure rule as the timer. After stop() it
        returns the current snapshot without a network call.
        """
        return self._refresh("forced")

    def invalidate(self) -> None:
        """Wake the poll loop for an immediate refresh"""
        self._wake_event.set()

    def add_listener(self, listener: BalanceListener) -> None:
        """Call listener with the new snapshot whenever it changes"""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: BalanceListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _run(self, stop_event: threading.Event, wake_event: threading.Event) -> None:
        while not stop_event.is_set():
            self._refresh("timer")
            wake_event.wait(timeout=self._interval_ms / 1000.0)
            wake_event.clear()

    def _refresh(self, reason: str) -> BalanceSnapshot:
        with self._lock:
            if self._stopped or self._address is None:
                return self._snapshot
            self._issued_seq += 1
            seq = self._issued_seq
            generation = self._generation
            address = self._address

        lamports: Optional[int] = None
        error: Optional[Exception] = None
        try:
            lamports = self._ledger.get_balance(address)
        except Exception as e:
            error = e

        with self._lock:
            if self._stopped or generation != self._generation or seq < self._applied_seq:
                logger.debug(f"Discarding balance poll #{seq} ({reason})")
                return self._snapshot
            self._applied_seq = seq
            previous = self._snapshot

            if error is None:
                observed_at = time.time()
                if previous.observed_at is not None:
                    observed_at = max(observed_at, previous.observed_at)
                snapshot = BalanceSnapshot(
                    lamports=lamports,
                    observed_at=observed_at,
                    source=SnapshotSource.LIVE,
                )
            else:
                logger.warning(f"Balance poll failed for {address}, keeping last value: {error}")
                snapshot = BalanceSnapshot(
                    lamports=previous.lamports,
                    observed_at=previous.observed_at,
                    source=SnapshotSource.STALE,
                    last_error=str(error),
                )

            self._snapshot = snapshot
            changed = (snapshot.lamports, snapshot.source) != (previous.lamports, previous.source)
            listeners = list(self._listeners) if changed else []

        if changed:
            logger.debug(f"Balance for {address}: {snapshot}")
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Balance listener raised")

        return snapshot
