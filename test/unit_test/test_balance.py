"""
Test Balance Tracker

Tests for last-known-good balance polling.
"""

import sys
import threading
import time
from pathlib import Path
from unittest.mock import Mock

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

ADDRESS = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _started_tracker(ledger, interval_ms=3_600_000):
    """Tracker whose timer will not fire again during the test"""
    from fixorium_wallet.modules.balance import BalanceTracker

    tracker = BalanceTracker(ledger)
    tracker.start(ADDRESS, interval_ms=interval_ms)
    assert _wait_for(lambda: ledger.get_balance.call_count >= 1)
    assert _wait_for(lambda: tracker.current().observed_at is not None or tracker.current().last_error)
    return tracker


def test_initial_snapshot_is_unknown():
    from fixorium_wallet.modules.balance import BalanceTracker
    from fixorium_wallet.types import SnapshotSource

    tracker = BalanceTracker(Mock())
    snapshot = tracker.current()
    assert snapshot.lamports is None
    assert snapshot.source == SnapshotSource.STALE


def test_poll_success_is_live():
    from fixorium_wallet.types import SnapshotSource

    print("Testing live snapshot...")

    ledger = Mock()
    ledger.get_balance.return_value = 1_500_000_000
    tracker = _started_tracker(ledger)
    try:
        snapshot = tracker.current()
        assert snapshot.lamports == 1_500_000_000
        assert snapshot.source == SnapshotSource.LIVE
        assert str(snapshot.sol) == "1.5"
        ledger.get_balance.assert_called_with(ADDRESS)
    finally:
        tracker.stop()

    print("  Live snapshot: PASSED")


def test_failed_poll_keeps_last_value():
    """A failed poll keeps the last good value and marks it STALE"""
    from fixorium_wallet.errors import EndpointUnavailable
    from fixorium_wallet.types import SnapshotSource

    print("Testing balance non-regression...")

    ledger = Mock()
    ledger.get_balance.return_value = 10_000_000
    tracker = _started_tracker(ledger)
    try:
        good = tracker.current()

        ledger.get_balance.side_effect = EndpointUnavailable("all endpoints failed", attempted=["a", "b"])
        snapshot = tracker.force_refresh()

        assert snapshot.lamports == 10_000_000
        assert snapshot.source == SnapshotSource.STALE
        assert snapshot.observed_at == good.observed_at
        assert "all endpoints failed" in snapshot.last_error
        assert tracker.current() == snapshot

        # Recovery replaces the stale value
        ledger.get_balance.side_effect = None
        ledger.get_balance.return_value = 9_000_000
        snapshot = tracker.force_refresh()
        assert snapshot.lamports == 9_000_000
        assert snapshot.source == SnapshotSource.LIVE
        assert snapshot.last_error is None
    finally:
        tracker.stop()

    print("  Balance non-regression: PASSED")


def test_observed_at_non_decreasing():
    ledger = Mock()
    ledger.get_balance.return_value = 5
    tracker = _started_tracker(ledger)
    try:
        seen = [tracker.current().observed_at]
        for _ in range(5):
            seen.append(tracker.force_refresh().observed_at)
        assert seen == sorted(seen)
    finally:
        tracker.stop()


def test_older_poll_result_discarded():
    """A slow poll finishing after a newer one does not overwrite it"""
    print("Testing out-of-order poll results...")

    slow_started = threading.Event()
    release_slow = threading.Event()
    calls = {"n": 0}

    def get_balance(address):
        calls["n"] += 1
        if calls["n"] == 2:
            slow_started.set()
            release_slow.wait(2)
            return 100
        return 200

    ledger = Mock()
    ledger.get_balance.side_effect = get_balance
    tracker = _started_tracker(ledger)
    try:
        slow = threading.Thread(target=tracker.force_refresh)
        slow.start()
        assert slow_started.wait(2)

        assert tracker.force_refresh().lamports == 200

        release_slow.set()
        slow.join(2)

        assert tracker.current().lamports == 200
    finally:
        tracker.stop()

    print("  Out-of-order poll results: PASSED")


def test_poll_for_previous_address_discarded():
    """Restarting on a new address drops a poll still running for the old one"""
    from fixorium_wallet.modules.balance import BalanceTracker

    other = "FNVD1wied3e8WMuWs34KSamrCpughCMTjoXUE1ZXa6wM"
    old_started = threading.Event()
    release_old = threading.Event()
    release_new = threading.Event()

    def get_balance(address):
        if address == ADDRESS:
            old_started.set()
            release_old.wait(2)
            return 111
        release_new.wait(2)
        return 222

    ledger = Mock()
    ledger.get_balance.side_effect = get_balance
    tracker = BalanceTracker(ledger, join_timeout=0.05)
    try:
        tracker.start(ADDRESS, interval_ms=3_600_000)
        assert old_started.wait(2)

        tracker.start(other, interval_ms=3_600_000)
        assert _wait_for(lambda: ledger.get_balance.call_count >= 2)

        release_old.set()
        time.sleep(0.1)
        assert tracker.current().lamports is None

        release_new.set()
        assert _wait_for(lambda: tracker.current().lamports == 222)
        assert tracker.address == other
    finally:
        release_old.set()
        release_new.set()
        tracker.stop()


def test_stop_is_idempotent_and_final():
    """No poll happens after stop() returns"""
    print("Testing stop...")

    ledger = Mock()
    ledger.get_balance.return_value = 42
    from fixorium_wallet.modules.balance import BalanceTracker

    tracker = BalanceTracker(ledger)
    tracker.start(ADDRESS, interval_ms=20)
    assert _wait_for(lambda: ledger.get_balance.call_count >= 3)

    tracker.stop()
    tracker.stop()
    assert not tracker.is_running

    calls_at_stop = ledger.get_balance.call_count
    time.sleep(0.1)
    snapshot = tracker.force_refresh()

    assert ledger.get_balance.call_count == calls_at_stop
    assert snapshot.lamports == 42

    print("  Stop: PASSED")


def test_invalidate_wakes_loop():
    ledger = Mock()
    ledger.get_balance.return_value = 1
    tracker = _started_tracker(ledger)
    try:
        before = ledger.get_balance.call_count
        tracker.invalidate()
        assert _wait_for(lambda: ledger.get_balance.call_count > before)
    finally:
        tracker.stop()


def test_listener_notified_on_change():
    ledger = Mock()
    ledger.get_balance.return_value = 1
    tracker = _started_tracker(ledger)
    try:
        seen = []
        tracker.add_listener(seen.append)

        tracker.force_refresh()
        assert seen == []

        ledger.get_balance.return_value = 2
        tracker.force_refresh()
        assert [s.lamports for s in seen] == [2]

        tracker.remove_listener(seen.append)
        ledger.get_balance.return_value = 3
        tracker.force_refresh()
        assert len(seen) == 1
    finally:
        tracker.stop()


def test_start_rejects_bad_interval():
    import pytest
    from fixorium_wallet.modules.balance import BalanceTracker

    with pytest.raises(ValueError):
        BalanceTracker(Mock()).start(ADDRESS, interval_ms=0)


def main():
    """Run all balance tracker tests"""
    print("=" * 60)
    print("Balance Tracker Tests")
    print("=" * 60)

    tests = [
        test_initial_snapshot_is_unknown,
        test_poll_success_is_live,
        test_failed_poll_keeps_last_value,
        test_observed_at_non_decreasing,
        test_older_poll_result_discarded,
        test_poll_for_previous_address_discarded,
        test_stop_is_idempotent_and_final,
        test_invalidate_wakes_loop,
        test_listener_notified_on_change,
        test_start_rejects_bad_interval,
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
