"""
Endpoint pool for Solana RPC

Ranks interchangeable RPC endpoints by health and picks one per call:
- fewest consecutive failures first
- then lowest measured latency
- then configuration order

A failed endpoint sits out a few selections instead of being dropped.
Health state is shared by every caller in the process and guarded by a lock.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, Union

import httpx

from ..errors import ConfigurationError
from ..types import Endpoint
from ..config import config as global_config

logger = logging.getLogger(__name__)

# probe(url, timeout_seconds) raises on failure
ProbeFn = Callable[[str, float], object]


class EndpointPool:
    """
    Ranked pool of RPC endpoints with failover selection

    Usage:
        pool = EndpointPool([
            "https://primary-rpc.example.com",
            "https://backup-rpc.example.com",
        ])

        endpoint = pool.select_healthy()
        ...
        pool.report_outcome(endpoint, success=True, latency_ms=84.0)

        # Refresh health of every endpoint (never raises)
        pool.probe_all(timeout_ms=3000)
    """

    def __init__(
        self,
        endpoints: Optional[List[str]] = None,
        failure_ceiling: Optional[int] = None,
        backoff_selections: Optional[int] = None,
        probe: Optional[ProbeFn] = None,
    ):
        """
        Initialize endpoint pool

        Args:
            endpoints: Endpoint URLs in preference order (default from config)
            failure_ceiling: Failures above which an endpoint is avoided
            backoff_selections: Selections a failed endpoint sits out
            probe: Liveness check; defaults to a JSON-RPC getSlot call
        """
        urls = list(endpoints) if endpoints is not None else list(global_config.rpc.endpoints)
        if not urls:
            raise ConfigurationError.missing("RPC endpoint")
        if len(set(urls)) != len(urls):
            raise ConfigurationError.invalid("RPC_ENDPOINTS", "duplicate endpoint URL")

        self._endpoints = [Endpoint(url=url) for url in urls]
        self._failure_ceiling = (
            failure_ceiling if failure_ceiling is not None else global_config.rpc.failure_ceiling
        )
        self._backoff_selections = (
            backoff_selections if backoff_selections is not None else global_config.rpc.backoff_selections
        )
        self._probe = probe or _probe_get_slot
        self._lock = threading.Lock()
        self._current: Optional[Endpoint] = None

        self._probe_thread: Optional[threading.Thread] = None
        self._probe_stop = threading.Event()

    def __len__(self) -> int:
        return len(self._endpoints)

    @property
    def endpoints(self) -> List[Endpoint]:
        """Copies of every endpoint's health record, in configuration order"""
        with self._lock:
            return [dataclasses.replace(e) for e in self._endpoints]

    @property
    def current(self) -> Optional[Endpoint]:
        """Copy of the most recently selected endpoint"""
        with self._lock:
            return dataclasses.replace(self._current) if self._current else None

    def _rank_key(self, endpoint: Endpoint):
        return (
            endpoint.consecutive_failures,
            endpoint.latency_rank,
            self._endpoints.index(endpoint),
        )

    def _is_eligible(self, endpoint: Endpoint) -> bool:
        return (
            endpoint.backoff_remaining == 0
            and endpoint.consecutive_failures <= self._failure_ceiling
        )

    def select_healthy(self, exclude: Iterable[str] = ()) -> Endpoint:
        """
        Pick the best endpoint for the next call

        Never raises: when nothing is eligible the least-bad candidate is
        returned so callers can keep trying.

        Args:
            exclude: URLs already tried for the current call; ignored if it
                would leave no candidates

        Returns:
            Selected endpoint
        """
        excluded = set(exclude)
        with self._lock:
            candidates = [e for e in self._endpoints if e.url not in excluded] or list(self._endpoints)
            eligible = [e for e in candidates if self._is_eligible(e)]

            if eligible:
                chosen = min(eligible, key=self._rank_key)
            else:
                chosen = min(candidates, key=self._rank_key)
                logger.warning(
                    f"No eligible RPC endpoint, degrading to {chosen.url} "
                    f"(failures={chosen.consecutive_failures})"
                )

            # Backoff counts down in selections
            for endpoint in self._endpoints:
                if endpoint is not chosen and endpoint.backoff_remaining > 0:
                    endpoint.backoff_remaining -= 1
            chosen.backoff_remaining = 0

            if self._current is not chosen and self._current is not None:
                logger.info(f"Switching RPC endpoint: {self._current.url} -> {chosen.url}")
            self._current = chosen
            return chosen

    def report_outcome(
        self,
        endpoint: Union[Endpoint, str],
        success: bool,
        latency_ms: Optional[float] = None,
    ) -> None:
        """
        Record the result of a call made against an endpoint

        Args:
            endpoint: Endpoint (or its URL) that served the call
            success: Whether the endpoint answered
            latency_ms: Round-trip time of the call
        """
        url = endpoint.url if isinstance(endpoint, Endpoint) else endpoint
        with self._lock:
            target = self._find(url)
            if target is None:
                logger.warning(f"Outcome reported for unknown endpoint: {url}")
                return
            if success:
                target.consecutive_failures = 0
                target.backoff_remaining = 0
                target.last_success_at = time.time()
                if latency_ms is not None:
                    target.last_latency_ms = latency_ms
            else:
                target.consecutive_failures += 1
                target.backoff_remaining = self._backoff_selections
                logger.debug(
                    f"RPC endpoint {url} failed "
                    f"({target.consecutive_failures} consecutive)"
                )

    def probe_all(self, timeout_ms: Optional[int] = None) -> None:
        """
        Probe every endpoint concurrently and record the results

        Never raises; individual probe failures are recorded as failed
        outcomes.

        Args:
            timeout_ms: Per-probe timeout (default from config)
        """
        timeout_ms = timeout_ms if timeout_ms is not None else global_config.rpc.probe_timeout_ms
        timeout_s = timeout_ms / 1000.0
        urls = [e.url for e in self.endpoints]

        def probe_one(url: str) -> None:
            started = time.monotonic()
            try:
                self._probe(url, timeout_s)
            except Exception as e:
                logger.info(f"RPC probe failed for {url}: {e}")
                self.report_outcome(url, success=False)
                return
            elapsed_ms = (time.monotonic() - started) * 1000.0
            if elapsed_ms > timeout_ms:
                logger.info(f"RPC probe for {url} exceeded {timeout_ms}ms ({elapsed_ms:.0f}ms)")
                self.report_outcome(url, success=False)
                return
            self.report_outcome(url, success=True, latency_ms=elapsed_ms)

        with ThreadPoolExecutor(max_workers=len(urls), thread_name_prefix="rpc-probe") as executor:
            list(executor.map(probe_one, urls))

        logger.debug(f"Probed {len(urls)} RPC endpoints")

    @property
    def is_probing(self) -> bool:
        return self._probe_thread is not None and self._probe_thread.is_alive()

    def start_probing(self, interval_ms: Optional[int] = None, timeout_ms: Optional[int] = None) -> None:
        """
        Run probe_all on a daemon thread, once now and then every interval

        A failed endpoint otherwise only gets traffic again when every
        better-ranked endpoint fails too. No-op if already probing.

        Args:
            interval_ms: Delay between probe rounds (default RPC_PROBE_INTERVAL_MS)
            timeout_ms: Per-probe timeout (default RPC_PROBE_TIMEOUT_MS)
        """
        interval_ms = interval_ms if interval_ms is not None else global_config.rpc.probe_interval_ms
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive, got {interval_ms}")
        if self.is_probing:
            return

        stop_event = threading.Event()
        self._probe_stop = stop_event

        def run() -> None:
            while not stop_event.is_set():
                self.probe_all(timeout_ms)
                stop_event.wait(timeout=interval_ms / 1000.0)

        self._probe_thread = threading.Thread(target=run, name="rpc-probe-loop", daemon=True)
        self._probe_thread.start()
        logger.info(f"RPC health probes every {interval_ms}ms")

    def stop_probing(self, join_timeout: float = 5.0) -> None:
        """Stop the probe loop; idempotent"""
        self._probe_stop.set()
        thread = self._probe_thread
        self._probe_thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=join_timeout)

    def _find(self, url: str) -> Optional[Endpoint]:
        for endpoint in self._endpoints:
            if endpoint.url == url:
                return endpoint
        return None


def _probe_get_slot(url: str, timeout_seconds: float) -> int:
    """Cheap liveness call: current slot"""
    body = {"jsonrpc": "2.0", "id": 1, "method": "getSlot", "params": []}
    with httpx.Client(timeout=timeout_seconds) as client:
        response = client.post(url, json=body)
        response.raise_for_status()
        result = response.json()
    if "error" in result:
        raise RuntimeError(f"RPC error: {result['error']}")
    return result.get("result")
