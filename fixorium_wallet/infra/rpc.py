"""
Ledger client for Solana

Thin JSON-RPC facade over the endpoint pool with:
- Endpoint selection per call
- One bounded failover retry on transport failure
- Confirmation polling with an ambiguous timeout result
"""

from __future__ import annotations

import base64
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .endpoint_pool import EndpointPool
from ..errors import (
    RpcError,
    RpcResponseError,
    EndpointUnavailable,
    BroadcastRejected,
)
from ..types import (
    BlockhashHandle,
    ConfirmationOutcome,
    ConfirmationStatus,
    commitment_reached,
)
from ..config import config as global_config

logger = logging.getLogger(__name__)

# JSON-RPC error codes that mean "this node can't serve you right now"
NODE_UNHEALTHY_CODES = frozenset({
    -32005,  # node is unhealthy / behind
    -32004,  # block not available
    -32014,  # block status not yet available
    -32016,  # minimum context slot not reached
})


@dataclass
class LedgerClientConfig:
    """
    Ledger client runtime configuration

    Pulls defaults from the global config (fixorium_wallet.config).

    Usage:
        config = LedgerClientConfig(timeout_seconds=5, failover_retries=2)
        client = LedgerClient(pool, config=config)
    """
    timeout_seconds: float = None
    failover_retries: int = None
    commitment: str = None
    confirmation_poll_interval: float = None
    confirmation_timeout: float = None
    skip_preflight: bool = None
    preflight_commitment: str = None

    def __post_init__(self):
        """Apply defaults from global config for any unset values"""
        if self.timeout_seconds is None:
            self.timeout_seconds = global_config.rpc.timeout_seconds
        if self.failover_retries is None:
            self.failover_retries = global_config.rpc.failover_retries
        if self.commitment is None:
            self.commitment = global_config.rpc.commitment
        if self.confirmation_poll_interval is None:
            self.confirmation_poll_interval = global_config.tx.confirmation_poll_interval
        if self.confirmation_timeout is None:
            self.confirmation_timeout = global_config.tx.confirmation_timeout
        if self.skip_preflight is None:
            self.skip_preflight = global_config.tx.skip_preflight
        if self.preflight_commitment is None:
            self.preflight_commitment = global_config.tx.preflight_commitment


class LedgerClient:
    """
    Solana ledger access through a shared EndpointPool

    Every call selects the healthiest endpoint; a transport failure is
    reported to the pool and the call is retried once on the next-best
    endpoint before EndpointUnavailable is raised.

    Usage:
        pool = EndpointPool(["https://rpc-a.example.com", "https://rpc-b.example.com"])
        ledger = LedgerClient(pool)

        lamports = ledger.get_balance("Address...")
        handle = ledger.get_latest_blockhash()
        signature = ledger.broadcast(signed_tx_bytes)
        outcome = ledger.confirm(signature, timeout_seconds=60)
    """

    def __init__(
        self,
        pool: EndpointPool,
        config: Optional[LedgerClientConfig] = None,
    ):
        """
        Initialize ledger client

        Args:
            pool: Shared endpoint pool
            config: Client configuration options
        """
        self._pool = pool
        self._config = config or LedgerClientConfig()
        self._client: Optional[httpx.Client] = None
        self._client_lock = threading.Lock()
        self._request_id = 0

    @classmethod
    def from_config(cls) -> "LedgerClient":
        """Build a client on a pool of the configured endpoints"""
        return cls(EndpointPool())

    @property
    def pool(self) -> EndpointPool:
        return self._pool

    @property
    def commitment(self) -> str:
        """Default commitment level"""
        return self._config.commitment

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client (thread-safe)"""
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    self._client = httpx.Client(
                        timeout=self._config.timeout_seconds,
                        headers={"Content-Type": "application/json"},
                    )
        return self._client

    def _next_request_id(self) -> int:
        with self._client_lock:
            self._request_id += 1
            return self._request_id

    def _post(self, url: str, body: Dict[str, Any], timeout: float) -> Any:
        """
        Single JSON-RPC request against one endpoint

        Raises:
            RpcError: Transport failure (recoverable, eligible for failover)
            RpcResponseError: JSON-RPC error answered by a healthy node
        """
        try:
            response = self._get_client().post(url, json=body, timeout=timeout)

            if response.status_code == 429:
                raise RpcError.rate_limited(url)

            response.raise_for_status()
            result = response.json()

        except httpx.TimeoutException as e:
            raise RpcError.timeout(url, timeout) from e

        except httpx.HTTPStatusError as e:
            raise RpcError(
                f"HTTP error {e.response.status_code}",
                endpoint=url,
                original_error=e,
            ) from e

        except httpx.RequestError as e:
            raise RpcError.connection_failed(url, e) from e

        except ValueError as e:
            raise RpcError.invalid_response(url, f"body is not JSON: {e}") from e

        if not isinstance(result, dict):
            raise RpcError.invalid_response(url, "response is not a JSON object")

        if "error" in result:
            error = result["error"] or {}
            error_msg = error.get("message", str(error))
            error_code = error.get("code")
            if error_code in NODE_UNHEALTHY_CODES:
                raise RpcError.node_unhealthy(url, error_msg)
            raise RpcResponseError(
                f"RPC error: {error_msg}",
                endpoint=url,
                rpc_code=error_code,
                rpc_data=error.get("data"),
            )

        return result.get("result")

    def call(
        self,
        method: str,
        params: List[Any],
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Make JSON-RPC call with failover

        Args:
            method: RPC method name
            params: RPC parameters
            timeout: Optional timeout override

        Returns:
            RPC result

        Raises:
            EndpointUnavailable: Every attempted endpoint failed in transport
            RpcResponseError: A healthy node answered with a JSON-RPC error
        """
        timeout_val = timeout or self._config.timeout_seconds
        body = {
            "jsonrpc": "2.0",
            "id": self._next_request_id(),
            "method": method,
            "params": params,
        }

        attempted: List[str] = []
        last_error: Optional[Exception] = None

        for attempt in range(1 + max(0, self._config.failover_retries)):
            endpoint = self._pool.select_healthy(exclude=attempted)
            attempted.append(endpoint.url)
            started = time.monotonic()

            try:
                result = self._post(endpoint.url, body, timeout_val)
            except RpcResponseError:
                # The node answered; its health is fine
                self._pool.report_outcome(endpoint, True, (time.monotonic() - started) * 1000.0)
                raise
            except RpcError as e:
                last_error = e
                self._pool.report_outcome(endpoint, False)
                logger.warning(f"RPC {method} failed on {endpoint.url} (attempt {attempt + 1}): {e}")
                continue

            self._pool.report_outcome(endpoint, True, (time.monotonic() - started) * 1000.0)
            return result

        raise EndpointUnavailable.exhausted(method, attempted, last_error)

    def get_balance(
        self,
        address: str,
        commitment: Optional[str] = None,
    ) -> int:
        """
        Get SOL balance in lamports

        Args:
            address: Account address

        Returns:
            Balance in lamports
        """
        params = [address, {"commitment": commitment or self.commitment}]
        result = self.call("getBalance", params)
        if not isinstance(result, dict) or "value" not in result:
            raise RpcError.invalid_response(self._current_url(), "getBalance result missing value")
        return int(result["value"])

    def get_latest_blockhash(
        self,
        commitment: Optional[str] = None,
    ) -> BlockhashHandle:
        """
        Get latest blockhash

        Returns:
            BlockhashHandle with blockhash and lastValidBlockHeight
        """
        params = [{"commitment": commitment or self.commitment}]
        result = self.call("getLatestBlockhash", params)
        value = (result or {}).get("value") or {}
        blockhash = value.get("blockhash")
        if not blockhash:
            raise RpcError.invalid_response(self._current_url(), "getLatestBlockhash returned no blockhash")
        return BlockhashHandle(
            blockhash=blockhash,
            last_valid_block_height=value.get("lastValidBlockHeight"),
            fetched_at=time.time(),
        )

    def broadcast(
        self,
        signed_tx: bytes,
        skip_preflight: Optional[bool] = None,
        preflight_commitment: Optional[str] = None,
    ) -> str:
        """
        Send signed transaction

        Resending the same signed bytes to another endpoint is safe: the
        ledger deduplicates by signature.

        Args:
            signed_tx: Signed transaction bytes
            skip_preflight: Skip preflight simulation

        Returns:
            Transaction signature (base58)

        Raises:
            BroadcastRejected: The ledger refused the transaction
            EndpointUnavailable: No endpoint accepted the request
        """
        tx_data = base64.b64encode(signed_tx).decode("ascii")
        skip = skip_preflight if skip_preflight is not None else self._config.skip_preflight

        params = [
            tx_data,
            {
                "skipPreflight": skip,
                "preflightCommitment": preflight_commitment or self._config.preflight_commitment,
                "encoding": "base64",
            },
        ]

        try:
            signature = self.call("sendTransaction", params)
        except RpcResponseError as e:
            rejected = BroadcastRejected.from_rpc(e)
            logger.warning(f"Transaction rejected: {rejected.message}")
            raise rejected from e

        if not signature:
            raise BroadcastRejected("sendTransaction returned no signature")

        logger.info(f"Transaction sent: {signature}")
        return signature

    def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        """
        Single status lookup for a signature

        Returns:
            Status dict (slot, err, confirmationStatus) or None if unknown
        """
        result = self.call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        values = (result or {}).get("value") or []
        return values[0] if values else None

    def confirm(
        self,
        signature: str,
        commitment: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> ConfirmationOutcome:
        """
        Wait for transaction confirmation

        Args:
            signature: Transaction signature
            commitment: Target commitment level
            timeout_seconds: Max wait time
            poll_interval: Delay between status polls

        Returns:
            CONFIRMED when the target commitment is reached,
            FAILED_ON_CHAIN if the transaction landed with an error,
            TIMED_OUT if no verdict was reached (status unknown, not a failure)
        """
        target = commitment or self.commitment
        timeout_seconds = timeout_seconds if timeout_seconds is not None else self._config.confirmation_timeout
        interval = poll_interval if poll_interval is not None else self._config.confirmation_poll_interval

        deadline = time.monotonic() + timeout_seconds
        last_status: Optional[Dict[str, Any]] = None

        while True:
            try:
                status = self.get_signature_status(signature)
                if status:
                    last_status = status
                    if status.get("err"):
                        logger.warning(
                            f"Transaction {signature} failed on-chain: {status.get('err')}"
                        )
                        return ConfirmationOutcome(
                            status=ConfirmationStatus.FAILED_ON_CHAIN,
                            signature=signature,
                            reason=str(status.get("err")),
                            slot=status.get("slot"),
                            observed_at=time.time(),
                        )
                    if commitment_reached(status.get("confirmationStatus"), target):
                        return ConfirmationOutcome(
                            status=ConfirmationStatus.CONFIRMED,
                            signature=signature,
                            slot=status.get("slot"),
                            observed_at=time.time(),
                        )
            except RpcError as e:
                logger.debug(f"Error checking transaction status: {e}")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            time.sleep(min(interval, remaining))

        if last_status is None:
            reason = "never seen on chain"
        else:
            reason = f"last status: {last_status.get('confirmationStatus', 'unknown')}"
        logger.warning(f"Transaction {signature} confirmation timeout ({reason})")

        return ConfirmationOutcome(
            status=ConfirmationStatus.TIMED_OUT,
            signature=signature,
            reason=reason,
            slot=last_status.get("slot") if last_status else None,
            observed_at=time.time(),
        )

    def get_token_balance(
        self,
        owner: str,
        mint: str,
        commitment: Optional[str] = None,
    ) -> int:
        """
        Get SPL token balance of a wallet in base units

        Sums every token account the owner holds for the mint; no account
        means a zero balance.

        Args:
            owner: Wallet address
            mint: Token mint address

        Returns:
            Balance in the token's base units
        """
        params = [
            owner,
            {"mint": mint},
            {"encoding": "jsonParsed", "commitment": commitment or self.commitment},
        ]
        result = self.call("getTokenAccountsByOwner", params)
        if not isinstance(result, dict) or "value" not in result:
            raise RpcError.invalid_response(self._current_url(), "getTokenAccountsByOwner result missing value")

        total = 0
        for account in result["value"] or []:
            try:
                amount = account["account"]["data"]["parsed"]["info"]["tokenAmount"]["amount"]
            except (KeyError, TypeError) as e:
                raise RpcError.invalid_response(
                    self._current_url(), f"token account without parsed amount: {e}"
                ) from e
            total += int(amount)
        return total

    def get_block_height(self, commitment: Optional[str] = None) -> int:
        """Get current block height"""
        params = [{"commitment": commitment or self.commitment}]
        return int(self.call("getBlockHeight", params))

    def is_blockhash_valid(self, blockhash: str, commitment: Optional[str] = None) -> bool:
        """Whether transactions built on a blockhash can still land"""
        params = [blockhash, {"commitment": commitment or self.commitment}]
        result = self.call("isBlockhashValid", params)
        return bool((result or {}).get("value"))

    def get_slot(self, commitment: Optional[str] = None) -> int:
        """Get current slot"""
        params = [{"commitment": commitment or self.commitment}]
        return self.call("getSlot", params)

    def _current_url(self) -> Optional[str]:
        current = self._pool.current
        return current.url if current else None

    def close(self):
        """Close HTTP client"""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
