"""
Jupiter API Client

REST API client for the Jupiter swap aggregator, used as the exchange
quoting collaborator.
"""

import base64
import logging
import time
from decimal import Decimal
from typing import Optional

import httpx

from ...types import QuoteResult
from ...config import config as global_config
from ...errors import QuoteError
from ...infra.retry import classify_error

logger = logging.getLogger(__name__)


class JupiterAPI:
    """
    Jupiter REST API client

    Provides:
    - Swap quotes
    - Unsigned swap transactions for an accepted quote

    Usage:
        api = JupiterAPI()
        quote = api.get_quote("SOL_MINT", "USDC_MINT", 1000000000)
        tx_bytes = api.get_swap_transaction(quote, user_pubkey)
    """

    def __init__(
        self,
        timeout: float = None,
        max_retries: int = None,
        quote_url: str = None,
        swap_url: str = None,
        max_accounts: int = None,
        retry_delay: float = 0.5,
    ):
        """
        Initialize Jupiter API client

        Args:
            timeout: Request timeout in seconds (default from config)
            max_retries: Max attempts per request (default from config)
            quote_url: Quote API URL (default from config)
            swap_url: Swap API URL (default from config)
            max_accounts: Route account limit (default from config)
            retry_delay: Base delay between attempts, doubled each retry
        """
        self._timeout = timeout if timeout is not None else global_config.jupiter.timeout
        self._max_retries = max(1, max_retries if max_retries is not None else global_config.jupiter.max_retries)
        self._quote_url = quote_url if quote_url is not None else global_config.jupiter.quote_url
        self._swap_url = swap_url if swap_url is not None else global_config.jupiter.swap_url
        self._max_accounts = max_accounts if max_accounts is not None else global_config.jupiter.max_accounts
        self._retry_delay = retry_delay
        self._client: Optional[httpx.Client] = None

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client"""
        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout)
        return self._client

    def _request(self, operation: str, send) -> dict:
        """
        Run one HTTP request with retries on transient failures

        Args:
            operation: Name used in log lines and errors
            send: Callable taking the client and returning a response
        """
        last_error: Optional[Exception] = None

        for attempt in range(self._max_retries):
            try:
                response = send(self._get_client())
                if response.status_code == 400:
                    # Jupiter answers 400 for unroutable pairs and bad params
                    raise QuoteError(
                        f"Jupiter {operation} rejected: {response.text[:200]}",
                        recoverable=False,
                    )
                response.raise_for_status()
                return response.json()

            except QuoteError:
                raise
            except httpx.HTTPError as e:
                last_error = e
            except ValueError as e:
                raise QuoteError(f"Jupiter {operation} returned invalid JSON", e, recoverable=False) from e

            recoverable, _ = classify_error(last_error)
            if isinstance(last_error, httpx.HTTPStatusError):
                recoverable = recoverable or last_error.response.status_code >= 500

            logger.warning(f"Jupiter {operation} failed (attempt {attempt + 1}): {last_error}")
            if not recoverable or attempt == self._max_retries - 1:
                break
            time.sleep(self._retry_delay * (2 ** attempt))

        raise QuoteError(f"Jupiter {operation} failed: {last_error}", last_error)

    def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int = None,
        swap_mode: str = "ExactIn",
        only_direct_routes: bool = False,
    ) -> QuoteResult:
        """
        Get swap quote from Jupiter

        Args:
            input_mint: Input token mint address
            output_mint: Output token mint address
            amount: Amount in smallest units (lamports for SOL)
            slippage_bps: Slippage tolerance in basis points
            swap_mode: "ExactIn" or "ExactOut"
            only_direct_routes: Only use direct routes

        Returns:
            QuoteResult with swap details

        Raises:
            QuoteError: No route, or the service kept failing
        """
        if slippage_bps is None:
            slippage_bps = global_config.jupiter.default_slippage_bps

        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": slippage_bps,
            "swapMode": swap_mode,
            "onlyDirectRoutes": str(only_direct_routes).lower(),
            "maxAccounts": self._max_accounts,
        }

        data = self._request("quote", lambda client: client.get(self._quote_url, params=params))

        if data.get("error") or "outAmount" not in data:
            raise QuoteError.no_route(input_mint, output_mint, data.get("error") or "Unable to find route")

        in_amount = int(data.get("inAmount", amount))
        out_amount = int(data["outAmount"])
        price_impact = Decimal(str(data.get("priceImpactPct", 0)))

        route_plan = data.get("routePlan", [])
        route = [step.get("swapInfo", {}).get("label", "") for step in route_plan]

        # Prefer Jupiter's own threshold; fall back to applying slippage locally
        if data.get("otherAmountThreshold") is not None:
            min_out = int(data["otherAmountThreshold"])
        else:
            slippage_factor = Decimal(1) - Decimal(slippage_bps) / Decimal(10000)
            min_out = int(Decimal(out_amount) * slippage_factor)

        quote = QuoteResult(
            from_token=input_mint,
            to_token=output_mint,
            from_amount=in_amount,
            to_amount=out_amount,
            price_impact=price_impact,
            route=route,
            min_to_amount=min_out,
            slippage_bps=int(data.get("slippageBps", slippage_bps)),
            raw_response=data,  # Needed verbatim for the swap request
        )
        logger.debug(f"Jupiter quote: {quote}")
        return quote

    def get_swap_transaction(
        self,
        quote: QuoteResult,
        user_pubkey: str,
        wrap_and_unwrap_sol: bool = True,
        compute_unit_price_micro_lamports: Optional[int] = None,
    ) -> bytes:
        """
        Get unsigned swap transaction for an accepted quote

        Args:
            quote: Quote result from get_quote()
            user_pubkey: User wallet public key
            wrap_and_unwrap_sol: Auto wrap/unwrap SOL
            compute_unit_price_micro_lamports: Priority fee

        Returns:
            Serialized versioned transaction bytes (base64 decoded)
        """
        if not quote.raw_response:
            raise QuoteError("Quote has no raw response; request a fresh quote", recoverable=False)

        swap_request = {
            "quoteResponse": quote.raw_response,
            "userPublicKey": user_pubkey,
            "wrapAndUnwrapSol": wrap_and_unwrap_sol,
            "dynamicComputeUnitLimit": True,
        }

        if compute_unit_price_micro_lamports:
            swap_request["computeUnitPriceMicroLamports"] = compute_unit_price_micro_lamports

        data = self._request("swap", lambda client: client.post(self._swap_url, json=swap_request))

        swap_transaction = data.get("swapTransaction")
        if not swap_transaction:
            raise QuoteError("No swap transaction in response from Jupiter API", recoverable=False)

        return base64.b64decode(swap_transaction)

    def close(self):
        """Close HTTP client"""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
