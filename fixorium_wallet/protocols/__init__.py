"""
External protocol collaborators

The settlement engine only depends on the Quoter protocol; JupiterAPI is
the production implementation.
"""

from typing import Protocol, runtime_checkable

from ..types import QuoteResult
from .jupiter import JupiterAPI


@runtime_checkable
class Quoter(Protocol):
    """
    Exchange quoting service

    Implementations must provide:
    - get_quote(): price a swap of an exact input amount
    - get_swap_transaction(): unsigned swap transaction for that quote
    """

    def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int = None,
    ) -> QuoteResult:
        ...

    def get_swap_transaction(self, quote: QuoteResult, user_pubkey: str) -> bytes:
        ...


__all__ = ["Quoter", "JupiterAPI"]
