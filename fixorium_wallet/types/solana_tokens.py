"""
Token Catalog

Known token mints with decimals, plus base-unit conversion.
Only `decimals` feeds settlement logic; names and symbols are informational.
"""

from decimal import Decimal, ROUND_DOWN
from typing import Dict, Optional, Protocol, runtime_checkable

from .common import Token


NATIVE_SOL_MINT = "So11111111111111111111111111111111111111112"

# Prebuilt Token objects for the wallet's popular list (keys are uppercase)
SOLANA_TOKENS: Dict[str, Token] = {
    "SOL": Token(mint=NATIVE_SOL_MINT, symbol="SOL", decimals=9, name="Solana"),
    "WSOL": Token(mint=NATIVE_SOL_MINT, symbol="WSOL", decimals=9, name="Wrapped SOL"),
    "USDC": Token(mint="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v", symbol="USDC", decimals=6, name="USD Coin"),
    "USDT": Token(mint="Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB", symbol="USDT", decimals=6, name="Tether USD"),
    "MSOL": Token(mint="mSoLzYCxHdYgdzU16g5QSh3i5K3z3KZK7ytfqcJm7So", symbol="mSOL", decimals=9, name="Marinade SOL"),
    "BSOL": Token(mint="bSo13r4TkiE4KumL71LsHTPpL2euBYLFx6h9HP3piy1", symbol="bSOL", decimals=9, name="BlazeStake SOL"),
    "BONK": Token(mint="DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263", symbol="BONK", decimals=5, name="Bonk"),
    "JUP": Token(mint="JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN", symbol="JUP", decimals=6, name="Jupiter"),
}

# Mint address -> Token (WSOL alias collapses onto SOL)
TOKENS_BY_MINT: Dict[str, Token] = {}
for _token in SOLANA_TOKENS.values():
    TOKENS_BY_MINT.setdefault(_token.mint, _token)


@runtime_checkable
class TokenCatalog(Protocol):
    """Resolves token metadata for a mint address"""

    def get_token(self, mint: str) -> Optional[Token]:
        ...


class StaticTokenCatalog:
    """
    Catalog backed by the built-in token list plus caller-registered tokens

    Usage:
        catalog = StaticTokenCatalog()
        catalog.register(Token(mint="...", symbol="XYZ", decimals=6))
        decimals = catalog.decimals("EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v")
    """

    def __init__(self, extra: Optional[Dict[str, Token]] = None):
        self._by_mint: Dict[str, Token] = dict(TOKENS_BY_MINT)
        for token in (extra or {}).values():
            self._by_mint[token.mint] = token

    def register(self, token: Token) -> None:
        self._by_mint[token.mint] = token

    def get_token(self, mint: str) -> Optional[Token]:
        return self._by_mint.get(resolve_token_mint(mint))

    def decimals(self, mint: str) -> Optional[int]:
        token = self.get_token(mint)
        return token.decimals if token else None


def resolve_token_mint(token: str) -> str:
    """
    Resolve token symbol or mint address to mint address

    Unknown symbols are returned as-is.
    """
    token = token.strip()

    # Mint addresses are 32-44 base58 chars
    if len(token) > 30:
        return token

    upper = token.upper()
    if upper in SOLANA_TOKENS:
        return SOLANA_TOKENS[upper].mint

    return token


def get_token_decimals(mint: str) -> Optional[int]:
    """Get decimals for a known token mint or symbol"""
    token = TOKENS_BY_MINT.get(resolve_token_mint(mint))
    return token.decimals if token else None


def is_native_sol(mint: str) -> bool:
    return resolve_token_mint(mint) == NATIVE_SOL_MINT


def to_base_units(amount, decimals: int) -> int:
    """
    Convert a display amount to base units, rounding down

    Args:
        amount: Display amount (Decimal, str, int or float)
        decimals: Token decimals

    Returns:
        Amount in the token's smallest unit
    """
    if decimals < 0:
        raise ValueError(f"decimals must be non-negative, got {decimals}")
    value = Decimal(str(amount))
    scaled = (value * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return int(scaled)


def from_base_units(amount: int, decimals: int) -> Decimal:
    """Convert base units to a display amount"""
    return Decimal(amount) / (Decimal(10) ** decimals)
