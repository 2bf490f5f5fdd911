"""
Session-level modules: balance tracking and settlement
"""

from .balance import BalanceTracker
from .settlement import SettlementOrchestrator

__all__ = ["BalanceTracker", "SettlementOrchestrator"]
