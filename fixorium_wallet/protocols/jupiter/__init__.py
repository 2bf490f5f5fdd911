"""
Jupiter aggregator integration
"""

from .api import JupiterAPI

__all__ = ["JupiterAPI"]
