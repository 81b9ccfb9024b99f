"""
Business logic and service modules
"""
from .robinhood_tools import RobinhoodTools, get_robinhood_tools

__all__ = [
    "RobinhoodTools",
    "get_robinhood_tools",
]
