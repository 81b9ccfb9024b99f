"""
API route handlers
"""
from .robinhood import router as robinhood_router

__all__ = ["robinhood_router"]
