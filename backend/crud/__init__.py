"""
CRUD operations for database models
"""
from .robinhood_session import (
    get_session,
    upsert_session,
    delete_session
)

__all__ = [
    'get_session',
    'upsert_session',
    'delete_session',
]
