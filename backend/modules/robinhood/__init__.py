"""
Robinhood connector: login challenges, sessions and portfolio aggregation
"""
from .client import RobinhoodClient, RobinhoodSettings
from .device_tokens import DeviceTokenRegistry, generate_device_token
from .challenges import ChallengeResolver
from .auth import LoginOrchestrator
from .sessions import (
    DatabaseSessionStore,
    InMemorySessionStore,
    SessionManager,
    SessionStore,
    UserLocks,
)
from .portfolio import PortfolioAggregator
from .errors import NotConnectedError, RobinhoodAPIError, RobinhoodError

__all__ = [
    "RobinhoodClient",
    "RobinhoodSettings",
    "DeviceTokenRegistry",
    "generate_device_token",
    "ChallengeResolver",
    "LoginOrchestrator",
    "DatabaseSessionStore",
    "InMemorySessionStore",
    "SessionManager",
    "SessionStore",
    "UserLocks",
    "PortfolioAggregator",
    "NotConnectedError",
    "RobinhoodAPIError",
    "RobinhoodError",
]
