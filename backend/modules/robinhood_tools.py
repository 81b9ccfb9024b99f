"""
Robinhood tools for portfolio access

Single entry point for routes and any other caller: connection status, the
login / verification flow and read-only portfolio views, all per user.

SECURITY NOTES:
- Credentials (email/password/MFA code) pass through once and are never stored or logged
- Access tokens never leave this module; stored sessions are Fernet-encrypted
- Each user has their own session (no global login state)
"""
import asyncio
import logging
from functools import lru_cache
from typing import List, Optional

from config import Config
from models.robinhood import (
    AccountSummary,
    ConnectionStatus,
    CryptoHolding,
    LoginResult,
    OptionPosition,
    OptionTrade,
    PortfolioSnapshot,
    Position,
    Quote,
    RobinhoodCredentials,
)
from modules.robinhood import (
    ChallengeResolver,
    DatabaseSessionStore,
    DeviceTokenRegistry,
    InMemorySessionStore,
    LoginOrchestrator,
    PortfolioAggregator,
    RobinhoodClient,
    RobinhoodSettings,
    SessionManager,
    SessionStore,
)
from modules.robinhood.challenges import Sleep
from modules.robinhood.sessions import Clock, utc_now

logger = logging.getLogger(__name__)


class RobinhoodTools:
    """
    Tools for interacting with Robinhood on behalf of many users

    Components are built once and shared; everything user-specific is keyed
    by user_id. Pass a store/clock/sleep to run fully in memory (tests).
    """

    def __init__(
        self,
        client: RobinhoodClient,
        store: SessionStore,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep
    ):
        self.client = client
        self.sessions = SessionManager(store, clock=clock)
        self.devices = DeviceTokenRegistry()
        self.challenges = ChallengeResolver(client, sleep=sleep)
        self.auth = LoginOrchestrator(client, self.sessions, self.devices, self.challenges, sleep=sleep)
        self.aggregator = PortfolioAggregator(client, self.sessions)

    @classmethod
    def from_config(cls) -> "RobinhoodTools":
        client = RobinhoodClient(RobinhoodSettings.from_config())
        if Config.ROBINHOOD_SESSION_STORE == "memory":
            logger.warning("Using in-memory Robinhood session store: sessions are lost on restart")
            store: SessionStore = InMemorySessionStore()
        else:
            from database import AsyncSessionLocal
            store = DatabaseSessionStore(AsyncSessionLocal)
        return cls(client, store)

    async def aclose(self) -> None:
        await self.client.aclose()

    # ─────────────────────────────────────────────────────────────────────────
    # Connection / login
    # ─────────────────────────────────────────────────────────────────────────

    async def connection_status(self, user_id: str) -> ConnectionStatus:
        return await self.sessions.status(user_id)

    async def login(self, user_id: str, credentials: RobinhoodCredentials) -> LoginResult:
        """
        Submit credentials (and the MFA code, when the user has one)

        Returns a LoginResult; challenges come back as mfa_required or
        device_verification_required, never as exceptions.
        """
        result = await self.auth.login(user_id, credentials)
        logger.info(f"Robinhood login for user {user_id}: {result.state.value}")
        return result

    async def continue_verification(self, user_id: str, credentials: RobinhoodCredentials) -> LoginResult:
        """User says they approved the login in the app: resubmit until it sticks"""
        result = await self.auth.continue_verification(user_id, credentials)
        logger.info(f"Robinhood verification for user {user_id}: {result.state.value}")
        return result

    async def request_new_verification(self, user_id: str, credentials: RobinhoodCredentials) -> LoginResult:
        return await self.auth.request_new_verification(user_id, credentials)

    async def reset_verification(self, user_id: str) -> None:
        await self.auth.reset(user_id)

    async def logout(self, user_id: str) -> bool:
        return await self.auth.logout(user_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Portfolio (all raise NotConnectedError without a valid session)
    # ─────────────────────────────────────────────────────────────────────────

    async def get_account(self, user_id: str) -> Optional[AccountSummary]:
        return await self.aggregator.account(user_id)

    async def get_portfolio(self, user_id: str) -> PortfolioSnapshot:
        return await self.aggregator.portfolio(user_id)

    async def get_positions(self, user_id: str) -> List[Position]:
        return await self.aggregator.positions(user_id)

    async def get_option_positions(self, user_id: str) -> List[OptionPosition]:
        return await self.aggregator.option_positions(user_id)

    async def get_crypto_holdings(self, user_id: str) -> List[CryptoHolding]:
        return await self.aggregator.crypto_holdings(user_id)

    async def get_quote(self, symbol: str, user_id: Optional[str] = None) -> Quote:
        """Quote for a symbol; uses the user's session when there is one"""
        return await self.aggregator.quote(symbol, user_id)

    async def get_todays_option_trades(self, user_id: str) -> List[OptionTrade]:
        return await self.aggregator.todays_option_trades(user_id)


@lru_cache(maxsize=1)
def get_robinhood_tools() -> RobinhoodTools:
    """Shared instance (FastAPI dependency); built on first use"""
    return RobinhoodTools.from_config()
