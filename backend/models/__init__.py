"""
Pydantic models for the Robinhood connector API
"""
from .robinhood import (
    RobinhoodCredentials,
    RobinhoodAction,
    RobinhoodActionRequest,
    SmsChallenge,
    EmailChallenge,
    AppChallenge,
    PromptChallenge,
    Challenge,
    CodeChallenge,
    parse_challenge,
    LoginState,
    LoginResult,
    RobinhoodSessionData,
    ConnectionStatus,
    PortfolioSnapshot,
    Position,
    OptionPosition,
    CryptoHolding,
    Quote,
    OptionTrade,
    AccountSummary,
    RobinhoodLogoutResponse,
)

__all__ = [
    "RobinhoodCredentials",
    "RobinhoodAction",
    "RobinhoodActionRequest",
    "SmsChallenge",
    "EmailChallenge",
    "AppChallenge",
    "PromptChallenge",
    "Challenge",
    "CodeChallenge",
    "parse_challenge",
    "LoginState",
    "LoginResult",
    "RobinhoodSessionData",
    "ConnectionStatus",
    "PortfolioSnapshot",
    "Position",
    "OptionPosition",
    "CryptoHolding",
    "Quote",
    "OptionTrade",
    "AccountSummary",
    "RobinhoodLogoutResponse",
]
