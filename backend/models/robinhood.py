"""
Robinhood-related Pydantic models

Request/response models for the API routes plus the value objects the
Robinhood connector hands back to callers. Value objects are frozen: they
are recomputed on every call and never mutated in place.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError


# ---------------------------------------------------------------------------
# Credentials / API requests
# ---------------------------------------------------------------------------

class RobinhoodCredentials(BaseModel):
    """
    Robinhood login credentials

    SECURITY: transient, exists only for the duration of one login call.
    Never persisted and never logged.
    """
    email: str
    password: str
    mfa_code: Optional[str] = None
    challenge_id: Optional[str] = None

    def __repr__(self) -> str:
        return f"RobinhoodCredentials(email='{self.email}', password='***')"

    __str__ = __repr__


class RobinhoodAction(str, Enum):
    LOGIN = "login"
    CONTINUE = "continue"
    RESET_DEVICE = "reset_device"
    NEW_VERIFICATION = "new_verification"


class RobinhoodActionRequest(BaseModel):
    """Body of POST /robinhood"""
    action: str
    email: Optional[str] = None
    password: Optional[str] = None
    mfa_code: Optional[str] = None
    challenge_id: Optional[str] = None

    def to_credentials(self) -> RobinhoodCredentials:
        return RobinhoodCredentials(
            email=self.email or "",
            password=self.password or "",
            mfa_code=self.mfa_code,
            challenge_id=self.challenge_id,
        )


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------

class SmsChallenge(BaseModel):
    kind: Literal["sms"] = "sms"
    id: str
    remaining_attempts: Optional[int] = None

    class Config:
        frozen = True


class EmailChallenge(BaseModel):
    kind: Literal["email"] = "email"
    id: str
    remaining_attempts: Optional[int] = None

    class Config:
        frozen = True


class AppChallenge(BaseModel):
    kind: Literal["app"] = "app"
    id: str
    remaining_attempts: Optional[int] = None

    class Config:
        frozen = True


class PromptChallenge(BaseModel):
    """Push notification approval in the Robinhood app"""
    kind: Literal["prompt"] = "prompt"
    id: str

    class Config:
        frozen = True


Challenge = Annotated[
    Union[SmsChallenge, EmailChallenge, AppChallenge, PromptChallenge],
    Field(discriminator="kind"),
]
CodeChallenge = Union[SmsChallenge, EmailChallenge, AppChallenge]

_challenge_adapter = TypeAdapter(Challenge)


def parse_challenge(raw: Optional[dict], default_kind: str = "sms") -> Optional[Challenge]:
    """
    Decode a broker challenge descriptor into a typed challenge

    Accepts the shapes Robinhood uses ({"id", "type", "remaining_attempts"}).
    Returns None when the descriptor has no id. Unknown kinds fall back to
    `default_kind` so a code entry screen can still be shown.
    """
    if not isinstance(raw, dict) or not raw.get("id"):
        return None

    kind = raw.get("type") or raw.get("kind") or default_kind
    if kind not in ("sms", "email", "app", "prompt"):
        kind = default_kind

    data = {"kind": kind, "id": str(raw["id"])}
    if kind != "prompt" and raw.get("remaining_attempts") is not None:
        data["remaining_attempts"] = raw["remaining_attempts"]

    try:
        return _challenge_adapter.validate_python(data)
    except ValidationError:
        data.pop("remaining_attempts", None)
        return _challenge_adapter.validate_python(data)


# ---------------------------------------------------------------------------
# Login results / sessions
# ---------------------------------------------------------------------------

class LoginState(str, Enum):
    SUCCESS = "success"
    MFA_REQUIRED = "mfa_required"
    DEVICE_VERIFICATION_REQUIRED = "device_verification_required"
    SHOULD_RETRY = "should_retry"
    FAILED = "failed"


class LoginResult(BaseModel):
    """Outcome of one login attempt"""
    state: LoginState
    challenge_id: Optional[str] = None
    challenge_type: Optional[Literal["sms", "email", "app", "prompt"]] = None
    remaining_attempts: Optional[int] = None
    pending: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state == LoginState.SUCCESS

    @property
    def mfa_required(self) -> bool:
        return self.state == LoginState.MFA_REQUIRED

    @property
    def device_verification_required(self) -> bool:
        return self.state == LoginState.DEVICE_VERIFICATION_REQUIRED

    @property
    def should_retry(self) -> bool:
        return self.state == LoginState.SHOULD_RETRY

    @classmethod
    def succeeded(cls) -> "LoginResult":
        return cls(state=LoginState.SUCCESS)

    @classmethod
    def retry(cls) -> "LoginResult":
        return cls(state=LoginState.SHOULD_RETRY)

    @classmethod
    def failed(cls, error: str) -> "LoginResult":
        return cls(state=LoginState.FAILED, error=error)

    @classmethod
    def mfa(cls, challenge: CodeChallenge, error: Optional[str] = None) -> "LoginResult":
        return cls(
            state=LoginState.MFA_REQUIRED,
            challenge_id=challenge.id,
            challenge_type=challenge.kind,
            remaining_attempts=challenge.remaining_attempts,
            error=error,
        )

    @classmethod
    def device_verification(cls, challenge_id: Optional[str], error: str) -> "LoginResult":
        return cls(
            state=LoginState.DEVICE_VERIFICATION_REQUIRED,
            challenge_id=challenge_id,
            challenge_type="prompt",
            pending=True,
            error=error,
        )

    def to_response(self) -> dict:
        """Serialize for the API, including the boolean flags the UI branches on"""
        data = self.model_dump(mode="json", exclude_none=True)
        data.update(
            success=self.success,
            mfa_required=self.mfa_required,
            device_verification_required=self.device_verification_required,
            should_retry=self.should_retry,
        )
        return data


class RobinhoodSessionData(BaseModel):
    """
    Authenticated Robinhood session for one user

    SECURITY: contains the bearer token. Never log or return to clients.
    """
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime
    account_id: Optional[str] = None
    account_url: Optional[str] = None

    class Config:
        frozen = True

    def is_valid(self, now: datetime) -> bool:
        return self.expires_at > now

    def __repr__(self) -> str:
        return f"RobinhoodSessionData(expires_at={self.expires_at.isoformat()}, account_id={self.account_id!r})"

    __str__ = __repr__


class ConnectionStatus(BaseModel):
    connected: bool
    expires_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Portfolio value objects
# ---------------------------------------------------------------------------

class PortfolioSnapshot(BaseModel):
    """Aggregated portfolio totals, derived fresh per request"""
    total_value: float
    equity: float
    cash: float
    buying_power: float
    day_change: float
    day_change_percent: float
    stocks_equity: Optional[float] = None
    crypto_equity: Optional[float] = None
    options_equity: Optional[float] = None
    crypto_buying_power: Optional[float] = None
    options_buying_power: Optional[float] = None
    source: Literal["unified", "fallback"] = "unified"

    class Config:
        frozen = True


class Position(BaseModel):
    symbol: str
    name: str
    quantity: float
    average_cost: float
    current_price: float
    market_value: float
    total_gain_loss: float
    total_gain_loss_percent: float

    class Config:
        frozen = True


class OptionPosition(BaseModel):
    symbol: str
    option_type: Literal["call", "put"]
    strike_price: float
    expiration_date: str
    quantity: float
    average_cost: float
    current_price: float
    market_value: float
    total_gain_loss: float
    total_gain_loss_percent: float
    position_type: Literal["long", "short"]

    class Config:
        frozen = True


class CryptoHolding(BaseModel):
    symbol: str
    name: str
    quantity: float
    average_cost: float
    current_price: float
    market_value: float
    total_gain_loss: float
    total_gain_loss_percent: float

    class Config:
        frozen = True


class Quote(BaseModel):
    symbol: str
    last_price: float
    change: float
    change_percent: float
    bid_price: float
    ask_price: float
    previous_close: float
    extended_hours_price: Optional[float] = None
    trading_halted: bool = False

    class Config:
        frozen = True


class OptionTrade(BaseModel):
    """One leg of an executed (or pending) option order"""
    symbol: str
    option_type: Literal["call", "put"]
    strike_price: float
    expiration_date: str
    side: Literal["buy", "sell"]
    position_effect: Literal["open", "close"]
    quantity: float
    price: float
    total_value: float
    state: str
    executed_at: str
    order_id: str

    class Config:
        frozen = True


class AccountSummary(BaseModel):
    account_number: str
    buying_power: float
    cash: float
    cash_available_for_withdrawal: float
    account_type: Optional[str] = None
    state: Optional[str] = None

    class Config:
        frozen = True


class RobinhoodLogoutResponse(BaseModel):
    success: bool
    message: str


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
