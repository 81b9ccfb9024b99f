"""
Robinhood connection and portfolio routes

SECURITY:
- Authentication required: every route acts on the caller's own Robinhood session
- Credentials in POST bodies are used for one login attempt and never stored
- Access tokens are never returned
"""
from typing import Awaitable, List, Optional, TypeVar

from fastapi import APIRouter, Depends, HTTPException, status
import logging

from auth.dependencies import get_current_user_id
from models.robinhood import (
    AccountSummary,
    ConnectionStatus,
    CryptoHolding,
    OptionPosition,
    OptionTrade,
    PortfolioSnapshot,
    Position,
    Quote,
    RobinhoodAction,
    RobinhoodActionRequest,
    RobinhoodCredentials,
    RobinhoodLogoutResponse,
)
from modules.robinhood import NotConnectedError, RobinhoodAPIError
from modules.robinhood_tools import RobinhoodTools, get_robinhood_tools

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/robinhood", tags=["robinhood"])

T = TypeVar("T")


async def _run(user_id: str, call: Awaitable[T]) -> T:
    """Map connector errors onto HTTP responses"""
    try:
        return await call
    except NotConnectedError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"needs_connection": True, "message": str(e)}
        )
    except RobinhoodAPIError as e:
        logger.error(f"Robinhood upstream error for user {user_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.get("/status", response_model=ConnectionStatus)
async def get_status(
    user_id: str = Depends(get_current_user_id),
    tools: RobinhoodTools = Depends(get_robinhood_tools)
):
    """Whether the caller has a valid Robinhood session"""
    return await tools.connection_status(user_id)


@router.post("")
async def robinhood_action(
    request: RobinhoodActionRequest,
    user_id: str = Depends(get_current_user_id),
    tools: RobinhoodTools = Depends(get_robinhood_tools)
):
    """
    Drive the login flow

    Actions:
    - login: submit credentials (plus mfa_code/challenge_id when answering a code challenge)
    - continue: the user approved the login in the Robinhood app, resubmit
    - new_verification: start over with a fresh device (new challenge)
    - reset_device: forget the device token only

    Returns the LoginResult; challenges are successful responses with
    mfa_required / device_verification_required set.
    """
    try:
        action = RobinhoodAction(request.action)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid action")

    if action == RobinhoodAction.RESET_DEVICE:
        await tools.reset_verification(user_id)
        return {"success": True}

    if not request.email or not request.password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    if action == RobinhoodAction.LOGIN:
        result = await tools.login(user_id, request.to_credentials())
    else:
        # Verification retries resubmit email/password only
        credentials = RobinhoodCredentials(email=request.email, password=request.password)
        if action == RobinhoodAction.CONTINUE:
            result = await tools.continue_verification(user_id, credentials)
        else:
            result = await tools.request_new_verification(user_id, credentials)

    return result.to_response()


@router.delete("", response_model=RobinhoodLogoutResponse)
async def disconnect(
    user_id: str = Depends(get_current_user_id),
    tools: RobinhoodTools = Depends(get_robinhood_tools)
):
    """Logout from Robinhood and clear the session"""
    await tools.logout(user_id)
    return RobinhoodLogoutResponse(success=True, message="Logged out successfully")


@router.get("/account", response_model=Optional[AccountSummary])
async def get_account(
    user_id: str = Depends(get_current_user_id),
    tools: RobinhoodTools = Depends(get_robinhood_tools)
):
    return await _run(user_id, tools.get_account(user_id))


@router.get("/portfolio", response_model=PortfolioSnapshot)
async def get_portfolio(
    user_id: str = Depends(get_current_user_id),
    tools: RobinhoodTools = Depends(get_robinhood_tools)
):
    """Portfolio totals (unified account endpoint, or rebuilt from positions)"""
    return await _run(user_id, tools.get_portfolio(user_id))


@router.get("/positions", response_model=List[Position])
async def get_positions(
    user_id: str = Depends(get_current_user_id),
    tools: RobinhoodTools = Depends(get_robinhood_tools)
):
    return await _run(user_id, tools.get_positions(user_id))


@router.get("/options/positions", response_model=List[OptionPosition])
async def get_option_positions(
    user_id: str = Depends(get_current_user_id),
    tools: RobinhoodTools = Depends(get_robinhood_tools)
):
    return await _run(user_id, tools.get_option_positions(user_id))


@router.get("/options/trades/today", response_model=List[OptionTrade])
async def get_todays_option_trades(
    user_id: str = Depends(get_current_user_id),
    tools: RobinhoodTools = Depends(get_robinhood_tools)
):
    """Option order legs created today (market time), newest first"""
    return await _run(user_id, tools.get_todays_option_trades(user_id))


@router.get("/crypto/holdings", response_model=List[CryptoHolding])
async def get_crypto_holdings(
    user_id: str = Depends(get_current_user_id),
    tools: RobinhoodTools = Depends(get_robinhood_tools)
):
    return await _run(user_id, tools.get_crypto_holdings(user_id))


@router.get("/quotes/{symbol}", response_model=Quote)
async def get_quote(
    symbol: str,
    user_id: str = Depends(get_current_user_id),
    tools: RobinhoodTools = Depends(get_robinhood_tools)
):
    return await _run(user_id, tools.get_quote(symbol, user_id))
