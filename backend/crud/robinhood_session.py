"""
Async CRUD operations for Robinhood sessions

Token columns hold Fernet ciphertext; encryption happens in the session store,
never here.
"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete
from typing import Optional
from datetime import datetime
from models.db import RobinhoodSession


async def get_session(db: AsyncSession, user_id: str) -> Optional[RobinhoodSession]:
    """Get the Robinhood session row for a user"""
    result = await db.execute(
        select(RobinhoodSession).where(RobinhoodSession.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def upsert_session(
    db: AsyncSession,
    user_id: str,
    encrypted_access_token: str,
    token_expires_at: datetime,
    encrypted_refresh_token: Optional[str] = None,
    account_id: Optional[str] = None,
    account_url: Optional[str] = None
) -> RobinhoodSession:
    """
    Create or overwrite the session for a user

    Args:
        db: Async database session
        user_id: Application user ID
        encrypted_access_token: Fernet-encrypted access token
        token_expires_at: Absolute expiry (timezone-aware)
        encrypted_refresh_token: Fernet-encrypted refresh token, if Robinhood issued one
        account_id: Robinhood account number
        account_url: Robinhood account resource URL

    Returns:
        The stored RobinhoodSession
    """
    db_session = await get_session(db, user_id)
    if db_session is None:
        db_session = RobinhoodSession(user_id=user_id)
        db.add(db_session)

    db_session.encrypted_access_token = encrypted_access_token
    db_session.encrypted_refresh_token = encrypted_refresh_token
    db_session.token_expires_at = token_expires_at
    db_session.account_id = account_id
    db_session.account_url = account_url

    await db.commit()
    await db.refresh(db_session)
    return db_session


async def delete_session(db: AsyncSession, user_id: str) -> bool:
    """Permanently delete a user's session"""
    result = await db.execute(
        delete(RobinhoodSession).where(RobinhoodSession.user_id == user_id)
    )
    await db.commit()
    return result.rowcount > 0

