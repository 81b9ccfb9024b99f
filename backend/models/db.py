"""
SQLAlchemy database models
"""
from sqlalchemy import Column, String, DateTime, Text
from sqlalchemy.sql import func
from database import Base


class RobinhoodSession(Base):
    """
    Stores encrypted Robinhood authentication tokens per application user

    SECURITY:
    - access_token and refresh_token are encrypted using Fernet (AES-128)
    - Never log or expose these fields
    - Tokens are decrypted only when making API calls
    - Credentials and device tokens are never stored
    """
    __tablename__ = "robinhood_sessions"

    # Primary key (Supabase user ID): one session per user
    user_id = Column(String, primary_key=True, index=True)

    # Encrypted tokens (stored as base64-encoded ciphertext)
    encrypted_access_token = Column(Text, nullable=False)
    encrypted_refresh_token = Column(Text, nullable=True)

    # Account enrichment (best effort at login)
    account_id = Column(String, nullable=True)
    account_url = Column(String, nullable=True)

    # Token metadata
    token_expires_at = Column(DateTime(timezone=True), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<RobinhoodSession(user_id='{self.user_id}', expires_at={self.token_expires_at})>"
