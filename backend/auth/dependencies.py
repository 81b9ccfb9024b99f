"""
Authentication Dependencies for FastAPI Routes

Supabase Auth JWT verification using JWKS.
No secrets needed - just your SUPABASE_URL from .env
"""
from fastapi import Header, HTTPException, status
from typing import Optional
import logging
import jwt
import requests

from config import Config

logger = logging.getLogger(__name__)

# Cache for JWKS keys (process lifetime)
_jwks_cache = None


def _get_jwks():
    """Fetch public JWKS keys from Supabase"""
    global _jwks_cache

    if _jwks_cache is not None:
        return _jwks_cache

    jwks_url = f"{Config.SUPABASE_URL}/auth/v1/.well-known/jwks.json"
    response = requests.get(jwks_url, timeout=5)
    response.raise_for_status()
    _jwks_cache = response.json()
    return _jwks_cache


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


async def get_current_user_id(
    authorization: Optional[str] = Header(None, description="Bearer token from Supabase Auth")
) -> str:
    """
    Verify Supabase JWT token and extract user ID.

    The frontend sends: Authorization: Bearer <supabase_jwt_token>
    The returned user_id keys the user's Robinhood session.

    Raises:
        HTTPException: If token is missing, invalid, or expired
    """
    if not authorization:
        raise _unauthorized("Missing Authorization header")

    # Extract token from "Bearer <token>"
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _unauthorized("Invalid authorization format. Use: Bearer <token>")

    token = parts[1]

    try:
        kid = jwt.get_unverified_header(token).get("kid")
        if not kid:
            raise _unauthorized("Invalid token: missing key ID")

        # Fetch JWKS and find matching key (RSA or EC)
        signing_key = None
        for key in _get_jwks().get("keys", []):
            if key.get("kid") == kid:
                signing_key = jwt.PyJWK(key).key
                break

        if signing_key is None:
            raise _unauthorized("Invalid token: unknown key")

        payload = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256", "ES256"],
            audience="authenticated",
            options={"verify_exp": True}
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except requests.RequestException as e:
        logger.error(f"Failed to fetch JWKS: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable"
        )
    except jwt.PyJWTError as e:
        logger.warning(f"Token verification failed: {e}")
        raise _unauthorized("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise _unauthorized("Invalid token: missing user ID")

    return user_id
