"""
Bearer tokens for registered sessions.

A token's subject is the session id it was issued to.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from pydantic import BaseModel


# Override in production via KER_RELAY_SECRET
SECRET_KEY = os.environ.get("KER_RELAY_SECRET", "dev-relay-secret-change-this-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 24 hours


class Token(BaseModel):
    """Token response model"""
    access_token: str
    token_type: str
    session_id: str


def create_access_token(session_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        session_id: Session the token is issued to
        expires_delta: Token expiration time

    Returns:
        Encoded JWT token
    """
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    return jwt.encode({"sub": session_id, "exp": expire}, SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: Optional[str]) -> Optional[str]:
    """
    Verify a JWT token and extract the session id.

    Args:
        token: JWT token to verify

    Returns:
        Session id if valid, None otherwise
    """
    if not token:
        return None
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    session_id = payload.get("sub")
    return session_id if isinstance(session_id, str) else None
