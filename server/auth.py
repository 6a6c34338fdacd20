"""
Authentication module for JWT token management.

Tokens carry the user id as subject and are issued on register/login.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from pydantic import BaseModel


ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24 * 7  # 7 days


class UserOut(BaseModel):
    """Public user fields returned on register/login"""
    id: str
    username: str
    publicKey: str


class Token(BaseModel):
    """Token response model"""
    token: str
    user: UserOut


def create_access_token(data: dict, secret_key: str, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Data to encode in the token
        secret_key: HMAC signing key
        expires_delta: Token expiration time

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()
    if expires_delta is None:
        expires_delta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": datetime.now(timezone.utc) + expires_delta})
    return jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


def verify_token(token: Optional[str], secret_key: str) -> Optional[str]:
    """
    Verify a JWT token and extract the user id.

    Returns:
        User id if valid, None otherwise
    """
    if not token:
        return None
    try:
        payload = jwt.decode(token, secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None
    return payload.get("sub")
