# auth.py
"""
Caller identity.

Tokens are issued elsewhere; this service only decodes the bearer JWT to
learn who is calling.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from viewforge.settings import settings

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")


class CurrentUser(BaseModel):
    id: uuid.UUID
    email: Optional[str] = None


def create_access_token(user_id: uuid.UUID, expires_minutes: int = 60, email: Optional[str] = None) -> str:
    """Signs a token in the format `get_current_user` accepts. Used by tooling and tests."""
    payload = {
        "user_id": str(user_id),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])


async def get_current_user(token: str = Depends(oauth2_scheme)) -> CurrentUser:
    """Dependency to get the current caller from a bearer token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = decode_token(token)
        user_id = payload.get("user_id") or payload.get("sub")
        if user_id is None:
            raise credentials_exception
        return CurrentUser(id=uuid.UUID(str(user_id)), email=payload.get("email"))
    except (JWTError, ValueError):
        raise credentials_exception
