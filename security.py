from datetime import datetime, timedelta, timezone
from typing import Optional
import hashlib
import logging
import os
import uuid

import bcrypt
from dotenv import load_dotenv
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlmodel.ext.asyncio.session import AsyncSession

from database import get_session
from models import User

load_dotenv()

logger = logging.getLogger(__name__)


def _load_jwt_secret() -> str:
    secret = os.environ.get("JWT_SECRET")
    if not secret:
        raise RuntimeError("JWT_SECRET is required and must be set in environment")
    weak_values = {
        "changeme",
        "change_me",
        "secret",
        "jwt_secret",
        "password",
        "admin123",
    }
    if len(secret) < 32 or secret.strip().lower() in weak_values:
        raise RuntimeError("JWT_SECRET is too weak; use a random secret with at least 32 characters")
    return secret


SECRET_KEY = _load_jwt_secret()
ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))

security = HTTPBearer(auto_error=False)


def _prehash(password: str) -> bytes:
    # bcrypt only looks at the first 72 bytes
    return hashlib.sha256(password.encode("utf-8")).digest()


def get_password_hash(password: str) -> str:
    hashed = bcrypt.hashpw(_prehash(password), bcrypt.gensalt())
    return hashed.decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(_prehash(plain_password), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(user_id: uuid.UUID, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": str(user_id), "exp": expire, "type": "access"}
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> uuid.UUID:
    """Return the user id carried by a valid access token.

    Raises ValueError for anything else (bad signature, expiry, wrong type,
    malformed subject) so both HTTP and socket callers can map it.
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        raise ValueError(f"Invalid token: {e}") from e
    if payload.get("type") != "access":
        raise ValueError("Invalid token type")
    try:
        return uuid.UUID(str(payload.get("sub")))
    except ValueError as e:
        raise ValueError("Invalid token subject") from e


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    session: AsyncSession = Depends(get_session),
) -> User:
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        user_id = decode_access_token(credentials.credentials)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await session.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


def user_public(user: User) -> dict:
    """User fields that are safe to send to clients."""
    return {
        "id": str(user.id),
        "email": user.email,
        "display_name": user.display_name,
        "total_points": user.total_points,
        "medals": user.medals,
        "is_admin": user.is_admin,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }
