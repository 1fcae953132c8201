from fastapi import APIRouter, Depends, HTTPException
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select
from pydantic import BaseModel
import logging

from database import get_session
from models import User
from security import create_access_token, get_current_user, get_password_hash, user_public, verify_password

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


class RegisterRequest(BaseModel):
    email: str
    password: str
    display_name: str


class LoginRequest(BaseModel):
    email: str
    password: str


def _auth_response(user: User) -> dict:
    return {"token": create_access_token(user.id), "user": user_public(user)}


@router.post("/register", status_code=201)
async def register(req: RegisterRequest, session: AsyncSession = Depends(get_session)):
    email = req.email.strip().lower()
    display_name = req.display_name.strip()

    if not email or "@" not in email:
        raise HTTPException(status_code=400, detail="Invalid email address")
    if len(req.password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not display_name:
        raise HTTPException(status_code=400, detail="Display name is required")

    existing = (await session.exec(select(User).where(User.email == email))).first()
    if existing:
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(email=email, password_hash=get_password_hash(req.password), display_name=display_name)
    session.add(user)
    await session.commit()
    await session.refresh(user)

    logger.info(f"Registered user {user.id} ({display_name})")
    return _auth_response(user)


@router.post("/login")
async def login(creds: LoginRequest, session: AsyncSession = Depends(get_session)):
    stmt = select(User).where(User.email == creds.email.strip().lower())
    user = (await session.exec(stmt)).first()

    if not user or not verify_password(creds.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    return _auth_response(user)


@router.get("/me")
async def me(user: User = Depends(get_current_user)):
    return {"user": user_public(user)}
