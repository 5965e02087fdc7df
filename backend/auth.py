"""
Authentication utilities - JWT based owner auth
"""
import bcrypt
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from config import JWT_SECRET
from database import get_db

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 24 hours

# Security scheme
security = HTTPBearer()


class Token(BaseModel):
    access_token: str
    token_type: str


class OwnerLogin(BaseModel):
    username: str
    password: str


class OwnerResponse(BaseModel):
    id: str
    username: str
    display_name: Optional[str]
    salon_type: str
    auto_sync_enabled: bool
    is_active: bool


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash using bcrypt directly"""
    return bcrypt.checkpw(plain_password.encode('utf-8'), hashed_password.encode('utf-8'))


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token"""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)


_OWNER_COLUMNS = "id, username, password_hash, display_name, salon_type, auto_sync_enabled, is_active"


def _owner_dict(owner) -> dict:
    return {
        "id": str(owner.id),
        "username": owner.username,
        "display_name": owner.display_name,
        "salon_type": owner.salon_type,
        "auto_sync_enabled": owner.auto_sync_enabled,
        "is_active": owner.is_active,
    }


async def get_current_owner(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> dict:
    """Resolve the owner from the bearer token (sub = owner id)"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        owner_id: str = payload.get("sub")
        if owner_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    result = await db.execute(
        text(f"SELECT {_OWNER_COLUMNS} FROM owners WHERE id = :owner_id"),
        {"owner_id": owner_id}
    )
    owner = result.fetchone()
    if owner is None:
        raise credentials_exception
    if not owner.is_active:
        raise HTTPException(status_code=400, detail="Inactive owner")

    return _owner_dict(owner)


async def authenticate_owner(db: AsyncSession, username: str, password: str) -> Optional[dict]:
    """Authenticate owner with username and password"""
    result = await db.execute(
        text(f"SELECT {_OWNER_COLUMNS} FROM owners WHERE username = :username"),
        {"username": username}
    )
    owner = result.fetchone()
    if not owner:
        return None
    if not verify_password(password, owner.password_hash):
        return None
    return _owner_dict(owner)
