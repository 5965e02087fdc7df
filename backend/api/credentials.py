"""
Portal credential endpoints
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text

from database import get_db
from auth import get_current_owner
from services.crypto import EncryptionKeyError, InvalidToken, get_cipher
from services.portal.base import PortalCredentials
from services.portal.errors import PortalSyncError

logger = logging.getLogger(__name__)
router = APIRouter()


class CredentialsUpdate(BaseModel):
    """Portal login; the password is stored encrypted and never returned"""
    username: str
    password: str


class CredentialsVerify(BaseModel):
    """Credentials to test; omit to test the stored ones"""
    username: Optional[str] = None
    password: Optional[str] = None


def _cipher():
    try:
        return get_cipher()
    except EncryptionKeyError as e:
        logger.error(f"Credential encryption unavailable: {e}")
        raise HTTPException(status_code=500, detail="Credential encryption is not configured")


@router.get("")
async def get_credentials(
    db: AsyncSession = Depends(get_db),
    current_owner: dict = Depends(get_current_owner)
):
    """Whether portal credentials are stored (username only)."""
    result = await db.execute(
        text("SELECT username, updated_at FROM portal_credentials WHERE owner_id = :owner_id"),
        {"owner_id": current_owner["id"]}
    )
    row = result.fetchone()
    if not row:
        return {"configured": False, "username": None, "updated_at": None}
    return {"configured": True, "username": row.username, "updated_at": row.updated_at}


@router.put("")
async def save_credentials(
    request: CredentialsUpdate,
    db: AsyncSession = Depends(get_db),
    current_owner: dict = Depends(get_current_owner)
):
    """Store portal credentials; any saved portal session is discarded."""
    if not request.username.strip() or not request.password:
        raise HTTPException(status_code=400, detail="Username and password are required")

    encrypted = _cipher().encrypt(request.password)
    await db.execute(
        text("""
            INSERT INTO portal_credentials (owner_id, username, password_encrypted, updated_at)
            VALUES (:owner_id, :username, :password_encrypted, NOW())
            ON CONFLICT (owner_id) DO UPDATE SET
                username = EXCLUDED.username,
                password_encrypted = EXCLUDED.password_encrypted,
                updated_at = NOW()
        """),
        {"owner_id": current_owner["id"], "username": request.username.strip(), "password_encrypted": encrypted}
    )
    await db.execute(
        text("DELETE FROM portal_sessions WHERE owner_id = :owner_id"),
        {"owner_id": current_owner["id"]}
    )
    await db.commit()
    logger.info(f"Portal credentials updated for owner {current_owner['id']}")
    return {"status": "saved", "username": request.username.strip()}


@router.delete("")
async def delete_credentials(
    db: AsyncSession = Depends(get_db),
    current_owner: dict = Depends(get_current_owner)
):
    """Remove stored credentials and the saved portal session."""
    result = await db.execute(
        text("DELETE FROM portal_credentials WHERE owner_id = :owner_id"),
        {"owner_id": current_owner["id"]}
    )
    await db.execute(
        text("DELETE FROM portal_sessions WHERE owner_id = :owner_id"),
        {"owner_id": current_owner["id"]}
    )
    await db.commit()
    if not result.rowcount:
        raise HTTPException(status_code=404, detail="Portal credentials not configured")
    return {"status": "deleted"}


@router.post("/verify")
async def verify_credentials(
    request: Optional[CredentialsVerify] = None,
    db: AsyncSession = Depends(get_db),
    current_owner: dict = Depends(get_current_owner)
):
    """
    Live login check against the portal in a throwaway browser context.
    Nothing is persisted.
    """
    from services.portal import SessionManager, default_layout, open_portal_browser

    if request and request.username and request.password:
        credentials = PortalCredentials(username=request.username, password=request.password)
    else:
        result = await db.execute(
            text("SELECT username, password_encrypted FROM portal_credentials WHERE owner_id = :owner_id"),
            {"owner_id": current_owner["id"]}
        )
        row = result.fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="Portal credentials not configured")
        try:
            password = _cipher().decrypt(row.password_encrypted)
        except InvalidToken:
            raise HTTPException(status_code=409, detail="Stored password cannot be decrypted; save credentials again")
        credentials = PortalCredentials(username=row.username, password=password)

    try:
        async with open_portal_browser() as browser:
            manager = SessionManager(store=None, browser=browser, layout=default_layout(), cipher=_cipher())
            valid = await manager.verify_login(credentials)
    except PortalSyncError as e:
        logger.warning(f"Credential check could not reach the portal: {e}")
        raise HTTPException(status_code=502, detail=f"Portal unavailable: {e}")

    return {"valid": valid, "username": credentials.username}
